# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the key lifecycle package.

This module contains the credential record held per issued API key and the
value types exchanged with provider adapters.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Set, Union

DEFAULT_KEY_PREFIX = "md2doc_"
KEY_RANDOM_BYTES = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX) -> str:
    return f"{prefix}{secrets.token_hex(KEY_RANDOM_BYTES)}"


def looks_like_key(value: Optional[str], prefix: str = DEFAULT_KEY_PREFIX) -> bool:
    """Cheap format check done before any store lookup."""
    if not value or not value.startswith(prefix):
        return False
    return len(value) > len(prefix)


def parse_scopes(raw: Union[str, Iterable[str], None]) -> Set[str]:
    """
    Normalize scopes from an OAuth2 ``scope`` field or any iterable.

    OAuth2 token responses carry scopes as one space-separated string.
    """
    if not raw:
        return set()
    if isinstance(raw, str):
        return {part for part in raw.split() if part}
    return {str(part).strip() for part in raw if str(part).strip()}


# =============================================================================
# PROVIDER EXCHANGE TYPES
# =============================================================================


@dataclass(frozen=True)
class Identity:
    """Identity attributes reported by the provider."""

    subject_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class ProviderTokens:
    """Tokens returned by an authorization code exchange."""

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scopes: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class ExchangeResult:
    """Everything a completed consent flow yields."""

    identity: Identity
    tokens: ProviderTokens


@dataclass(frozen=True)
class RefreshedToken:
    """A freshly minted access token and its expiry."""

    access_token: str
    expiry: Optional[datetime] = None


# =============================================================================
# CREDENTIAL RECORD
# =============================================================================


@dataclass(frozen=True)
class KeySummary:
    """Non-secret view of a record, safe to return from listing endpoints."""

    key: str
    created_at: datetime
    last_used_at: datetime
    active: bool
    access_token_expiry: Optional[datetime]


@dataclass
class CredentialRecord:
    """
    Provider credentials held on behalf of one issued API key.

    ``active`` only ever goes from True to False. ``access_token`` and
    ``access_token_expiry`` change together through ``apply_refresh``.
    """

    key: str
    subject_id: str
    access_token: str
    refresh_token: Optional[str] = None
    access_token_expiry: Optional[datetime] = None
    granted_scopes: Set[str] = field(default_factory=set)
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    active: bool = True

    @classmethod
    def from_exchange(
        cls,
        key: str,
        identity: Identity,
        tokens: ProviderTokens,
        now: Optional[datetime] = None,
    ) -> "CredentialRecord":
        created = now or utcnow()
        return cls(
            key=key,
            subject_id=identity.subject_id,
            email=identity.email,
            display_name=identity.display_name,
            avatar_url=identity.avatar_url,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expiry=tokens.expiry,
            granted_scopes=set(tokens.scopes),
            created_at=created,
            last_used_at=created,
            active=True,
        )

    @property
    def identity(self) -> Identity:
        return Identity(
            subject_id=self.subject_id,
            email=self.email,
            display_name=self.display_name,
            avatar_url=self.avatar_url,
        )

    @property
    def tokens(self) -> ProviderTokens:
        return ProviderTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expiry=self.access_token_expiry,
            scopes=set(self.granted_scopes),
        )

    def needs_refresh(self, now: datetime, lookahead: timedelta) -> bool:
        """A record without an expiry is assumed non-expiring."""
        if self.access_token_expiry is None:
            return False
        return self.access_token_expiry < now + lookahead

    def apply_refresh(self, refreshed: RefreshedToken) -> None:
        self.access_token = refreshed.access_token
        self.access_token_expiry = refreshed.expiry

    def has_scopes(self, required: Iterable[str]) -> bool:
        return parse_scopes(required) <= self.granted_scopes

    def summary(self) -> KeySummary:
        return KeySummary(
            key=self.key,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            active=self.active,
            access_token_expiry=self.access_token_expiry,
        )
