# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Google OAuth2 Provider

Adapter for Google's OAuth2 endpoints. Handles the authorization code
exchange, identity lookup, access token refresh and authorized clients for
Drive/Docs calls.

OAuth Configuration:
- Authorization URL: https://accounts.google.com/o/oauth2/v2/auth
- Token URL: https://oauth2.googleapis.com/token
- Userinfo URL: https://www.googleapis.com/oauth2/v2/userinfo
- Scopes: drive.file documents userinfo.profile userinfo.email
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..config import LifecycleSettings
from ..errors import ConfigurationError, ProviderRejected, is_terminal_provider_status
from ..models import (
    ExchangeResult,
    Identity,
    ProviderTokens,
    RefreshedToken,
    parse_scopes,
)
from ..utils.key_formatter import mask_secret
from .provider_interface import ProviderAdapter

lib_logger = logging.getLogger("key_lifecycle")

# =============================================================================
# OAUTH CONFIGURATION
# =============================================================================

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Drive and Docs access plus the profile fields needed for the identity
GOOGLE_OAUTH_SCOPES: List[str] = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]

DEFAULT_MAX_RETRIES: int = 3
MAX_RETRY_AFTER_SECONDS: int = 60


def _expiry_from_response(token_data: Dict[str, Any]) -> Optional[datetime]:
    """Absolute expiry from ``expires_in``; None when the provider omits it."""
    expires_in = token_data.get("expires_in")
    if expires_in is None:
        return None
    try:
        seconds = float(expires_in)
    except (TypeError, ValueError):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class GoogleOAuthProvider(ProviderAdapter):
    """
    Google implementation of the provider adapter.

    Token endpoint calls retry rate limits (honouring ``Retry-After``),
    server errors and transport failures with exponential backoff. Client
    errors (invalid_grant, revoked consent) fail immediately.
    """

    AUTH_URL: str = GOOGLE_AUTH_URL
    TOKEN_URL: str = GOOGLE_TOKEN_URL
    USERINFO_URL: str = GOOGLE_USERINFO_URL
    OAUTH_SCOPES: List[str] = GOOGLE_OAUTH_SCOPES

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: LifecycleSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GoogleOAuthProvider":
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            timeout=float(settings.provider_timeout_seconds),
            transport=transport,
        )

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, **kwargs
        )

    def _ensure_configured(self) -> None:
        if not (self.client_id and self.client_secret and self.redirect_uri):
            raise ConfigurationError(
                "Google OAuth2 credentials are not properly configured"
            )

    def build_authorization_url(self, state: str) -> str:
        self._ensure_configured()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.OAUTH_SCOPES),
            "state": state,
            # offline + consent forces Google to return a refresh token
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTH_URL}?" + urlencode(params)

    async def exchange_identity(self, authorization_code: str) -> ExchangeResult:
        self._ensure_configured()
        lib_logger.info("Exchanging authorization code for tokens...")

        token_data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": authorization_code.strip(),
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            }
        )

        lib_logger.debug(
            "Tokens received: access_token=%s refresh_token=%s scope=%s",
            mask_secret(token_data.get("access_token")),
            mask_secret(token_data.get("refresh_token")),
            token_data.get("scope"),
        )

        tokens = ProviderTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expiry=_expiry_from_response(token_data),
            scopes=parse_scopes(token_data.get("scope")) or set(self.OAUTH_SCOPES),
        )
        identity = await self.fetch_identity(tokens.access_token)
        return ExchangeResult(identity=identity, tokens=tokens)

    async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        self._ensure_configured()
        token_data = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )
        return RefreshedToken(
            access_token=token_data["access_token"],
            expiry=_expiry_from_response(token_data),
        )

    async def fetch_identity(self, access_token: str) -> Identity:
        async with self._client() as client:
            try:
                response = await client.get(
                    self.USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise ProviderRejected(
                    f"Userinfo request failed (HTTP {e.response.status_code})",
                    status_code=e.response.status_code,
                ) from e
            except (httpx.RequestError, ValueError) as e:
                raise ProviderRejected(f"Userinfo request failed: {e}") from e

        subject_id = data.get("id") or data.get("sub")
        if not subject_id:
            raise ProviderRejected("Userinfo response is missing the user id")

        return Identity(
            subject_id=str(subject_id),
            email=data.get("email"),
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
        )

    def build_authorized_client(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> httpx.AsyncClient:
        # Renewal is the lifecycle manager's job, so the refresh token is not
        # attached to the client.
        return self._client(headers={"Authorization": f"Bearer {access_token}"})

    async def _post_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        """POST to the token endpoint with retries; returns the parsed body."""
        last_error: Optional[Exception] = None

        async with self._client() as client:
            for attempt in range(self.max_retries):
                is_last = attempt >= self.max_retries - 1
                try:
                    response = await client.post(
                        self.TOKEN_URL,
                        data=data,
                        headers={
                            "Content-Type": "application/x-www-form-urlencoded",
                            "Accept": "application/json",
                        },
                    )
                    response.raise_for_status()
                    token_data = response.json()
                    break

                except httpx.HTTPStatusError as e:
                    last_error = e
                    status_code = e.response.status_code
                    error_body = e.response.text

                    if is_terminal_provider_status(status_code):
                        lib_logger.info(
                            f"Token endpoint rejected {data['grant_type']} "
                            f"(HTTP {status_code}): {error_body[:200]}"
                        )
                        raise ProviderRejected(
                            f"Token request rejected (HTTP {status_code}): {error_body[:200]}",
                            status_code=status_code,
                        ) from e

                    elif status_code == 429 and not is_last:
                        retry_after = self._retry_after_seconds(e.response)
                        await asyncio.sleep(retry_after)
                        continue

                    elif status_code >= 500 and not is_last:
                        await asyncio.sleep(2 ** attempt)
                        continue

                    raise ProviderRejected(
                        f"Token request failed (HTTP {status_code})",
                        status_code=status_code,
                    ) from e

                except httpx.RequestError as e:
                    last_error = e
                    if not is_last:
                        await asyncio.sleep(2 ** attempt)
                        continue
                    raise ProviderRejected(f"Token request failed: {e}") from e

                except ValueError as e:
                    raise ProviderRejected(
                        f"Token endpoint returned invalid JSON: {e}"
                    ) from e
            else:
                raise ProviderRejected(
                    f"Token request failed after {self.max_retries} attempts: {last_error}"
                )

        if not token_data.get("access_token"):
            raise ProviderRejected("Token response is missing access_token")
        return token_data

    @staticmethod
    def _retry_after_seconds(response: httpx.Response) -> float:
        try:
            retry_after = int(response.headers.get("Retry-After", 1))
        except ValueError:
            retry_after = 1
        return float(min(max(retry_after, 0), MAX_RETRY_AFTER_SECONDS))
