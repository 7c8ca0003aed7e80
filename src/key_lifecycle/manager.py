# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
API key lifecycle manager.

The single authority that creates, resolves, renews, lists, revokes and
retires credential records. It exclusively owns the key store and the
refresh scheduler.

Mutations are copy-on-write and serialized by one write lock: build the next
map with replaced records, persist it, and only then swap it in. A failed
write leaves the live map untouched, and no other caller ever observes or
persists a change that has not been committed.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import LifecycleSettings
from .errors import (
    KeyLifecycleError,
    NoRefreshToken,
    NotFoundOrRevoked,
    ProviderRejected,
    StorageFailure,
    is_fail_closed_error,
)
from .failure_logger import log_refresh_failure
from .models import (
    CredentialRecord,
    Identity,
    KeySummary,
    ProviderTokens,
    generate_api_key,
    looks_like_key,
    utcnow,
)
from .providers.provider_interface import ProviderAdapter
from .scheduler import PeriodicTask, RefreshScheduler
from .storage import CredentialStore
from .utils.key_formatter import format_key_for_display

lib_logger = logging.getLogger("key_lifecycle")


def _utcnow() -> datetime:
    return utcnow()


class LifecycleManager:
    """
    Maps opaque API keys to provider credentials and keeps them renewed.

    One instance per process, built at startup and handed to request
    handlers. Call ``start()`` before use and ``close()`` on shutdown.
    """

    def __init__(
        self,
        store: CredentialStore,
        provider: ProviderAdapter,
        settings: Optional[LifecycleSettings] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or LifecycleSettings()

        self._records: Dict[str, CredentialRecord] = {}
        self._write_lock = asyncio.Lock()
        self._started = False
        self._scheduler = RefreshScheduler(
            callback=self.refresh, lookahead=self.settings.refresh_lookahead
        )
        self._cleanup_task = PeriodicTask(
            name="key-cleanup",
            interval_seconds=self.settings.cleanup_interval_seconds,
            callback=self.cleanup,
        )

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def start(self) -> None:
        """Load the store, re-arm refresh timers and start the cleanup cadence."""
        if self._started:
            return

        self._records = await self.store.load()

        armed = 0
        for key, record in self._records.items():
            if record.active and record.access_token_expiry is not None:
                self._scheduler.schedule(key, record.access_token_expiry)
                armed += 1

        self._cleanup_task.start()
        self._started = True
        lib_logger.info(
            f"Key lifecycle manager started: {len(self._records)} keys, "
            f"{armed} refresh timers armed"
        )

    async def close(self) -> None:
        """Stop the cleanup cadence and every pending or running refresh."""
        await self._cleanup_task.stop()
        cancelled = await self._scheduler.shutdown()
        self._started = False
        lib_logger.info(f"Key lifecycle manager stopped ({cancelled} refresh tasks cancelled)")

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    def __len__(self) -> int:
        return len(self._records)

    # =========================================================================
    # COLLABORATOR OPERATIONS
    # =========================================================================

    async def issue(self, identity: Identity, tokens: ProviderTokens) -> str:
        """
        Issue a new API key for a completed provider exchange.

        The store is persisted before the key is returned.

        Raises:
            StorageFailure: If the store cannot be written. Nothing is kept.
        """
        async with self._write_lock:
            key = generate_api_key(self.settings.key_prefix)
            while key in self._records:
                key = generate_api_key(self.settings.key_prefix)

            record = CredentialRecord.from_exchange(key, identity, tokens, now=_utcnow())
            await self._commit({key: record})

        if record.access_token_expiry is not None:
            self._scheduler.schedule(key, record.access_token_expiry)

        lib_logger.info(
            f"Created API key {format_key_for_display(key)} for user: {identity.email}"
        )
        return key

    async def resolve(self, key: str) -> Optional[CredentialRecord]:
        """
        Look up a key and return a record whose access token is safe to use.

        Returns None for unknown, malformed and revoked keys alike. A token
        inside the lookahead window is refreshed before returning; if that
        refresh fails the record is deactivated and None is returned.
        """
        if not looks_like_key(key, self.settings.key_prefix):
            return None

        record = self._records.get(key)
        if record is None or not record.active:
            return None

        now = _utcnow()
        record = await self._touch(key, now)
        if record is None:
            return None

        if record.needs_refresh(now, self.settings.refresh_lookahead):
            lib_logger.info(
                f"Token for {format_key_for_display(key)} expires soon, refreshing"
            )
            try:
                return await self.refresh(key)
            except KeyLifecycleError as e:
                lib_logger.warning(
                    f"Reactive refresh failed for {format_key_for_display(key)}: {e}"
                )
                log_refresh_failure(
                    key, trigger="resolve", error=e, deactivated=is_fail_closed_error(e)
                )
                return None

        return record

    async def refresh(self, key: str) -> CredentialRecord:
        """
        Exchange the stored refresh token for a new access token.

        Any failure other than the key having disappeared deactivates the
        record (fail-closed).

        Raises:
            NotFoundOrRevoked: Missing or inactive, including a revocation
                that happened while the provider call was in flight.
            NoRefreshToken: The record can never renew itself.
            ProviderRejected: The provider refused or the call failed.
            StorageFailure: The renewed record could not be persisted.
        """
        record = self._records.get(key)
        if record is None or not record.active:
            raise NotFoundOrRevoked(key)

        if not record.refresh_token:
            error = NoRefreshToken(key)
            await self._deactivate(key, reason=str(error))
            raise error

        try:
            refreshed = await self.provider.refresh_access_token(record.refresh_token)
        except ProviderRejected as e:
            await self._deactivate(key, reason=str(e))
            raise
        except Exception as e:
            error = ProviderRejected(f"Token refresh failed: {e}")
            await self._deactivate(key, reason=str(error))
            raise error from e

        async with self._write_lock:
            # The record may have been revoked or swept while awaiting the provider
            current = self._records.get(key)
            if current is None or not current.active:
                raise NotFoundOrRevoked(key)

            updated = replace(current, granted_scopes=set(current.granted_scopes))
            updated.apply_refresh(refreshed)
            try:
                await self._commit({key: updated})
            except StorageFailure as e:
                await self._deactivate_locked(key, reason=str(e))
                raise

        self._rearm_after_refresh(key, updated)
        lib_logger.info(f"Refreshed tokens for API key {format_key_for_display(key)}")
        return updated

    async def revoke(self, key: str, requesting_subject_id: str) -> bool:
        """
        Permanently deactivate a key on behalf of its owner.

        Returns:
            True if an active record owned by the requester was revoked.
            False for unknown, foreign or already revoked keys.

        Raises:
            StorageFailure: If the store cannot be written. The key stays active.
        """
        async with self._write_lock:
            record = self._records.get(key)
            if record is None or not record.active:
                return False
            if record.subject_id != requesting_subject_id:
                lib_logger.warning(
                    f"Refused revocation of {format_key_for_display(key)}: not owned by requester"
                )
                return False

            await self._commit({key: replace(record, active=False)})

        self._scheduler.cancel(key)
        lib_logger.info(f"Revoked API key {format_key_for_display(key)}")
        return True

    def list_for_subject(self, subject_id: str) -> List[KeySummary]:
        """Non-secret metadata for every key owned by a subject, in issue order."""
        return [
            record.summary()
            for record in self._records.values()
            if record.subject_id == subject_id
        ]

    async def regenerate(self, key: str) -> Optional[str]:
        """
        Issue an additional key for the owner of ``key`` using its current
        provider tokens. The existing key stays active.

        Returns:
            The new key, or None if ``key`` does not resolve.
        """
        record = await self.resolve(key)
        if record is None:
            return None
        return await self.issue(record.identity, record.tokens)

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Delete revoked records unused for longer than the retention window.

        Returns:
            Number of records removed.
        """
        now = now or _utcnow()
        cutoff = now - self.settings.inactive_retention

        async with self._write_lock:
            stale = [
                key
                for key, record in self._records.items()
                if not record.active and record.last_used_at < cutoff
            ]
            if not stale:
                return 0

            await self._commit({key: None for key in stale})

        for key in stale:
            self._scheduler.cancel(key)

        lib_logger.info(f"Cleaned up {len(stale)} expired API keys")
        return len(stale)

    # =========================================================================
    # CREDENTIAL HELPERS
    # =========================================================================

    def get_authorized_client(self, record: CredentialRecord) -> Any:
        """Build the provider client handle for a resolved record."""
        return self.provider.build_authorized_client(
            record.access_token, record.refresh_token
        )

    def get_record(self, key: str) -> Optional[CredentialRecord]:
        """Copy of the stored record regardless of state. Never touches it."""
        record = self._records.get(key)
        if record is None:
            return None
        return replace(record, granted_scopes=set(record.granted_scopes))

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    async def _commit(self, changes: Dict[str, Optional[CredentialRecord]]) -> None:
        """
        Persist a candidate map with ``changes`` applied, then swap it in.

        A None value deletes the key. Must be called with the write lock held.

        Raises:
            StorageFailure: The live map is left exactly as it was.
        """
        candidate = dict(self._records)
        for key, record in changes.items():
            if record is None:
                candidate.pop(key, None)
            else:
                candidate[key] = record

        await self.store.save(candidate)
        self._records = candidate

    def _rearm_after_refresh(self, key: str, record: CredentialRecord) -> None:
        expiry = record.access_token_expiry
        if expiry is None:
            self._scheduler.cancel(key)
            return

        # A token that is born inside the lookahead window would fire again
        # at once; leave it to the reactive refresh in resolve().
        if expiry - self.settings.refresh_lookahead <= _utcnow():
            self._scheduler.cancel(key)
            lib_logger.warning(
                f"Token lifetime for {format_key_for_display(key)} is shorter than the "
                f"refresh lookahead; proactive refresh disabled for this token"
            )
            return

        self._scheduler.schedule(key, expiry)

    async def _touch(self, key: str, now: datetime) -> Optional[CredentialRecord]:
        """Record usage and return the current record, or None if it went inactive."""
        async with self._write_lock:
            record = self._records.get(key)
            if record is None or not record.active:
                return None

            try:
                await self._commit({key: replace(record, last_used_at=now)})
            except StorageFailure as e:
                # Usage timestamps are advisory; keep serving the committed record
                lib_logger.warning(
                    f"Could not persist last-used time for {format_key_for_display(key)}: {e}"
                )
            return self._records[key]

    async def _deactivate(self, key: str, reason: str) -> None:
        async with self._write_lock:
            await self._deactivate_locked(key, reason)

    async def _deactivate_locked(self, key: str, reason: str) -> None:
        """Fail-closed deactivation after an unrecoverable refresh failure."""
        record = self._records.get(key)
        if record is None or not record.active:
            return

        self._scheduler.cancel(key)
        lib_logger.warning(
            f"Deactivated API key {format_key_for_display(key)} after refresh failure: {reason}"
        )

        deactivated = replace(record, active=False)
        try:
            await self._commit({key: deactivated})
        except StorageFailure as e:
            # Fail closed in memory; the next successful commit writes it out
            self._records[key] = deactivated
            lib_logger.error(
                f"Could not persist deactivation of {format_key_for_display(key)}: {e}"
            )
