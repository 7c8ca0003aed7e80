# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
API key storage.

Handles loading and saving credential records to a single JSON file.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from .errors import StorageFailure
from .models import CredentialRecord, parse_scopes, utcnow
from .utils.key_formatter import format_key_for_display

lib_logger = logging.getLogger("key_lifecycle")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken as UTC. Numbers are epoch milliseconds, the
    ``expiry_date`` convention of Google's OAuth2 client libraries.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_active(value: Any) -> bool:
    """Only an explicit true keeps a record active; anything else fails closed."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class CredentialStore:
    """
    Handles persistence of credential records to a JSON file.

    Features:
    - Async file I/O with aiofiles
    - Atomic writes (write to temp, then rename)
    - Owner-only file permissions
    - Reads the camelCase layout written by earlier releases
    """

    def __init__(self, file_path: Union[str, Path]):
        """
        Initialize storage.

        Args:
            file_path: Path to the api-keys.json file
        """
        self.file_path = Path(file_path)
        self._save_lock = asyncio.Lock()

    async def load(self) -> Dict[str, CredentialRecord]:
        """
        Load credential records from file.

        Returns:
            Dict of key -> CredentialRecord, in file order

        Raises:
            StorageFailure: If the file exists but cannot be read or parsed.
                An unreadable store is never treated as empty, since the next
                save would overwrite it.
        """
        if not self.file_path.exists():
            lib_logger.info(f"No key store found at {self.file_path}, starting fresh")
            return {}

        try:
            async with self._save_lock:
                content = await self._read_file()
        except OSError as e:
            raise StorageFailure(str(self.file_path), f"read failed: {e}") from e

        if not content.strip():
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageFailure(str(self.file_path), f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise StorageFailure(
                str(self.file_path), "expected a JSON object keyed by API key"
            )

        records: Dict[str, CredentialRecord] = {}
        for key, record_data in data.items():
            record = self._parse_record(key, record_data)
            if record:
                records[key] = record

        lib_logger.info(f"Loaded {len(records)} API keys from {self.file_path}")
        return records

    async def save(self, records: Dict[str, CredentialRecord]) -> None:
        """
        Rewrite the whole store.

        Args:
            records: Dict of key -> CredentialRecord

        Raises:
            StorageFailure: If the write or the atomic rename fails. The
                previous file is left untouched in that case.
        """
        data = {
            key: self._serialize_record(record) for key, record in records.items()
        }
        content = json.dumps(data, indent=2)

        async with self._save_lock:
            try:
                await self._write_file(content)
            except OSError as e:
                lib_logger.error(f"Failed to save key store: {e}")
                raise StorageFailure(str(self.file_path), f"write failed: {e}") from e

        lib_logger.debug(f"Saved {len(records)} API keys to {self.file_path}")

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    async def _read_file(self) -> str:
        """Read file contents asynchronously."""
        async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
            return await f.read()

    async def _write_file(self, content: str) -> None:
        """Write file contents atomically."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_suffix(".tmp")

        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
            os.chmod(temp_path, 0o600)

            # Atomic rename
            temp_path.replace(self.file_path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    def _parse_record(
        self, key: str, data: Dict[str, Any]
    ) -> Optional[CredentialRecord]:
        """Parse a credential record from storage data."""
        try:
            if "userId" in data:
                data = self._migrate_legacy(data)

            if not data.get("subject_id") or not data.get("access_token"):
                raise ValueError("missing subject_id or access_token")

            created_at = parse_timestamp(data.get("created_at")) or utcnow()
            last_used_at = parse_timestamp(data.get("last_used_at")) or created_at

            return CredentialRecord(
                key=key,
                subject_id=str(data["subject_id"]),
                email=data.get("email"),
                display_name=data.get("display_name"),
                avatar_url=data.get("avatar_url"),
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                access_token_expiry=parse_timestamp(data.get("access_token_expiry")),
                granted_scopes=parse_scopes(data.get("granted_scopes")),
                created_at=created_at,
                last_used_at=last_used_at,
                active=parse_active(data.get("active", True)),
            )

        except (AttributeError, KeyError, TypeError, ValueError) as e:
            lib_logger.warning(
                f"Failed to parse API key {format_key_for_display(key)}: {e}"
            )
            return None

    def _migrate_legacy(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Map the camelCase layout of earlier releases onto current field names."""
        return {
            "subject_id": data.get("userId"),
            "email": data.get("email"),
            "display_name": data.get("name"),
            "avatar_url": data.get("picture"),
            "access_token": data.get("accessToken"),
            "refresh_token": data.get("refreshToken"),
            "access_token_expiry": data.get("tokenExpiry"),
            "granted_scopes": data.get("scope"),
            "created_at": data.get("createdAt"),
            "last_used_at": data.get("lastUsed"),
            "active": data.get("active", True),
        }

    def _serialize_record(self, record: CredentialRecord) -> Dict[str, Any]:
        """Serialize a credential record for storage."""
        return {
            "subject_id": record.subject_id,
            "email": record.email,
            "display_name": record.display_name,
            "avatar_url": record.avatar_url,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "access_token_expiry": format_timestamp(record.access_token_expiry),
            "granted_scopes": sorted(record.granted_scopes),
            "created_at": format_timestamp(record.created_at),
            "last_used_at": format_timestamp(record.last_used_at),
            "active": record.active,
        }
