# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from .errors import ConfigurationError
from .models import DEFAULT_KEY_PREFIX

lib_logger = logging.getLogger("key_lifecycle")

DEFAULT_KEYS_FILE = "data/api-keys.json"
DEFAULT_REFRESH_LOOKAHEAD_SECONDS = 5 * 60
DEFAULT_INACTIVE_RETENTION_DAYS = 30
DEFAULT_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30
DEFAULT_STATE_SECRET = "change-me-state-secret"


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default
    return max(minimum, value)


def get_app_env() -> str:
    value = (os.getenv("APP_ENV") or "dev").strip().lower()
    if value in {"prod", "production"}:
        return "prod"
    return "dev"


def is_prod() -> bool:
    return get_app_env() == "prod"


def allow_insecure_defaults() -> bool:
    default = not is_prod()
    return parse_bool_env("ALLOW_INSECURE_DEFAULTS", default)


@dataclass(frozen=True)
class LifecycleSettings:
    keys_file: Path = Path(DEFAULT_KEYS_FILE)
    key_prefix: str = DEFAULT_KEY_PREFIX
    refresh_lookahead_seconds: int = DEFAULT_REFRESH_LOOKAHEAD_SECONDS
    inactive_retention_days: int = DEFAULT_INACTIVE_RETENTION_DAYS
    cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    state_secret: str = DEFAULT_STATE_SECRET

    @property
    def refresh_lookahead(self) -> timedelta:
        return timedelta(seconds=self.refresh_lookahead_seconds)

    @property
    def inactive_retention(self) -> timedelta:
        return timedelta(days=self.inactive_retention_days)

    @property
    def google_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_secret
            and self.google_redirect_uri
        )


def load_settings() -> LifecycleSettings:
    return LifecycleSettings(
        keys_file=Path(os.getenv("KEYS_FILE") or DEFAULT_KEYS_FILE),
        key_prefix=(os.getenv("KEY_PREFIX") or "").strip() or DEFAULT_KEY_PREFIX,
        refresh_lookahead_seconds=parse_int_env(
            "REFRESH_LOOKAHEAD_SECONDS", DEFAULT_REFRESH_LOOKAHEAD_SECONDS
        ),
        inactive_retention_days=parse_int_env(
            "INACTIVE_RETENTION_DAYS", DEFAULT_INACTIVE_RETENTION_DAYS, minimum=1
        ),
        cleanup_interval_seconds=parse_int_env(
            "CLEANUP_INTERVAL_SECONDS", DEFAULT_CLEANUP_INTERVAL_SECONDS, minimum=60
        ),
        provider_timeout_seconds=parse_int_env(
            "PROVIDER_TIMEOUT_SECONDS", DEFAULT_PROVIDER_TIMEOUT_SECONDS, minimum=1
        ),
        google_client_id=(os.getenv("GOOGLE_CLIENT_ID") or "").strip(),
        google_client_secret=(os.getenv("GOOGLE_CLIENT_SECRET") or "").strip(),
        google_redirect_uri=(os.getenv("GOOGLE_REDIRECT_URI") or "").strip(),
        state_secret=(os.getenv("STATE_SECRET") or "").strip() or DEFAULT_STATE_SECRET,
    )


def validate_settings(settings: LifecycleSettings) -> None:
    if allow_insecure_defaults():
        if settings.state_secret == DEFAULT_STATE_SECRET:
            lib_logger.warning(
                "SECURITY WARNING: STATE_SECRET is using default value. "
                "Set STATE_SECRET for non-local usage."
            )
        if not settings.google_configured:
            lib_logger.warning(
                "Google OAuth2 is not configured. Required: "
                "GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, GOOGLE_REDIRECT_URI"
            )
        return

    invalid_reasons: list[str] = []
    if settings.state_secret == DEFAULT_STATE_SECRET:
        invalid_reasons.append("STATE_SECRET is missing or default")
    if not settings.google_configured:
        invalid_reasons.append(
            "GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET and GOOGLE_REDIRECT_URI are required"
        )

    if invalid_reasons:
        raise ConfigurationError(
            "Refusing startup due to insecure or missing settings: "
            + "; ".join(invalid_reasons)
            + ". Set them or ALLOW_INSECURE_DEFAULTS=true explicitly."
        )
