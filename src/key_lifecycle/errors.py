# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error taxonomy for the key lifecycle library.

Callers of ``resolve`` never see these: the manager converts them into an
absent result. They surface from ``refresh``, ``issue`` and ``revoke``.
"""

from typing import Optional

from .utils.key_formatter import format_key_for_display

# Provider statuses that mean the grant itself is gone (revoked consent,
# invalid_grant, unauthorized client). Retrying will not help.
TERMINAL_PROVIDER_STATUSES = frozenset({400, 401, 403})


class KeyLifecycleError(Exception):
    """Base class for every error raised by the key lifecycle library."""


class NotFoundOrRevoked(KeyLifecycleError):
    """The key does not exist or has been revoked."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"API key {format_key_for_display(key)} not found or revoked")


class NoRefreshToken(KeyLifecycleError):
    """The record carries no refresh token and can never renew itself."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"No refresh token available for API key {format_key_for_display(key)}"
        )


class ProviderRejected(KeyLifecycleError):
    """The provider declined to renew credentials, or the call failed outright."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StorageFailure(KeyLifecycleError):
    """Persisting or loading the key store failed."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Key store '{path}': {message}")


class ConfigurationError(KeyLifecycleError):
    """Settings are missing, invalid or insecure for the current environment."""


def is_fail_closed_error(e: Exception) -> bool:
    """Checks if the exception must deactivate the record it was raised for."""
    return isinstance(e, (NoRefreshToken, ProviderRejected, StorageFailure))


def is_terminal_provider_status(status_code: Optional[int]) -> bool:
    """Checks if a provider HTTP status means retrying the refresh is pointless."""
    return status_code in TERMINAL_PROVIDER_STATUSES
