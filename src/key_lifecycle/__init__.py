# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .config import LifecycleSettings, load_settings, validate_settings
from .errors import (
    ConfigurationError,
    KeyLifecycleError,
    NoRefreshToken,
    NotFoundOrRevoked,
    ProviderRejected,
    StorageFailure,
)
from .manager import LifecycleManager
from .models import (
    CredentialRecord,
    ExchangeResult,
    Identity,
    KeySummary,
    ProviderTokens,
    RefreshedToken,
)
from .providers import GoogleOAuthProvider, ProviderAdapter
from .scheduler import PeriodicTask, RefreshScheduler
from .storage import CredentialStore

__all__ = [
    "LifecycleManager",
    "CredentialStore",
    "RefreshScheduler",
    "PeriodicTask",
    "ProviderAdapter",
    "GoogleOAuthProvider",
    "LifecycleSettings",
    "load_settings",
    "validate_settings",
    # Models
    "CredentialRecord",
    "ExchangeResult",
    "Identity",
    "KeySummary",
    "ProviderTokens",
    "RefreshedToken",
    # Errors
    "KeyLifecycleError",
    "NotFoundOrRevoked",
    "NoRefreshToken",
    "ProviderRejected",
    "StorageFailure",
    "ConfigurationError",
]
