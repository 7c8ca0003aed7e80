# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .google_provider import GoogleOAuthProvider
from .provider_interface import ProviderAdapter

__all__ = ["GoogleOAuthProvider", "ProviderAdapter"]
