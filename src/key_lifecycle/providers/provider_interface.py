# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..models import ExchangeResult, RefreshedToken


class ProviderAdapter(ABC):
    """
    An interface for the OAuth2 identity/resource provider whose tokens the
    lifecycle manager keeps alive. Any provider speaking OAuth2-shaped
    semantics can implement it.
    """

    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        """
        Builds the consent URL the user is sent to.

        Args:
            state: Opaque anti-forgery value echoed back on the callback.
        """
        pass

    @abstractmethod
    async def exchange_identity(self, authorization_code: str) -> ExchangeResult:
        """
        Exchanges an authorization code for tokens and the user's identity.

        Only the consent flow calls this; the lifecycle manager never does.
        """
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        """
        Mints a new access token from a refresh token.

        Raises:
            ProviderRejected: If the provider refuses or the call fails.
        """
        pass

    @abstractmethod
    def build_authorized_client(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> Any:
        """
        Produces whatever handle downstream API calls need. The lifecycle
        manager treats it as opaque.
        """
        pass
