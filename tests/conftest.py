import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Keep the refresh failure log out of the working tree
os.environ.setdefault("KEY_LIFECYCLE_LOG_DIR", tempfile.mkdtemp(prefix="key-lifecycle-logs-"))

from key_lifecycle import (
    CredentialStore,
    ExchangeResult,
    Identity,
    LifecycleManager,
    LifecycleSettings,
    ProviderAdapter,
    ProviderTokens,
    RefreshedToken,
)


class FakeProvider(ProviderAdapter):
    """In-memory provider that hands out numbered access tokens."""

    def __init__(self, token_lifetime: timedelta | None = timedelta(hours=1)):
        self.token_lifetime = token_lifetime
        self.refresh_calls: list[str] = []
        self.exchange_calls: list[str] = []
        self.fail_with: Exception | None = None
        self.identity = Identity(
            subject_id="user-1",
            email="alice@example.com",
            display_name="Alice",
            avatar_url="https://example.com/alice.png",
        )
        self._counter = 0

    def build_authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_identity(self, authorization_code: str) -> ExchangeResult:
        self.exchange_calls.append(authorization_code)
        if self.fail_with is not None:
            raise self.fail_with
        return ExchangeResult(
            identity=self.identity,
            tokens=make_tokens(refresh_token="refresh-from-exchange"),
        )

    async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        self.refresh_calls.append(refresh_token)
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        expiry = None
        if self.token_lifetime is not None:
            expiry = datetime.now(timezone.utc) + self.token_lifetime
        return RefreshedToken(access_token=f"access-{self._counter}", expiry=expiry)

    def build_authorized_client(self, access_token: str, refresh_token: str | None = None):
        return {"access_token": access_token, "refresh_token": refresh_token}


def make_identity(subject_id: str = "user-1", email: str = "alice@example.com") -> Identity:
    return Identity(subject_id=subject_id, email=email, display_name="Alice")


def make_tokens(
    expires_in: timedelta | None = timedelta(hours=1),
    refresh_token: str | None = "refresh-1",
    scopes: set[str] | None = None,
) -> ProviderTokens:
    expiry = None
    if expires_in is not None:
        expiry = datetime.now(timezone.utc) + expires_in
    return ProviderTokens(
        access_token="access-0",
        refresh_token=refresh_token,
        expiry=expiry,
        scopes=scopes if scopes is not None else {"drive.file", "documents"},
    )


@pytest.fixture
def settings(tmp_path: Path) -> LifecycleSettings:
    return LifecycleSettings(
        keys_file=tmp_path / "api-keys.json",
        state_secret="test-state-secret",
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="http://localhost/api/auth/callback",
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store(settings: LifecycleSettings) -> CredentialStore:
    return CredentialStore(settings.keys_file)


@pytest_asyncio.fixture
async def manager(store: CredentialStore, provider: FakeProvider, settings: LifecycleSettings):
    mgr = LifecycleManager(store=store, provider=provider, settings=settings)
    await mgr.start()
    try:
        yield mgr
    finally:
        await mgr.close()

