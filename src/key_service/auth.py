import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from key_lifecycle import CredentialRecord, LifecycleManager

STATE_TTL_SECONDS = 10 * 60
INVALID_KEY_DETAIL = "Invalid or expired API key"

x_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
authorization_header = APIKeyHeader(name="Authorization", auto_error=False)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    parts = value.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def extract_api_key_from_headers(
    *, x_api_key: str | None, authorization: str | None
) -> str | None:
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return parse_bearer_token(authorization)


def create_state_token(*, secret: str, return_url: str | None = None) -> str:
    now = int(time.time())
    payload = {
        "nonce": secrets.token_urlsafe(12),
        "ret": return_url,
        "iat": now,
        "exp": now + STATE_TTL_SECONDS,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode(
        "utf-8"
    )
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(
        secret.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return f"{payload_b64}.{_b64url_encode(signature)}"


def decode_state_token(token: str, *, secret: str) -> dict | None:
    try:
        payload_b64, sig_b64 = token.split(".", 1)
        expected_sig = hmac.new(
            secret.encode("utf-8"),
            payload_b64.encode("ascii"),
            hashlib.sha256,
        ).digest()
        actual_sig = _b64url_decode(sig_b64)
        if not hmac.compare_digest(expected_sig, actual_sig):
            return None

        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        exp = int(payload["exp"])
        if exp < int(time.time()):
            return None
        return payload
    except Exception:
        return None


@dataclass
class AuthenticatedKey:
    api_key: str
    record: CredentialRecord


def get_lifecycle_manager(request: Request) -> LifecycleManager:
    return request.app.state.lifecycle_manager


async def require_credential(
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    x_api_key: str | None = Depends(x_api_key_header),
    authorization: str | None = Depends(authorization_header),
) -> AuthenticatedKey:
    api_key = extract_api_key_from_headers(x_api_key=x_api_key, authorization=authorization)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required in X-API-Key header",
        )

    # Unknown, malformed and revoked keys get the same answer
    record = await manager.resolve(api_key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_KEY_DETAIL,
        )

    return AuthenticatedKey(api_key=api_key, record=record)


def require_scopes(*required_scopes: str):
    """
    Dependency factory for routes that call provider APIs on the key's behalf.

    Rejects with 403 when the consent behind the key did not grant every
    scope in ``required_scopes``.
    """

    async def dependency(
        auth: AuthenticatedKey = Depends(require_credential),
    ) -> AuthenticatedKey:
        if not auth.record.has_scopes(required_scopes):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions: additional Google permissions required",
            )
        return auth

    return dependency
