import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from key_lifecycle import (
    ConfigurationError,
    LifecycleManager,
    ProviderRejected,
    StorageFailure,
)
from key_service.auth import (
    AuthenticatedKey,
    create_state_token,
    decode_state_token,
    get_lifecycle_manager,
    require_credential,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class AuthUrlResponse(BaseModel):
    authUrl: str
    message: str


class UserItem(BaseModel):
    id: str
    email: str | None
    name: str | None
    picture: str | None


class KeyMetadata(BaseModel):
    createdAt: datetime
    lastUsed: datetime
    tokenExpiry: datetime | None


class IssuedKeyResponse(BaseModel):
    success: bool
    apiKey: str
    user: UserItem


class UserResponse(BaseModel):
    user: UserItem
    apiKey: KeyMetadata


class KeyItem(BaseModel):
    apiKey: str
    createdAt: datetime
    lastUsed: datetime
    active: bool
    tokenExpiry: datetime | None


class KeyListResponse(BaseModel):
    success: bool
    keys: list[KeyItem]
    total: int


class RegeneratedKeyResponse(BaseModel):
    success: bool
    apiKey: str
    message: str


def _state_secret(request: Request) -> str:
    return request.app.state.settings.state_secret


@router.get("/google", response_model=AuthUrlResponse)
async def google_auth_url(
    request: Request,
    returnUrl: str | None = Query(default=None),
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> AuthUrlResponse:
    state = create_state_token(secret=_state_secret(request), return_url=returnUrl)
    try:
        auth_url = manager.provider.build_authorization_url(state)
    except ConfigurationError as e:
        logging.error("OAuth URL generation failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OAuth2 not configured",
        )

    return AuthUrlResponse(
        authUrl=auth_url,
        message="Visit the provided URL to authorise the application",
    )


@router.get("/callback", response_model=IssuedKeyResponse)
async def google_callback(
    request: Request,
    code: str = Query(min_length=1),
    state: str = Query(min_length=1),
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> IssuedKeyResponse:
    if decode_state_token(state, secret=_state_secret(request)) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired state parameter",
        )

    try:
        exchange = await manager.provider.exchange_identity(code)
    except (ProviderRejected, ConfigurationError) as e:
        logging.error("Authorization code exchange failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to complete authentication with the provider",
        )

    try:
        api_key = await manager.issue(exchange.identity, exchange.tokens)
    except StorageFailure as e:
        logging.error("API key issuance failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store API key",
        )

    identity = exchange.identity
    return IssuedKeyResponse(
        success=True,
        apiKey=api_key,
        user=UserItem(
            id=identity.subject_id,
            email=identity.email,
            name=identity.display_name,
            picture=identity.avatar_url,
        ),
    )


@router.get("/user", response_model=UserResponse)
async def current_user(auth: AuthenticatedKey = Depends(require_credential)) -> UserResponse:
    record = auth.record
    return UserResponse(
        user=UserItem(
            id=record.subject_id,
            email=record.email,
            name=record.display_name,
            picture=record.avatar_url,
        ),
        apiKey=KeyMetadata(
            createdAt=record.created_at,
            lastUsed=record.last_used_at,
            tokenExpiry=record.access_token_expiry,
        ),
    )


@router.get("/keys", response_model=KeyListResponse)
async def list_keys(
    auth: AuthenticatedKey = Depends(require_credential),
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> KeyListResponse:
    summaries = manager.list_for_subject(auth.record.subject_id)
    return KeyListResponse(
        success=True,
        keys=[
            KeyItem(
                apiKey=summary.key,
                createdAt=summary.created_at,
                lastUsed=summary.last_used_at,
                active=summary.active,
                tokenExpiry=summary.access_token_expiry,
            )
            for summary in summaries
        ],
        total=len(summaries),
    )


@router.delete("/keys/{key_id}")
async def revoke_key(
    key_id: str,
    auth: AuthenticatedKey = Depends(require_credential),
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> dict[str, bool | str]:
    try:
        revoked = await manager.revoke(key_id, auth.record.subject_id)
    except StorageFailure as e:
        logging.error("Revoke API key failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to revoke API key",
        )

    # Foreign and unknown keys look the same to the caller
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found",
        )

    return {"success": True, "message": "API key revoked successfully"}


@router.post("/regenerate", response_model=RegeneratedKeyResponse)
async def regenerate_key(
    auth: AuthenticatedKey = Depends(require_credential),
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> RegeneratedKeyResponse:
    try:
        new_key = await manager.regenerate(auth.api_key)
    except StorageFailure as e:
        logging.error("API key regeneration failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to regenerate API key",
        )

    if new_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired API key",
        )

    return RegeneratedKeyResponse(
        success=True,
        apiKey=new_key,
        message="New API key generated successfully",
    )
