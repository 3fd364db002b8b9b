from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core.deps import get_current_active_user, get_tenant_id, get_tenant_session, role_names
from mfgerp.core.security import (
    REFRESH,
    TokenError,
    create_access_token,
    create_refresh_token,
    token_subject,
    verify_password,
)
from mfgerp.repositories.security import SecurityRepository
from mfgerp.schemas.auth import RefreshRequest, TokenPair, UserRead

router = APIRouter(prefix="/auth", tags=["Auth"])


def _user_to_read(user) -> UserRead:
    return UserRead(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        full_name=user.full_name,
        is_active=user.is_active,
        created_at=user.created_at,
        updated_at=user.updated_at,
        roles=role_names(user),
    )


def _issue_tokens(user, tenant_id: UUID) -> TokenPair:
    access = create_access_token(subject=str(user.id), tenant_id=str(tenant_id), roles=role_names(user))
    refresh = create_refresh_token(subject=str(user.id), tenant_id=str(tenant_id))
    return TokenPair(access_token=access, refresh_token=refresh)


# PUBLIC_INTERFACE
@router.post(
    "/login",
    response_model=TokenPair,
    summary="Login",
    description="Authenticate using OAuth2 password form and receive access/refresh tokens.",
)
async def login_for_tokens(
    form_data: OAuth2PasswordRequestForm = Depends(),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
) -> TokenPair:
    """Authenticate user and issue tokens."""
    repo = SecurityRepository(session)
    user = await repo.get_user_by_email(tenant_id, form_data.username)
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive")
    return _issue_tokens(user, tenant_id)


# PUBLIC_INTERFACE
@router.post(
    "/refresh",
    response_model=TokenPair,
    summary="Refresh access token",
    description="Issue a new token pair from a valid refresh token.",
)
async def refresh_token(
    payload: RefreshRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
) -> TokenPair:
    """Validate refresh token and issue a new access token pair."""
    try:
        user_id = token_subject(payload.refresh_token, token_type=REFRESH, tenant_id=tenant_id)
    except TokenError as exc:
        code = status.HTTP_403_FORBIDDEN if exc.tenant_mismatch else status.HTTP_401_UNAUTHORIZED
        raise HTTPException(status_code=code, detail=exc.message)

    user = await SecurityRepository(session).get_user_by_id(tenant_id, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return _issue_tokens(user, tenant_id)


# PUBLIC_INTERFACE
@router.get(
    "/me",
    response_model=UserRead,
    summary="Read current user",
    description="Return the current authenticated user and their roles.",
)
async def read_current_user(user=Depends(get_current_active_user)) -> UserRead:
    """Return current user profile."""
    return _user_to_read(user)
