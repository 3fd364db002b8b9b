from __future__ import annotations

import logging
from typing import AsyncGenerator, List
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core.logging import tenant_id_var, user_id_var
from mfgerp.core.policy import can_any
from mfgerp.core.security import ACCESS, TokenError, token_subject
from mfgerp.db.session import get_async_session, tenant_context
from mfgerp.repositories.security import SecurityRepository

logger = logging.getLogger(__name__)

# OAuth2 bearer (used by docs); login endpoint path referenced here
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


# PUBLIC_INTERFACE
async def get_tenant_id(x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID")) -> UUID:
    """
    Extract and validate the tenant id from the X-Tenant-ID header.

    Raises:
        HTTPException: 400 Bad Request if header missing or invalid UUID.
    Returns:
        UUID: tenant identifier
    """
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required.",
        )
    try:
        tenant_id = UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header must be a valid UUID string.",
        )
    tenant_id_var.set(str(tenant_id))
    return tenant_id


# PUBLIC_INTERFACE
async def get_tenant_session(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_async_session),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an AsyncSession bound to the request's tenant.

    On PostgreSQL every transaction of the session sets `app.tenant_id`, so
    row-level security applies on top of the repositories' tenant filters.
    """
    async with tenant_context(session, tenant_id):
        yield session


# PUBLIC_INTERFACE
async def get_current_user(
    tenant_id: UUID = Depends(get_tenant_id),
    token: str = Depends(oauth2_scheme),
    session: AsyncSession = Depends(get_tenant_session),
):
    """
    Resolve and return the current user from the Authorization bearer token.

    Validates the token, ensures tenant claim matches the incoming tenant header,
    and loads the user within that tenant.
    """
    try:
        user_uuid = token_subject(token, token_type=ACCESS, tenant_id=tenant_id)
    except TokenError as exc:
        code = status.HTTP_403_FORBIDDEN if exc.tenant_mismatch else status.HTTP_401_UNAUTHORIZED
        raise HTTPException(status_code=code, detail=exc.message)

    repo = SecurityRepository(session)
    user = await repo.get_user_by_id(tenant_id, user_uuid)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


# PUBLIC_INTERFACE
async def get_current_active_user(user=Depends(get_current_user)):
    """Ensure user is active."""
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


def role_names(user) -> List[str]:
    """Role names of a user whose roles relationship is loaded."""
    return sorted(r.name for r in (user.roles or []))


# PUBLIC_INTERFACE
def require_permission(action: str, resource: str):
    """
    Create a dependency that requires one of the current user's roles to grant
    `action` on `resource`. Resolves to the user so routes can record the actor.
    """

    async def _dep(user=Depends(get_current_active_user)):
        roles = role_names(user)
        if not can_any(roles, action, resource):
            logger.warning("Denied %s on %s for roles=%s", action, resource, roles)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        user_id_var.set(str(user.id))
        return user

    return _dep
