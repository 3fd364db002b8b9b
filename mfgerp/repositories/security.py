from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from mfgerp.db.models.security import Role, User, UserRole
from .base import BaseRepository


class SecurityRepository(BaseRepository):
    """Read access to users and their roles within a tenant."""

    async def get_user_by_email(self, tenant_id: UUID, email: str) -> Optional[User]:
        stmt = select(User).where(User.tenant_id == tenant_id, User.email == email)
        return await self.scalar_one_or_none(stmt)

    async def get_user_by_id(self, tenant_id: UUID, user_id: UUID) -> Optional[User]:
        stmt = select(User).where(User.tenant_id == tenant_id, User.id == user_id)
        return await self.scalar_one_or_none(stmt)

    async def list_roles_for_user(self, tenant_id: UUID, user_id: UUID) -> List[Role]:
        stmt = (
            select(Role)
            .join(UserRole, Role.id == UserRole.role_id)
            .where(UserRole.tenant_id == tenant_id, UserRole.user_id == user_id)
            .order_by(Role.name)
        )
        result = await self.scalars(stmt)
        return list(result)
