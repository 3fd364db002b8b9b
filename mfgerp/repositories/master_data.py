from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.db.models.master_data import Bom, BomLine, BomOperation, Item, WorkCenter
from mfgerp.db.models.production import WorkOrder, WorkOrderState
from .base import BaseRepository


class ItemRepository(BaseRepository):
    """Repository for Items."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)

    async def get_item(self, tenant_id: UUID, item_id: UUID) -> Optional[Item]:
        stmt = select(Item).where(Item.tenant_id == tenant_id, Item.id == item_id)
        return await self.scalar_one_or_none(stmt)

    async def list_items(
        self, tenant_id: UUID, *, search: Optional[str], is_active: Optional[bool], limit: int, offset: int
    ) -> List[Item]:
        stmt = select(Item).where(Item.tenant_id == tenant_id)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(Item.code.ilike(pattern) | Item.name.ilike(pattern))
        if is_active is not None:
            stmt = stmt.where(Item.is_active == is_active)
        stmt = stmt.order_by(Item.code).offset(offset).limit(limit)
        res = await self.scalars(stmt)
        return list(res)

    async def get_tenants_for_items(self, item_ids: Iterable[UUID]) -> Dict[UUID, UUID]:
        """
        Map item id -> owning tenant id without tenant filtering, so callers can
        tell a dangling reference from a cross-tenant one.
        """
        ids = list(set(item_ids))
        if not ids:
            return {}
        stmt = select(Item.id, Item.tenant_id).where(Item.id.in_(ids))
        res = await self.execute(stmt)
        return {row.id: row.tenant_id for row in res}

    async def lock_items(self, tenant_id: UUID, item_ids: Iterable[UUID]) -> List[Item]:
        """
        SELECT ... FOR UPDATE the given items in ascending id order.

        Locking the item row stands in for locking its ledger aggregate.
        """
        ids = sorted(set(item_ids), key=str)
        if not ids:
            return []
        stmt = (
            select(Item)
            .where(Item.tenant_id == tenant_id, Item.id.in_(ids))
            .order_by(Item.id)
            .with_for_update()
        )
        res = await self.scalars(stmt)
        return list(res)


class WorkCenterRepository(BaseRepository):
    """Repository for work centers and their derived load."""

    async def get_tenants_for_work_centers(self, work_center_ids: Iterable[UUID]) -> Dict[UUID, UUID]:
        ids = list(set(work_center_ids))
        if not ids:
            return {}
        stmt = select(WorkCenter.id, WorkCenter.tenant_id).where(WorkCenter.id.in_(ids))
        res = await self.execute(stmt)
        return {row.id: row.tenant_id for row in res}

    async def list_with_load(
        self, tenant_id: UUID, *, is_active: Optional[bool], limit: int, offset: int
    ) -> List[Tuple[WorkCenter, int]]:
        """Return (work center, in-progress work order count) pairs ordered by name."""
        active = (
            select(WorkOrder.work_center_id, func.count(WorkOrder.id).label("active_count"))
            .where(
                WorkOrder.tenant_id == tenant_id,
                WorkOrder.state == WorkOrderState.IN_PROGRESS.value,
            )
            .group_by(WorkOrder.work_center_id)
            .subquery()
        )
        stmt = (
            select(WorkCenter, func.coalesce(active.c.active_count, 0))
            .outerjoin(active, active.c.work_center_id == WorkCenter.id)
            .where(WorkCenter.tenant_id == tenant_id)
        )
        if is_active is not None:
            stmt = stmt.where(WorkCenter.is_active == is_active)
        stmt = stmt.order_by(WorkCenter.name).offset(offset).limit(limit)
        res = await self.execute(stmt)
        return [(wc, int(count)) for wc, count in res.all()]


class BomRepository(BaseRepository):
    """Repository for BOMs, their component lines and operations."""

    async def get_bom(self, tenant_id: UUID, bom_id: UUID) -> Optional[Bom]:
        stmt = select(Bom).where(Bom.tenant_id == tenant_id, Bom.id == bom_id)
        return await self.scalar_one_or_none(stmt)

    async def list_boms(
        self, tenant_id: UUID, *, item_id: Optional[UUID], is_active: Optional[bool], limit: int, offset: int
    ) -> List[Bom]:
        stmt = select(Bom).where(Bom.tenant_id == tenant_id)
        if item_id:
            stmt = stmt.where(Bom.item_id == item_id)
        if is_active is not None:
            stmt = stmt.where(Bom.is_active == is_active)
        stmt = stmt.order_by(Bom.code).offset(offset).limit(limit)
        res = await self.scalars(stmt)
        return list(res)

    async def list_bom_lines(self, tenant_id: UUID, bom_id: UUID) -> List[BomLine]:
        stmt = (
            select(BomLine)
            .where(BomLine.tenant_id == tenant_id, BomLine.bom_id == bom_id)
            .order_by(BomLine.line_no.asc(), BomLine.id.asc())
        )
        res = await self.scalars(stmt)
        return list(res)

    async def list_bom_operations(self, tenant_id: UUID, bom_id: UUID) -> List[BomOperation]:
        stmt = (
            select(BomOperation)
            .where(BomOperation.tenant_id == tenant_id, BomOperation.bom_id == bom_id)
            .order_by(BomOperation.sequence.asc(), BomOperation.id.asc())
        )
        res = await self.scalars(stmt)
        return list(res)

    async def component_edges(self, tenant_id: UUID, item_ids: Iterable[UUID]) -> Dict[UUID, List[UUID]]:
        """
        For each item, the component item ids of all its active BOMs.

        Used to walk the multi-level BOM graph one level at a time.
        """
        ids = list(set(item_ids))
        if not ids:
            return {}
        stmt = (
            select(Bom.item_id, BomLine.component_item_id)
            .join(BomLine, BomLine.bom_id == Bom.id)
            .where(
                Bom.tenant_id == tenant_id,
                Bom.is_active.is_(True),
                Bom.item_id.in_(ids),
            )
        )
        res = await self.execute(stmt)
        edges: Dict[UUID, List[UUID]] = {}
        for parent, component in res.all():
            edges.setdefault(parent, []).append(component)
        return edges
