from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.db.models.production import ManufacturingOrder, WorkOrder
from .base import BaseRepository, FilterBuilder, build_filters

ORDER_FILTERS: Dict[str, FilterBuilder] = {
    "state": lambda v: ManufacturingOrder.state == v,
    "item_id": lambda v: ManufacturingOrder.item_id == v,
    "priority": lambda v: ManufacturingOrder.priority == v,
    "order_no": lambda v: ManufacturingOrder.order_no.ilike(f"%{v}%"),
}

WORK_ORDER_FILTERS: Dict[str, FilterBuilder] = {
    "state": lambda v: WorkOrder.state == v,
    "manufacturing_order_id": lambda v: WorkOrder.manufacturing_order_id == v,
    "work_center_id": lambda v: WorkOrder.work_center_id == v,
    "assigned_to": lambda v: WorkOrder.assigned_to == v,
}


class ManufacturingOrderRepository(BaseRepository):
    """Repository for manufacturing orders."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)

    async def get_order(
        self, tenant_id: UUID, order_id: UUID, *, for_update: bool = False
    ) -> Optional[ManufacturingOrder]:
        stmt = select(ManufacturingOrder).where(
            ManufacturingOrder.tenant_id == tenant_id, ManufacturingOrder.id == order_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        # Always re-read the row; never trust a copy cached in the identity map.
        stmt = stmt.execution_options(populate_existing=True)
        return await self.scalar_one_or_none(stmt)

    async def list_orders(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int, offset: int
    ) -> List[ManufacturingOrder]:
        stmt = select(ManufacturingOrder).where(ManufacturingOrder.tenant_id == tenant_id)
        for criterion in build_filters(ORDER_FILTERS, filters):
            stmt = stmt.where(criterion)
        stmt = stmt.order_by(ManufacturingOrder.created_at.desc(), ManufacturingOrder.order_no.desc())
        stmt = stmt.offset(offset).limit(limit)
        res = await self.scalars(stmt)
        return list(res)

    async def count_with_prefix(self, tenant_id: UUID, prefix: str) -> int:
        stmt = select(func.count(ManufacturingOrder.id)).where(
            ManufacturingOrder.tenant_id == tenant_id,
            ManufacturingOrder.order_no.like(f"{prefix}%"),
        )
        res = await self.execute(stmt)
        return int(res.scalar_one())

    async def transition(
        self, tenant_id: UUID, order_id: UUID, *, expected_state: str, values: Dict[str, Any]
    ) -> bool:
        """
        Guarded state update: only applies when the row is still in
        `expected_state`. Returns False when another unit of work got there first.
        """
        stmt = (
            update(ManufacturingOrder)
            .where(
                ManufacturingOrder.tenant_id == tenant_id,
                ManufacturingOrder.id == order_id,
                ManufacturingOrder.state == expected_state,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self.execute(stmt)
        return res.rowcount == 1


class WorkOrderRepository(BaseRepository):
    """Repository for work orders."""

    async def get_work_order(
        self, tenant_id: UUID, wo_id: UUID, *, for_update: bool = False
    ) -> Optional[WorkOrder]:
        stmt = select(WorkOrder).where(WorkOrder.tenant_id == tenant_id, WorkOrder.id == wo_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return await self.scalar_one_or_none(stmt)

    async def list_for_order(self, tenant_id: UUID, order_id: UUID) -> List[WorkOrder]:
        stmt = (
            select(WorkOrder)
            .where(WorkOrder.tenant_id == tenant_id, WorkOrder.manufacturing_order_id == order_id)
            .order_by(WorkOrder.execution_order.asc(), WorkOrder.wo_number.asc())
            .execution_options(populate_existing=True)
        )
        res = await self.scalars(stmt)
        return list(res)

    async def list_work_orders(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int, offset: int
    ) -> List[WorkOrder]:
        stmt = select(WorkOrder).where(WorkOrder.tenant_id == tenant_id)
        for criterion in build_filters(WORK_ORDER_FILTERS, filters):
            stmt = stmt.where(criterion)
        stmt = stmt.order_by(WorkOrder.created_at.desc(), WorkOrder.wo_number.asc())
        stmt = stmt.offset(offset).limit(limit)
        res = await self.scalars(stmt)
        return list(res)
