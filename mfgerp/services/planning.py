from __future__ import annotations

import logging
from collections import Counter
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.repositories.master_data import ItemRepository
from mfgerp.schemas.production import ComponentRequirement, OrderPlan, WorkOrderSpec
from mfgerp.services.base import BaseService
from mfgerp.services.bom import BomResolver
from mfgerp.services.errors import InvalidReferenceError, NotFoundError
from mfgerp.services.quantities import QUANTUM, positive_quantity

logger = logging.getLogger(__name__)


class OrderPlanner(BaseService):
    """Compute component requirements and the work order fan-out for an order."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.items = ItemRepository(session)
        self.resolver = BomResolver(session)

    # PUBLIC_INTERFACE
    async def plan(
        self, item_id: UUID, bom_id: Optional[UUID], planned_qty: Any, tenant_id: UUID
    ) -> OrderPlan:
        """
        Plan `planned_qty` units of `item_id` routed through `bom_id`.

        Without a BOM the plan is empty. Totals are exact decimal products at
        storage scale; operations sharing a sequence are flagged parallel.
        """
        qty = positive_quantity(planned_qty, field="planned_qty")
        item = await self.items.get_item(tenant_id, item_id)
        if item is None:
            raise NotFoundError("Item not found", details={"item_id": str(item_id)})

        if bom_id is None:
            return OrderPlan(item_id=item_id, bom_id=None, planned_qty=qty)

        resolved = await self.resolver.resolve(bom_id, tenant_id)
        if resolved.item_id != item_id:
            raise InvalidReferenceError(
                "BOM does not produce the requested item",
                details={"bom_id": str(bom_id), "bom_item_id": str(resolved.item_id), "item_id": str(item_id)},
            )

        requirements = [
            ComponentRequirement(
                item_id=c.item_id,
                qty_per_unit=c.qty_per_unit,
                total_qty=(c.qty_per_unit * qty).quantize(QUANTUM),
            )
            for c in resolved.components
        ]
        stages = Counter(op.sequence for op in resolved.operations)
        specs = [
            WorkOrderSpec(
                operation_id=op.operation_id,
                work_center_id=op.work_center_id,
                operation_name=op.name,
                execution_order=op.sequence,
                parallel=stages[op.sequence] > 1,
                duration_minutes=(Decimal(op.duration_minutes) * qty).quantize(QUANTUM),
            )
            for op in resolved.operations
        ]
        logger.debug("Planned %s x item %s: %d requirement(s), %d work order(s)", qty, item_id, len(requirements), len(specs))
        return OrderPlan(
            item_id=item_id,
            bom_id=bom_id,
            planned_qty=qty,
            component_requirements=requirements,
            work_order_specs=specs,
        )
