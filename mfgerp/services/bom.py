from __future__ import annotations

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.repositories.master_data import BomRepository, ItemRepository, WorkCenterRepository
from mfgerp.schemas.master_data import ResolvedBom, ResolvedComponent, ResolvedOperation
from mfgerp.services.base import BaseService
from mfgerp.services.errors import CyclicBomError, InvalidReferenceError, NotFoundError
from mfgerp.services.quantities import to_quantity

logger = logging.getLogger(__name__)


class BomResolver(BaseService):
    """
    Resolve a BOM into the flat component list and ordered operation list
    needed to produce one unit of its item.

    Resolution is single-level. Deeper levels are only walked to detect
    cycles, breadth-first with a visited set, so a malformed graph can never
    cause unbounded recursion.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.boms = BomRepository(session)
        self.items = ItemRepository(session)
        self.work_centers = WorkCenterRepository(session)

    # PUBLIC_INTERFACE
    async def resolve(self, bom_id: UUID, tenant_id: UUID) -> ResolvedBom:
        """
        Resolve `bom_id` within `tenant_id`.

        Raises:
            NotFoundError: BOM absent from the tenant.
            InvalidReferenceError: a component item or work center is missing
                or belongs to another tenant.
            CyclicBomError: the component graph leads back to the produced item.
        """
        bom = await self.boms.get_bom(tenant_id, bom_id)
        if bom is None:
            raise NotFoundError("BOM not found", details={"bom_id": str(bom_id)})

        lines = await self.boms.list_bom_lines(tenant_id, bom_id)
        operations = await self.boms.list_bom_operations(tenant_id, bom_id)

        await self._check_references(
            tenant_id,
            item_ids=[line.component_item_id for line in lines],
            work_center_ids=[op.work_center_id for op in operations],
        )
        await self._check_cycles(tenant_id, bom.item_id, [line.component_item_id for line in lines])

        merged: "OrderedDict[UUID, Decimal]" = OrderedDict()
        for line in lines:
            merged[line.component_item_id] = merged.get(line.component_item_id, Decimal("0")) + to_quantity(
                line.qty_per, field="qty_per"
            )

        resolved = ResolvedBom(
            bom_id=bom.id,
            item_id=bom.item_id,
            components=[ResolvedComponent(item_id=i, qty_per_unit=q) for i, q in merged.items()],
            operations=[
                ResolvedOperation(
                    operation_id=op.id,
                    work_center_id=op.work_center_id,
                    name=op.name,
                    duration_minutes=to_quantity(op.duration_minutes, field="duration_minutes"),
                    sequence=op.sequence,
                )
                # Repository already orders by (sequence, id); sort again so the
                # tie-break on identity does not depend on storage collation.
                for op in sorted(operations, key=lambda o: (o.sequence, str(o.id)))
            ],
        )
        logger.debug(
            "Resolved BOM %s: %d component(s), %d operation(s)",
            bom_id,
            len(resolved.components),
            len(resolved.operations),
        )
        return resolved

    async def _check_references(
        self, tenant_id: UUID, *, item_ids: List[UUID], work_center_ids: List[UUID]
    ) -> None:
        owners = await self.items.get_tenants_for_items(item_ids)
        bad_items = sorted(str(i) for i in set(item_ids) if owners.get(i) != tenant_id)
        if bad_items:
            raise InvalidReferenceError(
                "BOM references component items outside the tenant", details={"item_ids": bad_items}
            )
        wc_owners = await self.work_centers.get_tenants_for_work_centers(work_center_ids)
        bad_wcs = sorted(str(w) for w in set(work_center_ids) if wc_owners.get(w) != tenant_id)
        if bad_wcs:
            raise InvalidReferenceError(
                "BOM operations reference work centers outside the tenant",
                details={"work_center_ids": bad_wcs},
            )

    async def _check_cycles(self, tenant_id: UUID, root_item_id: UUID, components: List[UUID]) -> None:
        """Walk item -> active BOM components level by level looking for the root."""
        visited: Set[UUID] = set()
        frontier: Set[UUID] = set(components)
        depth = 1
        while frontier:
            if root_item_id in frontier:
                logger.warning("Cyclic BOM detected for item %s at depth %d", root_item_id, depth)
                raise CyclicBomError(
                    "BOM component graph cycles back to its produced item",
                    details={"item_id": str(root_item_id), "depth": depth},
                )
            visited |= frontier
            edges: Dict[UUID, List[UUID]] = await self.boms.component_edges(tenant_id, frontier)
            frontier = {child for children in edges.values() for child in children} - visited
            depth += 1
