from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core.logging import order_context
from mfgerp.core.settings import get_app_settings
from mfgerp.db.base import utcnow
from mfgerp.db.models.inventory import VoucherType
from mfgerp.db.models.production import ManufacturingOrder, OrderState, WorkOrder, WorkOrderState
from mfgerp.repositories.inventory import StockLedgerRepository
from mfgerp.repositories.master_data import WorkCenterRepository
from mfgerp.repositories.production import ManufacturingOrderRepository, WorkOrderRepository
from mfgerp.schemas.master_data import WorkCenterRead
from mfgerp.schemas.production import (
    ManufacturingOrderCreate,
    ManufacturingOrderDetail,
    ManufacturingOrderRead,
    OrderPlan,
    WorkOrderRead,
)
from mfgerp.services.base import BaseService
from mfgerp.services.errors import (
    ConflictError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
)
from mfgerp.services.locks import lock_registry
from mfgerp.services.planning import OrderPlanner
from mfgerp.services.quantities import QUANTUM
from mfgerp.services.realtime import broadcast_manager
from mfgerp.services.stock import StockLedgerService, StockMovement

logger = logging.getLogger(__name__)

ORDER_REF_TYPE = "manufacturing_order"

ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    OrderState.DRAFT.value: {OrderState.CONFIRMED.value, OrderState.CANCELLED.value},
    OrderState.CONFIRMED.value: {OrderState.IN_PROGRESS.value, OrderState.CANCELLED.value},
    OrderState.IN_PROGRESS.value: {OrderState.DONE.value},
    OrderState.DONE.value: set(),
    OrderState.CANCELLED.value: set(),
}

WORK_ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    WorkOrderState.TODO.value: {WorkOrderState.IN_PROGRESS.value, WorkOrderState.CANCELLED.value},
    WorkOrderState.IN_PROGRESS.value: {WorkOrderState.DONE.value, WorkOrderState.CANCELLED.value},
    WorkOrderState.DONE.value: set(),
    WorkOrderState.CANCELLED.value: set(),
}

TERMINAL_WORK_ORDER_STATES = {WorkOrderState.DONE.value, WorkOrderState.CANCELLED.value}


def _check_transition(table: Dict[str, Set[str]], kind: str, entity_id: UUID, current: str, target: str) -> None:
    if target not in table.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot move {kind} from {current} to {target}",
            details={"id": str(entity_id), "from": current, "to": target},
        )


def work_order_number(order_no: str, index: int) -> str:
    """WO-<order number without its prefix>-<nn>, e.g. MO-2025-00001 -> WO-2025-00001-01."""
    settings = get_app_settings()
    suffix = order_no.split("-", 1)[1] if "-" in order_no else order_no
    return f"{settings.WORK_ORDER_NUMBER_PREFIX}-{suffix}-{index:02d}"


def utilization(active_work_orders: int, capacity_per_hour: Any) -> Decimal:
    """Percentage of capacity taken by in-progress work orders, capped at 100."""
    capacity = Decimal(str(capacity_per_hour or 0))
    if capacity <= 0:
        return Decimal("0.00")
    pct = Decimal(active_work_orders) / capacity * Decimal("100")
    return min(Decimal("100"), pct).quantize(Decimal("0.01"))


class OrderStateMachine(BaseService):
    """
    Manufacturing order lifecycle.

    DRAFT -> CONFIRMED -> IN_PROGRESS -> DONE, with DRAFT/CONFIRMED -> CANCELLED.
    Confirm and cancel are compound: stock movements, work orders and the state
    change commit together or not at all. Every transition holds the order lock
    first and item locks (ascending id) second.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.orders = ManufacturingOrderRepository(session)
        self.work_orders = WorkOrderRepository(session)
        self.ledger = StockLedgerRepository(session)
        self.planner = OrderPlanner(session)
        self.stock = StockLedgerService(session)

    # PUBLIC_INTERFACE
    async def create_order(
        self, payload: ManufacturingOrderCreate, tenant_id: UUID, created_by: Optional[UUID] = None
    ) -> ManufacturingOrder:
        """
        Create a DRAFT order with a generated number.

        The item, BOM and quantity are validated by planning the order once;
        nothing about the plan is stored.
        """
        if payload.planned_start and payload.planned_end and payload.planned_end < payload.planned_start:
            raise InvalidScheduleError(
                "planned_end must not be before planned_start",
                details={"planned_start": payload.planned_start.isoformat(), "planned_end": payload.planned_end.isoformat()},
            )
        plan = await self.planner.plan(payload.item_id, payload.bom_id, payload.planned_qty, tenant_id)
        await self.release_snapshot()

        settings = get_app_settings()
        prefix = f"{settings.ORDER_NUMBER_PREFIX}-{utcnow().year}-"
        async with lock_registry.hold(f"order-number:{tenant_id}"):
            async with self.unit_of_work("create_order"):
                seq = await self.orders.count_with_prefix(tenant_id, prefix) + 1
                order = ManufacturingOrder(
                    tenant_id=tenant_id,
                    order_no=f"{prefix}{seq:05d}",
                    item_id=payload.item_id,
                    bom_id=payload.bom_id,
                    planned_qty=plan.planned_qty,
                    produced_qty=Decimal("0"),
                    state=OrderState.DRAFT.value,
                    priority=payload.priority.value,
                    planned_start=payload.planned_start,
                    planned_end=payload.planned_end,
                    created_by=created_by,
                )
                await self.orders.add(order)
                await self.orders.flush()

        logger.info("Created manufacturing order %s (%s)", order.order_no, order.id)
        await self._publish(tenant_id, "order.created", order, created_by)
        return order

    # PUBLIC_INTERFACE
    async def get_order_detail(self, order_id: UUID, tenant_id: UUID) -> ManufacturingOrderDetail:
        """Return the order with its work orders in execution order."""
        order = await self._load_order(tenant_id, order_id)
        work_orders = await self.work_orders.list_for_order(tenant_id, order_id)
        return ManufacturingOrderDetail(
            **ManufacturingOrderRead.model_validate(order).model_dump(),
            work_orders=[WorkOrderRead.model_validate(w) for w in work_orders],
        )

    # PUBLIC_INTERFACE
    async def list_orders(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int = 100, offset: int = 0
    ) -> List[ManufacturingOrder]:
        """List orders newest first with allow-listed filters."""
        return await self.orders.list_orders(tenant_id, filters=filters, limit=limit, offset=offset)

    # PUBLIC_INTERFACE
    async def confirm_order(
        self, order_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None
    ) -> ManufacturingOrder:
        """
        DRAFT -> CONFIRMED.

        Re-plans from the current BOM, consumes every component and creates one
        TODO work order per operation in a single unit of work. Any shortage
        leaves the order in DRAFT with no ledger entries and no work orders.
        """
        await self.release_snapshot()
        async with AsyncExitStack() as locks:
            locks.enter_context(order_context(order_id))
            await locks.enter_async_context(lock_registry.hold(lock_registry.order_key(tenant_id, order_id)))
            async with self.unit_of_work("confirm_order"):
                order = await self._load_order(tenant_id, order_id, for_update=True)
                _check_transition(ORDER_TRANSITIONS, "order", order_id, order.state, OrderState.CONFIRMED.value)

                plan = await self.planner.plan(order.item_id, order.bom_id, order.planned_qty, tenant_id)
                await locks.enter_async_context(
                    lock_registry.hold_items(tenant_id, [r.item_id for r in plan.component_requirements])
                )
                await self.stock.post_movements(
                    tenant_id,
                    [
                        StockMovement(
                            item_id=req.item_id,
                            qty_delta=-req.total_qty,
                            voucher_type=VoucherType.MANUFACTURING_CONSUMPTION.value,
                            ref_type=ORDER_REF_TYPE,
                            ref_id=order.id,
                            notes=f"Consumed by {order.order_no}",
                        )
                        for req in plan.component_requirements
                        if req.total_qty > 0
                    ],
                    created_by=user_id,
                )
                await self._materialize_work_orders(tenant_id, order, plan)
                order = await self._guarded_transition(
                    tenant_id,
                    order,
                    OrderState.CONFIRMED.value,
                    {"actual_start": order.actual_start or utcnow()},
                )

        logger.info(
            "Confirmed order %s: %d component(s) consumed, %d work order(s)",
            order.order_no,
            len(plan.component_requirements),
            len(plan.work_order_specs),
        )
        await self._publish(tenant_id, "order.confirmed", order, user_id)
        return order

    # PUBLIC_INTERFACE
    async def cancel_order(
        self, order_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None
    ) -> ManufacturingOrder:
        """
        DRAFT/CONFIRMED -> CANCELLED.

        A confirmed order gets reversal entries that offset its net consumption
        per item, and its open work orders are cancelled, in one unit of work.
        """
        await self.release_snapshot()
        async with AsyncExitStack() as locks:
            locks.enter_context(order_context(order_id))
            await locks.enter_async_context(lock_registry.hold(lock_registry.order_key(tenant_id, order_id)))
            async with self.unit_of_work("cancel_order"):
                order = await self._load_order(tenant_id, order_id, for_update=True)
                _check_transition(ORDER_TRANSITIONS, "order", order_id, order.state, OrderState.CANCELLED.value)

                reversed_items = 0
                if order.state == OrderState.CONFIRMED.value:
                    net = await self.ledger.net_by_item_for_ref(
                        tenant_id,
                        ref_type=ORDER_REF_TYPE,
                        ref_id=order.id,
                        voucher_types=[
                            VoucherType.MANUFACTURING_CONSUMPTION.value,
                            VoucherType.MANUFACTURING_CONSUMPTION_REVERSAL.value,
                        ],
                    )
                    offsets = {item_id: qty for item_id, qty in net.items() if qty.quantize(QUANTUM) != 0}
                    await locks.enter_async_context(lock_registry.hold_items(tenant_id, offsets.keys()))
                    await self.stock.post_movements(
                        tenant_id,
                        [
                            StockMovement(
                                item_id=item_id,
                                qty_delta=(-qty).quantize(QUANTUM),
                                voucher_type=VoucherType.MANUFACTURING_CONSUMPTION_REVERSAL.value,
                                ref_type=ORDER_REF_TYPE,
                                ref_id=order.id,
                                notes=f"Reversal for cancelled {order.order_no}",
                            )
                            for item_id, qty in sorted(offsets.items(), key=lambda kv: str(kv[0]))
                        ],
                        created_by=user_id,
                    )
                    reversed_items = len(offsets)
                    await self._cancel_open_work_orders(tenant_id, order.id)

                order = await self._guarded_transition(tenant_id, order, OrderState.CANCELLED.value, {})

        logger.info("Cancelled order %s; %d item(s) returned to stock", order.order_no, reversed_items)
        await self._publish(tenant_id, "order.cancelled", order, user_id)
        return order

    # PUBLIC_INTERFACE
    async def start_order(
        self, order_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None
    ) -> ManufacturingOrder:
        """CONFIRMED -> IN_PROGRESS."""
        await self.release_snapshot()
        with order_context(order_id):
            async with lock_registry.hold(lock_registry.order_key(tenant_id, order_id)):
                async with self.unit_of_work("start_order"):
                    order = await self._load_order(tenant_id, order_id, for_update=True)
                    _check_transition(ORDER_TRANSITIONS, "order", order_id, order.state, OrderState.IN_PROGRESS.value)
                    order = await self._guarded_transition(tenant_id, order, OrderState.IN_PROGRESS.value, {})

        logger.info("Started order %s", order.order_no)
        await self._publish(tenant_id, "order.started", order, user_id)
        return order

    # PUBLIC_INTERFACE
    async def complete_order(
        self, order_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None
    ) -> ManufacturingOrder:
        """
        IN_PROGRESS -> DONE.

        Every work order must be finished or cancelled, and a routed order needs
        at least one finished work order. The finished quantity is received
        into stock against the order.
        """
        await self.release_snapshot()
        async with AsyncExitStack() as locks:
            locks.enter_context(order_context(order_id))
            await locks.enter_async_context(lock_registry.hold(lock_registry.order_key(tenant_id, order_id)))
            async with self.unit_of_work("complete_order"):
                order = await self._load_order(tenant_id, order_id, for_update=True)
                _check_transition(ORDER_TRANSITIONS, "order", order_id, order.state, OrderState.DONE.value)

                work_orders = await self.work_orders.list_for_order(tenant_id, order.id)
                open_wos = [w.wo_number for w in work_orders if w.state not in TERMINAL_WORK_ORDER_STATES]
                if open_wos:
                    raise InvalidTransitionError(
                        "Order still has open work orders",
                        details={"id": str(order_id), "open_work_orders": open_wos},
                    )
                if work_orders and not any(w.state == WorkOrderState.DONE.value for w in work_orders):
                    raise InvalidTransitionError(
                        "Every work order was cancelled; nothing was produced",
                        details={"id": str(order_id), "cancelled_work_orders": [w.wo_number for w in work_orders]},
                    )

                await locks.enter_async_context(lock_registry.hold_items(tenant_id, [order.item_id]))
                await self.stock.post_movements(
                    tenant_id,
                    [
                        StockMovement(
                            item_id=order.item_id,
                            qty_delta=order.planned_qty,
                            voucher_type=VoucherType.MANUFACTURING_RECEIPT.value,
                            ref_type=ORDER_REF_TYPE,
                            ref_id=order.id,
                            notes=f"Produced by {order.order_no}",
                        )
                    ],
                    created_by=user_id,
                )
                order = await self._guarded_transition(
                    tenant_id,
                    order,
                    OrderState.DONE.value,
                    {"produced_qty": order.planned_qty, "actual_end": utcnow()},
                )

        logger.info("Completed order %s; received %s", order.order_no, order.produced_qty)
        await self._publish(tenant_id, "order.completed", order, user_id)
        return order

    async def _load_order(self, tenant_id: UUID, order_id: UUID, *, for_update: bool = False) -> ManufacturingOrder:
        order = await self.orders.get_order(tenant_id, order_id, for_update=for_update)
        if order is None:
            raise NotFoundError("Manufacturing order not found", details={"order_id": str(order_id)})
        return order

    async def _guarded_transition(
        self, tenant_id: UUID, order: ManufacturingOrder, target: str, values: Dict[str, Any]
    ) -> ManufacturingOrder:
        applied = await self.orders.transition(
            tenant_id, order.id, expected_state=order.state, values={"state": target, **values}
        )
        if not applied:
            logger.warning("Guarded transition of order %s to %s matched no row", order.id, target)
            raise ConflictError(
                "Order was modified concurrently",
                details={"id": str(order.id), "expected_state": order.state, "target_state": target},
            )
        return await self._load_order(tenant_id, order.id)

    async def _materialize_work_orders(self, tenant_id: UUID, order: ManufacturingOrder, plan: OrderPlan) -> List[WorkOrder]:
        created = [
            WorkOrder(
                tenant_id=tenant_id,
                wo_number=work_order_number(order.order_no, idx),
                manufacturing_order_id=order.id,
                work_center_id=spec.work_center_id,
                bom_operation_id=spec.operation_id,
                operation_name=spec.operation_name,
                execution_order=spec.execution_order,
                is_parallel=spec.parallel,
                planned_qty=order.planned_qty,
                duration_minutes=spec.duration_minutes,
                state=WorkOrderState.TODO.value,
            )
            for idx, spec in enumerate(plan.work_order_specs, start=1)
        ]
        await self.work_orders.add_all(created)
        await self.work_orders.flush()
        return created

    async def _cancel_open_work_orders(self, tenant_id: UUID, order_id: UUID) -> None:
        now = utcnow()
        for wo in await self.work_orders.list_for_order(tenant_id, order_id):
            if wo.state in TERMINAL_WORK_ORDER_STATES:
                continue
            wo.state = WorkOrderState.CANCELLED.value
            wo.ended_at = now
        await self.work_orders.flush()

    async def _publish(self, tenant_id: UUID, event_type: str, order: ManufacturingOrder, user_id: Optional[UUID]) -> None:
        await broadcast_manager.publish_production_event(
            tenant_id,
            event_type,
            {"order_id": str(order.id), "order_no": order.order_no, "state": order.state},
            user_id=user_id,
        )


class WorkOrderService(BaseService):
    """
    Work order lifecycle: TODO -> IN_PROGRESS -> DONE, cancel from TODO or
    IN_PROGRESS, operator assignment while open.

    Work orders of a stage may only start once every earlier stage is finished
    or cancelled; siblings sharing a stage run in parallel.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.orders = ManufacturingOrderRepository(session)
        self.work_orders = WorkOrderRepository(session)

    # PUBLIC_INTERFACE
    async def list_work_orders(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int = 100, offset: int = 0
    ) -> List[WorkOrder]:
        """List work orders with allow-listed filters."""
        return await self.work_orders.list_work_orders(tenant_id, filters=filters, limit=limit, offset=offset)

    # PUBLIC_INTERFACE
    async def start(
        self, wo_id: UUID, tenant_id: UUID, operator_id: Optional[UUID] = None, notes: Optional[str] = None
    ) -> WorkOrder:
        """
        TODO -> IN_PROGRESS. Moves a CONFIRMED parent order to IN_PROGRESS.
        """
        async with self._locked(wo_id, tenant_id, "start_work_order") as (order, wo):
            _check_transition(WORK_ORDER_TRANSITIONS, "work order", wo.id, wo.state, WorkOrderState.IN_PROGRESS.value)
            if order.state not in (OrderState.CONFIRMED.value, OrderState.IN_PROGRESS.value):
                raise InvalidTransitionError(
                    "Work orders can only start on a confirmed or in-progress order",
                    details={"id": str(wo.id), "order_state": order.state},
                )
            siblings = await self.work_orders.list_for_order(tenant_id, order.id)
            blocking = [
                s.wo_number
                for s in siblings
                if s.execution_order < wo.execution_order and s.state not in TERMINAL_WORK_ORDER_STATES
            ]
            if blocking:
                raise InvalidTransitionError(
                    "Earlier operations are not finished",
                    details={"id": str(wo.id), "blocking_work_orders": blocking},
                )

            wo.state = WorkOrderState.IN_PROGRESS.value
            wo.started_at = utcnow()
            if operator_id is not None:
                wo.assigned_to = operator_id
            if notes:
                wo.notes = notes
            await self.work_orders.flush()

            if order.state == OrderState.CONFIRMED.value:
                applied = await self.orders.transition(
                    tenant_id, order.id, expected_state=OrderState.CONFIRMED.value,
                    values={"state": OrderState.IN_PROGRESS.value},
                )
                if not applied:
                    raise ConflictError("Order was modified concurrently", details={"id": str(order.id)})
                logger.info("Order %s moved to IN_PROGRESS by its first work order", order.order_no)

        logger.info("Started work order %s", wo.wo_number)
        await self._publish(tenant_id, "work_order.started", wo, operator_id)
        return wo

    # PUBLIC_INTERFACE
    async def complete(
        self, wo_id: UUID, tenant_id: UUID, operator_id: Optional[UUID] = None, notes: Optional[str] = None
    ) -> WorkOrder:
        """IN_PROGRESS -> DONE."""
        async with self._locked(wo_id, tenant_id, "complete_work_order") as (_order, wo):
            _check_transition(WORK_ORDER_TRANSITIONS, "work order", wo.id, wo.state, WorkOrderState.DONE.value)
            wo.state = WorkOrderState.DONE.value
            wo.ended_at = utcnow()
            if notes:
                wo.notes = notes
            await self.work_orders.flush()

        logger.info("Completed work order %s", wo.wo_number)
        await self._publish(tenant_id, "work_order.completed", wo, operator_id)
        return wo

    # PUBLIC_INTERFACE
    async def cancel(
        self, wo_id: UUID, tenant_id: UUID, operator_id: Optional[UUID] = None, notes: Optional[str] = None
    ) -> WorkOrder:
        """TODO/IN_PROGRESS -> CANCELLED."""
        async with self._locked(wo_id, tenant_id, "cancel_work_order") as (_order, wo):
            _check_transition(WORK_ORDER_TRANSITIONS, "work order", wo.id, wo.state, WorkOrderState.CANCELLED.value)
            wo.state = WorkOrderState.CANCELLED.value
            wo.ended_at = utcnow()
            if notes:
                wo.notes = notes
            await self.work_orders.flush()

        logger.info("Cancelled work order %s", wo.wo_number)
        await self._publish(tenant_id, "work_order.cancelled", wo, operator_id)
        return wo

    # PUBLIC_INTERFACE
    async def assign(self, wo_id: UUID, tenant_id: UUID, operator_id: UUID) -> WorkOrder:
        """Assign an operator to an open work order."""
        async with self._locked(wo_id, tenant_id, "assign_work_order") as (_order, wo):
            if wo.state in TERMINAL_WORK_ORDER_STATES:
                raise InvalidTransitionError(
                    "Cannot assign a finished work order",
                    details={"id": str(wo.id), "state": wo.state},
                )
            wo.assigned_to = operator_id
            await self.work_orders.flush()

        logger.info("Assigned work order %s to %s", wo.wo_number, operator_id)
        await self._publish(tenant_id, "work_order.assigned", wo, operator_id)
        return wo

    @asynccontextmanager
    async def _locked(
        self, wo_id: UUID, tenant_id: UUID, operation: str
    ) -> AsyncIterator[Tuple[ManufacturingOrder, WorkOrder]]:
        """
        Hold the parent order lock and one unit of work, yielding the row-locked
        (order, work order) pair re-read inside the transaction.
        """
        wo = await self.work_orders.get_work_order(tenant_id, wo_id)
        if wo is None:
            raise NotFoundError("Work order not found", details={"work_order_id": str(wo_id)})
        order_id = wo.manufacturing_order_id
        await self.release_snapshot()
        with order_context(order_id):
            async with lock_registry.hold(lock_registry.order_key(tenant_id, order_id)):
                async with self.unit_of_work(operation):
                    order = await self.orders.get_order(tenant_id, order_id, for_update=True)
                    wo = await self.work_orders.get_work_order(tenant_id, wo_id, for_update=True)
                    if order is None or wo is None:
                        raise NotFoundError("Work order not found", details={"work_order_id": str(wo_id)})
                    yield order, wo

    async def _publish(self, tenant_id: UUID, event_type: str, wo: WorkOrder, user_id: Optional[UUID]) -> None:
        await broadcast_manager.publish_production_event(
            tenant_id,
            event_type,
            {
                "work_order_id": str(wo.id),
                "wo_number": wo.wo_number,
                "manufacturing_order_id": str(wo.manufacturing_order_id),
                "state": wo.state,
                "assigned_to": str(wo.assigned_to) if wo.assigned_to else None,
            },
            user_id=user_id,
        )


class WorkCenterLoadService(BaseService):
    """Derived work center utilization from in-progress work orders."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.work_centers = WorkCenterRepository(session)

    # PUBLIC_INTERFACE
    async def list_work_centers(
        self, tenant_id: UUID, *, is_active: Optional[bool] = None, limit: int = 100, offset: int = 0
    ) -> List[WorkCenterRead]:
        """Work centers with their active work order count and utilization."""
        rows = await self.work_centers.list_with_load(tenant_id, is_active=is_active, limit=limit, offset=offset)
        return [
            WorkCenterRead(
                id=wc.id,
                code=wc.code,
                name=wc.name,
                capacity_per_hour=wc.capacity_per_hour,
                is_active=wc.is_active,
                active_work_orders=count,
                utilization=utilization(count, wc.capacity_per_hour),
            )
            for wc, count in rows
        ]
