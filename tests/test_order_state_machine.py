from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import build_catalog
from mfgerp.db.models import OrderState, Priority, WorkOrderState
from mfgerp.schemas.production import ManufacturingOrderCreate
from mfgerp.services.errors import (
    InsufficientStockError,
    InvalidFilterError,
    InvalidQuantityError,
    InvalidReferenceError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
)
from mfgerp.services.production import OrderStateMachine, WorkCenterLoadService, WorkOrderService
from mfgerp.services.stock import StockLedgerService


def _payload(catalog, qty="10", **kwargs) -> ManufacturingOrderCreate:
    return ManufacturingOrderCreate(item_id=catalog.product, bom_id=catalog.bom, planned_qty=Decimal(qty), **kwargs)


async def _stock(session, catalog, item_id) -> Decimal:
    return await StockLedgerService(session).current_stock(item_id, catalog.tenant_id)


async def _ledger(session, catalog, order_id):
    return await StockLedgerService(session).list_entries(catalog.tenant_id, filters={"ref_id": order_id})


async def test_create_order_starts_in_draft_with_generated_number(session, catalog):
    machine = OrderStateMachine(session)
    year = datetime.now(timezone.utc).year

    first = await machine.create_order(_payload(catalog, priority=Priority.HIGH), catalog.tenant_id)
    second = await machine.create_order(_payload(catalog), catalog.tenant_id)

    assert first.state == OrderState.DRAFT.value
    assert first.order_no == f"MO-{year}-00001"
    assert second.order_no == f"MO-{year}-00002"
    assert first.priority == "high"
    assert first.produced_qty == Decimal("0")
    assert await _stock(session, catalog, catalog.steel_rod) == Decimal("1000")


async def test_order_numbers_are_sequenced_per_tenant(session, catalog, other_catalog):
    year = datetime.now(timezone.utc).year
    await OrderStateMachine(session).create_order(_payload(catalog), catalog.tenant_id)

    other = await OrderStateMachine(session).create_order(_payload(other_catalog), other_catalog.tenant_id)

    assert other.order_no == f"MO-{year}-00001"


async def test_create_order_rejects_inverted_schedule(session, catalog):
    start = datetime(2025, 3, 2, tzinfo=timezone.utc)

    with pytest.raises(InvalidScheduleError):
        await OrderStateMachine(session).create_order(
            _payload(catalog, planned_start=start, planned_end=start - timedelta(hours=1)), catalog.tenant_id
        )


async def test_create_order_validates_quantity_and_references(session, catalog, other_catalog):
    machine = OrderStateMachine(session)

    with pytest.raises(InvalidQuantityError):
        await machine.create_order(_payload(catalog, qty="0"), catalog.tenant_id)

    with pytest.raises(NotFoundError):
        await machine.create_order(_payload(other_catalog), catalog.tenant_id)

    with pytest.raises(InvalidReferenceError):
        await machine.create_order(
            ManufacturingOrderCreate(item_id=catalog.steel_rod, bom_id=catalog.bom, planned_qty=Decimal("1")),
            catalog.tenant_id,
        )


async def test_confirm_consumes_components_and_creates_work_orders(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)

    confirmed = await machine.confirm_order(order.id, catalog.tenant_id)

    assert confirmed.state == OrderState.CONFIRMED.value
    assert confirmed.actual_start is not None
    assert await _stock(session, catalog, catalog.steel_rod) == Decimal("980")
    assert await _stock(session, catalog, catalog.screws) == Decimal("4960")

    entries = await _ledger(session, catalog, order.id)
    assert {e.voucher_type for e in entries} == {"manufacturing_consumption"}
    assert {e.item_id: e.qty_delta for e in entries} == {
        catalog.steel_rod: Decimal("-20"),
        catalog.screws: Decimal("-40"),
    }

    detail = await machine.get_order_detail(order.id, catalog.tenant_id)
    suffix = order.order_no.split("-", 1)[1]
    assert [w.wo_number for w in detail.work_orders] == [f"WO-{suffix}-01", f"WO-{suffix}-02", f"WO-{suffix}-03"]
    assert [w.execution_order for w in detail.work_orders] == [10, 20, 20]
    assert [w.is_parallel for w in detail.work_orders] == [False, True, True]
    assert all(w.state == WorkOrderState.TODO.value for w in detail.work_orders)
    assert detail.work_orders[0].duration_minutes == Decimal("60")


async def test_confirm_with_shortage_changes_nothing(session):
    catalog = await build_catalog(session, "Short Supply", steel="15")
    machine = OrderStateMachine(session)
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id

    with pytest.raises(InsufficientStockError) as exc:
        await machine.confirm_order(order_id, catalog.tenant_id)

    assert exc.value.details["shortages"] == [
        {"item_id": str(catalog.steel_rod), "available": "15.000000", "required": "20.000000"}
    ]
    detail = await machine.get_order_detail(order_id, catalog.tenant_id)
    assert detail.state == OrderState.DRAFT.value
    assert detail.work_orders == []
    assert await _ledger(session, catalog, order_id) == []
    assert await _stock(session, catalog, catalog.screws) == Decimal("5000")


async def test_confirm_twice_is_an_invalid_transition(session, catalog):
    machine = OrderStateMachine(session)
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id
    await machine.confirm_order(order_id, catalog.tenant_id)

    with pytest.raises(InvalidTransitionError) as exc:
        await machine.confirm_order(order_id, catalog.tenant_id)

    assert exc.value.details == {"id": str(order_id), "from": "CONFIRMED", "to": "CONFIRMED"}
    assert await _stock(session, catalog, catalog.steel_rod) == Decimal("980")


async def test_order_without_bom_confirms_without_movements(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(
        ManufacturingOrderCreate(item_id=catalog.product, planned_qty=Decimal("3")), catalog.tenant_id
    )

    await machine.confirm_order(order.id, catalog.tenant_id)

    detail = await machine.get_order_detail(order.id, catalog.tenant_id)
    assert detail.state == OrderState.CONFIRMED.value
    assert detail.work_orders == []
    assert await _ledger(session, catalog, order.id) == []


async def test_cancel_draft_order(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)

    cancelled = await machine.cancel_order(order.id, catalog.tenant_id)

    assert cancelled.state == OrderState.CANCELLED.value
    assert await _ledger(session, catalog, order.id) == []


async def test_cancel_confirmed_order_restores_stock(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)
    await machine.confirm_order(order.id, catalog.tenant_id)

    await machine.cancel_order(order.id, catalog.tenant_id)

    assert await _stock(session, catalog, catalog.steel_rod) == Decimal("1000")
    assert await _stock(session, catalog, catalog.screws) == Decimal("5000")
    reversals = [e for e in await _ledger(session, catalog, order.id) if e.voucher_type == "manufacturing_consumption_reversal"]
    assert {e.item_id: e.qty_delta for e in reversals} == {
        catalog.steel_rod: Decimal("20"),
        catalog.screws: Decimal("40"),
    }
    detail = await machine.get_order_detail(order.id, catalog.tenant_id)
    assert detail.state == OrderState.CANCELLED.value
    assert all(w.state == WorkOrderState.CANCELLED.value for w in detail.work_orders)


async def test_cancel_twice_does_not_reverse_twice(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)
    await machine.confirm_order(order.id, catalog.tenant_id)
    await machine.cancel_order(order.id, catalog.tenant_id)

    with pytest.raises(InvalidTransitionError):
        await machine.cancel_order(order.id, catalog.tenant_id)

    assert await _stock(session, catalog, catalog.steel_rod) == Decimal("1000")


async def test_full_production_run(session, catalog):
    machine = OrderStateMachine(session)
    work_orders = WorkOrderService(session)
    operator = uuid4()
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id
    await machine.confirm_order(order_id, catalog.tenant_id)
    cut, assemble, paint = (await machine.get_order_detail(order_id, catalog.tenant_id)).work_orders

    with pytest.raises(InvalidTransitionError) as exc:
        await work_orders.start(assemble.id, catalog.tenant_id)
    assert exc.value.details["blocking_work_orders"] == [cut.wo_number]

    started = await work_orders.start(cut.id, catalog.tenant_id, operator_id=operator)
    assert started.state == WorkOrderState.IN_PROGRESS.value
    assert started.assigned_to == operator
    assert (await machine.get_order_detail(order_id, catalog.tenant_id)).state == OrderState.IN_PROGRESS.value

    with pytest.raises(InvalidTransitionError) as exc:
        await machine.complete_order(order_id, catalog.tenant_id)
    assert len(exc.value.details["open_work_orders"]) == 3

    await work_orders.complete(cut.id, catalog.tenant_id)
    await work_orders.start(assemble.id, catalog.tenant_id)
    await work_orders.start(paint.id, catalog.tenant_id)
    await work_orders.complete(assemble.id, catalog.tenant_id, notes="ok")
    await work_orders.cancel(paint.id, catalog.tenant_id, notes="not needed")

    done = await machine.complete_order(order_id, catalog.tenant_id)

    assert done.state == OrderState.DONE.value
    assert done.produced_qty == Decimal("10")
    assert done.actual_end is not None
    assert await _stock(session, catalog, catalog.product) == Decimal("10")
    with pytest.raises(InvalidTransitionError):
        await machine.cancel_order(order_id, catalog.tenant_id)


async def test_order_with_every_work_order_cancelled_cannot_complete(session, catalog):
    machine = OrderStateMachine(session)
    work_orders = WorkOrderService(session)
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id
    await machine.confirm_order(order_id, catalog.tenant_id)
    await machine.start_order(order_id, catalog.tenant_id)
    for wo in (await machine.get_order_detail(order_id, catalog.tenant_id)).work_orders:
        await work_orders.cancel(wo.id, catalog.tenant_id)

    with pytest.raises(InvalidTransitionError) as exc:
        await machine.complete_order(order_id, catalog.tenant_id)

    assert len(exc.value.details["cancelled_work_orders"]) == 3
    assert (await machine.get_order_detail(order_id, catalog.tenant_id)).state == OrderState.IN_PROGRESS.value
    assert await _stock(session, catalog, catalog.product) == Decimal("0")


async def test_unrouted_order_completes_without_work_orders(session, catalog):
    machine = OrderStateMachine(session)
    order_id = (
        await machine.create_order(
            ManufacturingOrderCreate(item_id=catalog.product, planned_qty=Decimal("2")), catalog.tenant_id
        )
    ).id
    await machine.confirm_order(order_id, catalog.tenant_id)
    await machine.start_order(order_id, catalog.tenant_id)

    done = await machine.complete_order(order_id, catalog.tenant_id)

    assert done.state == OrderState.DONE.value
    assert await _stock(session, catalog, catalog.product) == Decimal("2")


async def test_returned_orders_stay_readable_across_later_units_of_work(session, catalog):
    machine = OrderStateMachine(session)
    first = await machine.create_order(_payload(catalog), catalog.tenant_id)
    second = await machine.create_order(_payload(catalog, qty="1"), catalog.tenant_id)
    await StockLedgerService(session).record_movement(catalog.screws, catalog.tenant_id, -1, "manual_adjustment")
    await machine.confirm_order(second.id, catalog.tenant_id)

    assert first.state == OrderState.DRAFT.value
    assert first.planned_qty == Decimal("10")
    assert second.order_no.endswith("-00002")


async def test_start_order_explicitly(session, catalog):
    machine = OrderStateMachine(session)
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id

    with pytest.raises(InvalidTransitionError):
        await machine.start_order(order_id, catalog.tenant_id)

    await machine.confirm_order(order_id, catalog.tenant_id)
    started = await machine.start_order(order_id, catalog.tenant_id)

    assert started.state == OrderState.IN_PROGRESS.value
    with pytest.raises(InvalidTransitionError):
        await machine.cancel_order(order_id, catalog.tenant_id)


async def test_work_order_transitions_are_guarded(session, catalog):
    machine = OrderStateMachine(session)
    work_orders = WorkOrderService(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)
    await machine.confirm_order(order.id, catalog.tenant_id)
    cut = (await machine.get_order_detail(order.id, catalog.tenant_id)).work_orders[0]

    with pytest.raises(InvalidTransitionError):
        await work_orders.complete(cut.id, catalog.tenant_id)

    operator = uuid4()
    assigned = await work_orders.assign(cut.id, catalog.tenant_id, operator)
    assert assigned.assigned_to == operator

    await work_orders.cancel(cut.id, catalog.tenant_id)
    with pytest.raises(InvalidTransitionError):
        await work_orders.start(cut.id, catalog.tenant_id)
    with pytest.raises(InvalidTransitionError):
        await work_orders.assign(cut.id, catalog.tenant_id, operator)


async def test_orders_are_invisible_to_other_tenants(session, catalog, other_catalog):
    machine = OrderStateMachine(session)
    order_id = (await machine.create_order(_payload(catalog), catalog.tenant_id)).id

    with pytest.raises(NotFoundError):
        await machine.confirm_order(order_id, other_catalog.tenant_id)
    with pytest.raises(NotFoundError):
        await machine.get_order_detail(order_id, other_catalog.tenant_id)
    with pytest.raises(NotFoundError):
        await WorkOrderService(session).start(uuid4(), catalog.tenant_id)
    assert await machine.list_orders(other_catalog.tenant_id, filters={}) == []


async def test_list_orders_filters(session, catalog):
    machine = OrderStateMachine(session)
    draft = await machine.create_order(_payload(catalog), catalog.tenant_id)
    confirmed = await machine.create_order(_payload(catalog, qty="1"), catalog.tenant_id)
    await machine.confirm_order(confirmed.id, catalog.tenant_id)

    drafts = await machine.list_orders(catalog.tenant_id, filters={"state": "DRAFT"})
    assert [o.id for o in drafts] == [draft.id]

    with pytest.raises(InvalidFilterError):
        await machine.list_orders(catalog.tenant_id, filters={"tenant_id": str(catalog.tenant_id)})


async def test_work_center_utilization_follows_in_progress_work_orders(session, catalog):
    machine = OrderStateMachine(session)
    order = await machine.create_order(_payload(catalog), catalog.tenant_id)
    await machine.confirm_order(order.id, catalog.tenant_id)
    cut = (await machine.get_order_detail(order.id, catalog.tenant_id)).work_orders[0]
    await WorkOrderService(session).start(cut.id, catalog.tenant_id)

    centers = {wc.name: wc for wc in await WorkCenterLoadService(session).list_work_centers(catalog.tenant_id)}

    assert centers["Cutting"].active_work_orders == 1
    assert centers["Cutting"].utilization == Decimal("25.00")
    assert centers["Assembly"].utilization == Decimal("0.00")
    assert centers["Painting"].active_work_orders == 0
