"""
Concurrent units of work on separate sessions sharing one database.

Stock for two orders covers only one of them; exactly one confirmation may
win and the ledger must never go negative.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal

from conftest import build_catalog
from mfgerp.schemas.production import ManufacturingOrderCreate
from mfgerp.services.errors import InsufficientStockError, InvalidTransitionError
from mfgerp.services.locks import LockRegistry, lock_registry
from mfgerp.services.production import OrderStateMachine
from mfgerp.services.stock import StockLedgerService


async def _create(session_factory, catalog, qty: str):
    async with session_factory() as s:
        return await OrderStateMachine(s).create_order(
            ManufacturingOrderCreate(item_id=catalog.product, bom_id=catalog.bom, planned_qty=Decimal(qty)),
            catalog.tenant_id,
        )


async def _confirm(session_factory, catalog, order_id):
    async with session_factory() as s:
        return await OrderStateMachine(s).confirm_order(order_id, catalog.tenant_id)


async def test_competing_confirmations_never_oversell(session, session_factory):
    # 600 steel rods cover one order of 300 units (2 per unit), not two.
    catalog = await build_catalog(session, "Race Works", steel="600")
    first = await _create(session_factory, catalog, "300")
    second = await _create(session_factory, catalog, "300")

    results = await asyncio.gather(
        _confirm(session_factory, catalog, first.id),
        _confirm(session_factory, catalog, second.id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStockError)
    async with session_factory() as s:
        assert await StockLedgerService(s).current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("0")


async def test_same_order_confirmed_twice_concurrently(session, session_factory):
    catalog = await build_catalog(session, "Double Click")
    order = await _create(session_factory, catalog, "10")

    results = await asyncio.gather(
        _confirm(session_factory, catalog, order.id),
        _confirm(session_factory, catalog, order.id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidTransitionError)
    async with session_factory() as s:
        assert await StockLedgerService(s).current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("980")


async def test_concurrent_movements_on_one_item_keep_a_consistent_balance(session, session_factory):
    catalog = await build_catalog(session, "Busy Dock", screws="100")

    async def take(qty: int):
        async with session_factory() as s:
            return await StockLedgerService(s).record_movement(
                catalog.screws, catalog.tenant_id, -qty, "manual_adjustment"
            )

    results = await asyncio.gather(*(take(30) for _ in range(4)), return_exceptions=True)

    entries = [r for r in results if not isinstance(r, Exception)]
    assert len(entries) == 3
    assert sorted(e.qty_after_transaction for e in entries) == [Decimal("10"), Decimal("40"), Decimal("70")]
    assert all(isinstance(r, InsufficientStockError) for r in results if isinstance(r, Exception))


async def test_lock_entries_are_dropped_once_nobody_holds_or_waits():
    registry = LockRegistry()
    order = []

    async def waiter():
        async with registry.hold("order:t:1"):
            order.append("waiter")

    async with registry.hold("order:t:1"):
        task = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert len(registry) == 1
        order.append("holder")
    await task

    assert order == ["holder", "waiter"]
    assert len(registry) == 0


async def test_order_lifecycles_leave_no_lock_entries_behind(session, session_factory):
    catalog = await build_catalog(session, "Steady Shop")
    before = len(lock_registry)

    for _ in range(5):
        order = await _create(session_factory, catalog, "1")
        await _confirm(session_factory, catalog, order.id)
        async with session_factory() as s:
            await OrderStateMachine(s).cancel_order(order.id, catalog.tenant_id)

    assert len(lock_registry) == before
