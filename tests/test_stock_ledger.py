from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from mfgerp.db.models import StockPolicy, VoucherType
from mfgerp.services.errors import (
    InsufficientStockError,
    InvalidFilterError,
    InvalidQuantityError,
    InvalidReferenceError,
    NotFoundError,
)
from mfgerp.services.stock import StockLedgerService, StockMovement


async def test_movement_updates_running_balance(session, catalog):
    service = StockLedgerService(session)

    entry = await service.record_movement(
        catalog.steel_rod, catalog.tenant_id, -20, VoucherType.MANUAL_ADJUSTMENT, notes="scrap"
    )

    assert entry.qty_after_transaction == Decimal("980")
    assert entry.rate == Decimal("5.5")
    assert entry.value_delta == Decimal("-110")
    assert await service.current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("980")


async def test_explicit_rate_overrides_standard_rate(session, catalog):
    entry = await StockLedgerService(session).record_movement(
        catalog.screws, catalog.tenant_id, 100, "purchase_receipt", rate=Decimal("0.1")
    )

    assert entry.value_delta == Decimal("10")


async def test_zero_delta_is_rejected(session, catalog):
    with pytest.raises(InvalidQuantityError):
        await StockLedgerService(session).record_movement(catalog.steel_rod, catalog.tenant_id, 0, "manual_adjustment")


async def test_unknown_voucher_type_is_rejected(session, catalog):
    with pytest.raises(InvalidReferenceError):
        await StockLedgerService(session).record_movement(catalog.steel_rod, catalog.tenant_id, 1, "gift")


async def test_overdraw_is_rejected_and_nothing_is_written(session, catalog):
    service = StockLedgerService(session)

    with pytest.raises(InsufficientStockError) as exc:
        await service.record_movement(catalog.steel_rod, catalog.tenant_id, -1001, "manual_adjustment")

    shortage = exc.value.details["shortages"][0]
    assert shortage["item_id"] == str(catalog.steel_rod)
    assert Decimal(shortage["available"]) == Decimal("1000")
    assert await service.current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("1000")


async def test_tenant_policy_allows_negative_for_voucher_type(session, catalog):
    session.add(
        StockPolicy(tenant_id=catalog.tenant_id, voucher_type=VoucherType.BACKORDER.value, allow_negative=True)
    )
    await session.commit()
    service = StockLedgerService(session)

    entry = await service.record_movement(catalog.steel_rod, catalog.tenant_id, -1500, VoucherType.BACKORDER)

    assert entry.qty_after_transaction == Decimal("-500")
    with pytest.raises(InsufficientStockError):
        await service.record_movement(catalog.steel_rod, catalog.tenant_id, -1, VoucherType.MANUAL_ADJUSTMENT)


async def test_batch_fails_as_a_whole(session, catalog):
    service = StockLedgerService(session)

    with pytest.raises(InsufficientStockError) as exc:
        async with service.unit_of_work("batch"):
            await service.post_movements(
                catalog.tenant_id,
                [
                    StockMovement(item_id=catalog.steel_rod, qty_delta=Decimal("-10"), voucher_type="manual_adjustment"),
                    StockMovement(item_id=catalog.screws, qty_delta=Decimal("-9999"), voucher_type="manual_adjustment"),
                ],
            )

    assert [s["item_id"] for s in exc.value.details["shortages"]] == [str(catalog.screws)]
    assert await service.current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("1000")


async def test_item_of_another_tenant_is_not_found(session, catalog, other_catalog):
    service = StockLedgerService(session)

    with pytest.raises(NotFoundError):
        await service.record_movement(other_catalog.steel_rod, catalog.tenant_id, 1, "manual_adjustment")
    with pytest.raises(NotFoundError):
        await service.current_stock(other_catalog.steel_rod, catalog.tenant_id)


async def test_balances_are_isolated_per_tenant(session, catalog, other_catalog):
    service = StockLedgerService(session)

    await service.record_movement(catalog.steel_rod, catalog.tenant_id, -300, "manual_adjustment")

    assert await service.current_stock(other_catalog.steel_rod, other_catalog.tenant_id) == Decimal("1000")


async def test_current_stock_of_item_without_entries_is_zero(session, catalog):
    assert await StockLedgerService(session).current_stock(catalog.product, catalog.tenant_id) == Decimal("0")


async def test_list_entries_filters_by_allow_list(session, catalog):
    service = StockLedgerService(session)
    ref = uuid4()
    await service.record_movement(
        catalog.screws, catalog.tenant_id, -5, "manual_adjustment", ref_type="cycle_count", ref_id=ref
    )

    entries = await service.list_entries(catalog.tenant_id, filters={"ref_id": ref})
    assert [e.qty_delta for e in entries] == [Decimal("-5")]

    entries = await service.list_entries(catalog.tenant_id, filters={"item_id": catalog.screws, "voucher_type": None})
    assert len(entries) == 2

    with pytest.raises(InvalidFilterError):
        await service.list_entries(catalog.tenant_id, filters={"1=1; drop table items": "x"})


async def test_movement_after_a_read_starts_from_a_fresh_snapshot(session_factory, session, catalog):
    service = StockLedgerService(session)
    opening = (await service.list_entries(catalog.tenant_id, filters={"item_id": catalog.steel_rod}))[0]
    assert session.in_transaction()

    async with session_factory() as other:
        await StockLedgerService(other).record_movement(catalog.steel_rod, catalog.tenant_id, -300, "manual_adjustment")

    entry = await service.record_movement(catalog.steel_rod, catalog.tenant_id, -700, "manual_adjustment")

    assert entry.qty_after_transaction == Decimal("0")
    assert opening.qty_delta == Decimal("1000")
    with pytest.raises(InsufficientStockError):
        await service.record_movement(catalog.steel_rod, catalog.tenant_id, -1, "manual_adjustment")
