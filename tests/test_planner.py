from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import add_bom, add_item
from mfgerp.services.errors import InvalidQuantityError, InvalidReferenceError, NotFoundError
from mfgerp.services.planning import OrderPlanner


async def test_plan_multiplies_bom_by_quantity(session, catalog):
    plan = await OrderPlanner(session).plan(catalog.product, catalog.bom, 10, catalog.tenant_id)

    totals = {r.item_id: r.total_qty for r in plan.component_requirements}
    assert totals == {catalog.steel_rod: Decimal("20"), catalog.screws: Decimal("40")}
    assert plan.planned_qty == Decimal("10")


async def test_plan_fans_out_one_work_order_per_operation(session, catalog):
    plan = await OrderPlanner(session).plan(catalog.product, catalog.bom, 10, catalog.tenant_id)

    specs = plan.work_order_specs
    assert [s.execution_order for s in specs] == [10, 20, 20]
    assert [s.parallel for s in specs] == [False, True, True]
    cut = specs[0]
    assert cut.operation_name == "Cut"
    assert cut.work_center_id == catalog.cutting
    assert cut.duration_minutes == Decimal("60")


async def test_fractional_quantities_stay_exact(session, catalog):
    bom_id = await add_bom(session, catalog.tenant_id, catalog.product, "BOM-FRAC", {catalog.steel_rod: "0.1"})

    plan = await OrderPlanner(session).plan(catalog.product, bom_id, "3", catalog.tenant_id)

    assert plan.component_requirements[0].total_qty == Decimal("0.3")


async def test_plan_without_bom_is_empty(session, catalog):
    plan = await OrderPlanner(session).plan(catalog.product, None, 5, catalog.tenant_id)

    assert plan.component_requirements == []
    assert plan.work_order_specs == []


@pytest.mark.parametrize("qty", [0, -1, "abc", "NaN", True])
async def test_invalid_quantity_is_rejected(session, catalog, qty):
    with pytest.raises(InvalidQuantityError):
        await OrderPlanner(session).plan(catalog.product, catalog.bom, qty, catalog.tenant_id)


async def test_unknown_item_is_not_found(session, catalog):
    with pytest.raises(NotFoundError):
        await OrderPlanner(session).plan(uuid4(), catalog.bom, 1, catalog.tenant_id)


async def test_bom_for_a_different_item_is_invalid_reference(session, catalog):
    other = await add_item(session, catalog.tenant_id, "FG002", "Product B")
    await session.commit()

    with pytest.raises(InvalidReferenceError):
        await OrderPlanner(session).plan(other, catalog.bom, 1, catalog.tenant_id)


async def test_planning_does_not_touch_stock(session, catalog):
    from mfgerp.services.stock import StockLedgerService

    await OrderPlanner(session).plan(catalog.product, catalog.bom, 10, catalog.tenant_id)

    assert await StockLedgerService(session).current_stock(catalog.steel_rod, catalog.tenant_id) == Decimal("1000")
