"""
Shared fixtures: a file-backed SQLite database per test, two isolated
tenants, and a small product structure to plan and produce against.

Product A is built from 2 x Steel Rod and 4 x Screws, routed through
Cutting (sequence 10), then Assembly and Painting in parallel (sequence 20).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict
from uuid import UUID, uuid4

os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("AUTO_SEED", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mfgerp.db.base import Base
from mfgerp.db.models import (
    Bom,
    BomLine,
    BomOperation,
    Item,
    ItemType,
    StockLedgerEntry,
    Tenant,
    VoucherType,
    WorkCenter,
)
from mfgerp.db.session import make_session_factory


@dataclass
class Catalog:
    """Ids of the master data seeded for one tenant."""
    tenant_id: UUID
    product: UUID
    steel_rod: UUID
    screws: UUID
    bom: UUID
    cutting: UUID
    assembly: UUID
    painting: UUID


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mfgerp.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


async def create_tenant(session: AsyncSession, name: str) -> UUID:
    tenant = Tenant(id=uuid4(), name=name, slug=name.lower().replace(" ", "-"))
    session.add(tenant)
    await session.commit()
    return tenant.id


async def add_item(session: AsyncSession, tenant_id: UUID, code: str, name: str, **kwargs) -> UUID:
    item = Item(tenant_id=tenant_id, code=code, name=name, **kwargs)
    session.add(item)
    await session.flush()
    return item.id


async def add_stock(session: AsyncSession, tenant_id: UUID, item_id: UUID, qty: str) -> None:
    """Opening balance written straight to the ledger."""
    session.add(
        StockLedgerEntry(
            tenant_id=tenant_id,
            item_id=item_id,
            qty_delta=Decimal(qty),
            qty_after_transaction=Decimal(qty),
            voucher_type=VoucherType.PURCHASE_RECEIPT.value,
        )
    )
    await session.commit()


async def add_bom(
    session: AsyncSession,
    tenant_id: UUID,
    item_id: UUID,
    code: str,
    lines: Dict[UUID, str],
    operations=(),
) -> UUID:
    bom = Bom(tenant_id=tenant_id, item_id=item_id, code=code)
    session.add(bom)
    await session.flush()
    for line_no, (component, qty) in enumerate(lines.items(), start=1):
        session.add(
            BomLine(
                tenant_id=tenant_id,
                bom_id=bom.id,
                line_no=line_no,
                component_item_id=component,
                qty_per=Decimal(qty),
            )
        )
    for name, work_center_id, minutes, sequence in operations:
        session.add(
            BomOperation(
                tenant_id=tenant_id,
                bom_id=bom.id,
                work_center_id=work_center_id,
                name=name,
                duration_minutes=Decimal(minutes),
                sequence=sequence,
            )
        )
    await session.commit()
    return bom.id


async def build_catalog(session: AsyncSession, name: str, steel: str = "1000", screws: str = "5000") -> Catalog:
    tenant_id = await create_tenant(session, name)
    product = await add_item(
        session, tenant_id, "FG001", "Product A", item_type=ItemType.FINISHED_GOOD.value, standard_rate=Decimal("150")
    )
    steel_rod = await add_item(session, tenant_id, "RM001", "Steel Rod", standard_rate=Decimal("5.5"))
    screw = await add_item(session, tenant_id, "RM004", "Screws", standard_rate=Decimal("0.08"))

    centers = {}
    for wc_name, capacity in (("Cutting", "4"), ("Assembly", "2"), ("Painting", "0")):
        wc = WorkCenter(tenant_id=tenant_id, name=wc_name, capacity_per_hour=Decimal(capacity))
        session.add(wc)
        await session.flush()
        centers[wc_name] = wc.id

    bom_id = await add_bom(
        session,
        tenant_id,
        product,
        "BOM-FG001",
        {steel_rod: "2", screw: "4"},
        operations=[
            ("Cut", centers["Cutting"], "6", 10),
            ("Assemble", centers["Assembly"], "12", 20),
            ("Paint", centers["Painting"], "3", 20),
        ],
    )
    if Decimal(steel) > 0:
        await add_stock(session, tenant_id, steel_rod, steel)
    if Decimal(screws) > 0:
        await add_stock(session, tenant_id, screw, screws)
    return Catalog(
        tenant_id=tenant_id,
        product=product,
        steel_rod=steel_rod,
        screws=screw,
        bom=bom_id,
        cutting=centers["Cutting"],
        assembly=centers["Assembly"],
        painting=centers["Painting"],
    )


@pytest.fixture
async def catalog(session) -> Catalog:
    return await build_catalog(session, "Acme Manufacturing")


@pytest.fixture
async def other_catalog(session) -> Catalog:
    return await build_catalog(session, "Globex Industries")
