"""
Database seeding utilities for a demo tenant.

Seeds:
- Base tenant (Acme Manufacturing)
- Roles (admin, manager, operator, inventory) and an admin user
- Raw materials and a finished good (Product A)
- Work centers
- BOM for Product A with its routing operations
- Opening stock posted as purchase receipts

Every step looks rows up by their natural key first, so running the seed
again leaves existing data untouched.

Usage:
  python -m mfgerp.db.run_migrations upgrade head
  python -m mfgerp.db.seed
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core import policy
from mfgerp.core.security import get_password_hash
from mfgerp.core.settings import get_app_settings
from mfgerp.db.models import (
    Bom,
    BomLine,
    BomOperation,
    Item,
    ItemType,
    Role,
    User,
    UserRole,
    VoucherType,
    WorkCenter,
)
from mfgerp.db.session import get_async_session, tenant_context
from mfgerp.repositories.inventory import StockLedgerRepository
from mfgerp.services.stock import StockLedgerService, StockMovement

logger = logging.getLogger(__name__)

ROLES: List[Tuple[str, str]] = [
    (policy.ADMIN, "Administrator"),
    (policy.MANAGER, "Production manager"),
    (policy.OPERATOR, "Shop floor operator"),
    (policy.INVENTORY, "Inventory clerk"),
]

# code, name, uom, type, standard rate, opening stock
ITEMS: List[Tuple[str, str, str, ItemType, str, str]] = [
    ("RM001", "Steel Rod", "EA", ItemType.RAW_MATERIAL, "5.50", "1000"),
    ("RM003", "Plastic Parts", "EA", ItemType.RAW_MATERIAL, "1.25", "200"),
    ("RM004", "Screws", "EA", ItemType.RAW_MATERIAL, "0.08", "5000"),
    ("FG001", "Product A", "EA", ItemType.FINISHED_GOOD, "150.00", "0"),
]

# code, name, capacity per hour
WORK_CENTERS: List[Tuple[str, str, str]] = [
    ("WC-CUT", "Cutting Station", "4"),
    ("WC-ASM", "Assembly Line A", "8"),
    ("WC-QC", "Quality Control Station", "12"),
]

# component code, qty per unit
BOM_LINES: List[Tuple[str, str]] = [
    ("RM001", "2"),
    ("RM003", "1"),
    ("RM004", "4"),
]

# name, work center code, minutes per unit, sequence
BOM_OPERATIONS: List[Tuple[str, str, str, int]] = [
    ("Cut rods", "WC-CUT", "6", 10),
    ("Assemble", "WC-ASM", "12", 20),
    ("Inspect", "WC-QC", "3", 30),
]


# PUBLIC_INTERFACE
async def seed_all() -> None:
    """
    Seed the database with a demo tenant.

    This function:
      - Creates or retrieves the base tenant
      - Seeds roles and an admin user
      - Seeds items, work centers, a BOM, and opening stock
    """
    settings = get_app_settings()
    async for session in get_async_session():
        tenant_id = await _ensure_base_tenant(session, name="Acme Manufacturing", slug=settings.DEFAULT_TENANT_SLUG)
        async with tenant_context(session, tenant_id):
            await _seed_security(session, tenant_id, settings.SEED_ADMIN_EMAIL, settings.SEED_ADMIN_PASSWORD)
            items = await _seed_items(session, tenant_id)
            work_centers = await _seed_work_centers(session, tenant_id)
            await _seed_bom(session, tenant_id, items, work_centers)
            await _seed_opening_stock(session, tenant_id, items)
            await session.commit()
        logger.info("Seeded tenant %s", tenant_id)


async def _ensure_base_tenant(session: AsyncSession, name: str, slug: str) -> UUID:
    """
    Ensure a tenant row exists. RLS on tenants requires setting app.tenant_id
    to the same id being inserted (WITH CHECK id = current_setting()).
    """
    res = await session.execute(text("SELECT id FROM tenants WHERE slug = :slug"), {"slug": slug})
    row = res.first()
    if row:
        return row[0]

    tenant_id = uuid4()
    await session.execute(text("SELECT set_config('app.tenant_id', :tid, false)"), {"tid": str(tenant_id)})
    await session.execute(
        text("INSERT INTO tenants (id, name, slug) VALUES (:id, :name, :slug) ON CONFLICT (slug) DO NOTHING"),
        {"id": str(tenant_id), "name": name, "slug": slug},
    )
    # Fetch id in case it raced
    res = await session.execute(text("SELECT id FROM tenants WHERE slug = :slug"), {"slug": slug})
    row = res.first()
    if not row:
        raise RuntimeError("Failed to create or load base tenant")
    return row[0]


async def _seed_security(session: AsyncSession, tenant_id: UUID, email: str, password: str) -> None:
    """Seed the four roles and an admin user holding the admin role."""
    roles: Dict[str, Role] = {}
    for name, description in ROLES:
        role = await session.scalar(select(Role).where(Role.tenant_id == tenant_id, Role.name == name))
        if role is None:
            role = Role(tenant_id=tenant_id, name=name, description=description)
            session.add(role)
        roles[name] = role
    await session.flush()

    user = await session.scalar(select(User).where(User.tenant_id == tenant_id, User.email == email))
    if user is not None:
        return
    user = User(
        tenant_id=tenant_id,
        email=email,
        full_name="Administrator",
        hashed_password=get_password_hash(password),
    )
    session.add(user)
    await session.flush()
    session.add(UserRole(tenant_id=tenant_id, user_id=user.id, role_id=roles[policy.ADMIN].id))
    await session.flush()


async def _seed_items(session: AsyncSession, tenant_id: UUID) -> Dict[str, Item]:
    """Return a mapping code -> Item."""
    result: Dict[str, Item] = {}
    for code, name, uom, item_type, rate, _opening in ITEMS:
        item = await session.scalar(select(Item).where(Item.tenant_id == tenant_id, Item.code == code))
        if item is None:
            item = Item(
                tenant_id=tenant_id,
                code=code,
                name=name,
                uom=uom,
                item_type=item_type.value,
                standard_rate=Decimal(rate),
            )
            session.add(item)
        result[code] = item
    await session.flush()
    return result


async def _seed_work_centers(session: AsyncSession, tenant_id: UUID) -> Dict[str, WorkCenter]:
    """Return a mapping code -> WorkCenter."""
    result: Dict[str, WorkCenter] = {}
    for code, name, capacity in WORK_CENTERS:
        wc = await session.scalar(select(WorkCenter).where(WorkCenter.tenant_id == tenant_id, WorkCenter.name == name))
        if wc is None:
            wc = WorkCenter(tenant_id=tenant_id, code=code, name=name, capacity_per_hour=Decimal(capacity))
            session.add(wc)
        result[code] = wc
    await session.flush()
    return result


async def _seed_bom(
    session: AsyncSession,
    tenant_id: UUID,
    items: Dict[str, Item],
    work_centers: Dict[str, WorkCenter],
) -> None:
    """Create BOM-FG001 with three components and a three-step routing."""
    existing = await session.scalar(select(Bom).where(Bom.tenant_id == tenant_id, Bom.code == "BOM-FG001"))
    if existing is not None:
        return

    bom = Bom(tenant_id=tenant_id, code="BOM-FG001", item_id=items["FG001"].id, revision="A")
    session.add(bom)
    await session.flush()

    for line_no, (code, qty_per) in enumerate(BOM_LINES, start=1):
        session.add(
            BomLine(
                tenant_id=tenant_id,
                bom_id=bom.id,
                line_no=line_no,
                component_item_id=items[code].id,
                qty_per=Decimal(qty_per),
            )
        )
    for name, wc_code, minutes, sequence in BOM_OPERATIONS:
        session.add(
            BomOperation(
                tenant_id=tenant_id,
                bom_id=bom.id,
                work_center_id=work_centers[wc_code].id,
                name=name,
                duration_minutes=Decimal(minutes),
                sequence=sequence,
            )
        )
    await session.flush()


async def _seed_opening_stock(session: AsyncSession, tenant_id: UUID, items: Dict[str, Item]) -> None:
    """Post opening balances for items that have no ledger history yet."""
    ledger = StockLedgerRepository(session)
    balances = await ledger.balances(tenant_id, [item.id for item in items.values()])
    movements: List[StockMovement] = []
    for code, _name, _uom, _type, _rate, opening in ITEMS:
        qty = Decimal(opening)
        item = items[code]
        if qty <= 0 or balances[item.id] != 0:
            continue
        movements.append(
            StockMovement(
                item_id=item.id,
                qty_delta=qty,
                voucher_type=VoucherType.PURCHASE_RECEIPT.value,
                notes="Opening balance",
            )
        )
    await StockLedgerService(session).post_movements(tenant_id, movements)


# PUBLIC_INTERFACE
def main() -> None:
    """Entrypoint to run the asynchronous seeding."""
    asyncio.run(seed_all())


if __name__ == "__main__":
    main()
