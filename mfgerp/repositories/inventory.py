from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.db.models.inventory import StockLedgerEntry, StockPolicy
from .base import BaseRepository, FilterBuilder, build_filters

# Filterable ledger fields. Anything else is rejected before a query is built.
LEDGER_FILTERS: Dict[str, FilterBuilder] = {
    "item_id": lambda v: StockLedgerEntry.item_id == v,
    "voucher_type": lambda v: StockLedgerEntry.voucher_type == v,
    "ref_type": lambda v: StockLedgerEntry.ref_type == v,
    "ref_id": lambda v: StockLedgerEntry.ref_id == v,
    "posted_from": lambda v: StockLedgerEntry.posted_at >= v,
    "posted_to": lambda v: StockLedgerEntry.posted_at <= v,
}


class StockLedgerRepository(BaseRepository):
    """
    Repository for the append-only stock ledger.

    There is intentionally no update or delete method.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)

    async def balance(self, tenant_id: UUID, item_id: UUID) -> Decimal:
        """Sum of all entries for the item in the tenant."""
        stmt = select(func.coalesce(func.sum(StockLedgerEntry.qty_delta), 0)).where(
            StockLedgerEntry.tenant_id == tenant_id,
            StockLedgerEntry.item_id == item_id,
        )
        res = await self.execute(stmt)
        value = res.scalar_one()
        return Decimal(str(value))

    async def balances(self, tenant_id: UUID, item_ids: Iterable[UUID]) -> Dict[UUID, Decimal]:
        """Balances for several items; items without entries map to 0."""
        ids = list(set(item_ids))
        out: Dict[UUID, Decimal] = {i: Decimal("0") for i in ids}
        if not ids:
            return out
        stmt = (
            select(StockLedgerEntry.item_id, func.sum(StockLedgerEntry.qty_delta))
            .where(StockLedgerEntry.tenant_id == tenant_id, StockLedgerEntry.item_id.in_(ids))
            .group_by(StockLedgerEntry.item_id)
        )
        res = await self.execute(stmt)
        for item_id, total in res.all():
            out[item_id] = Decimal(str(total or 0))
        return out

    async def append(self, entry: StockLedgerEntry) -> StockLedgerEntry:
        await self.add(entry)
        await self.flush()
        return entry

    async def net_by_item_for_ref(
        self, tenant_id: UUID, *, ref_type: str, ref_id: UUID, voucher_types: Iterable[str]
    ) -> Dict[UUID, Decimal]:
        """Net quantity per item across the given voucher types for one reference."""
        stmt = (
            select(StockLedgerEntry.item_id, func.sum(StockLedgerEntry.qty_delta))
            .where(
                StockLedgerEntry.tenant_id == tenant_id,
                StockLedgerEntry.ref_type == ref_type,
                StockLedgerEntry.ref_id == ref_id,
                StockLedgerEntry.voucher_type.in_(list(voucher_types)),
            )
            .group_by(StockLedgerEntry.item_id)
        )
        res = await self.execute(stmt)
        return {item_id: Decimal(str(total or 0)) for item_id, total in res.all()}

    async def list_entries(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int, offset: int
    ) -> List[StockLedgerEntry]:
        stmt = select(StockLedgerEntry).where(StockLedgerEntry.tenant_id == tenant_id)
        for criterion in build_filters(LEDGER_FILTERS, filters):
            stmt = stmt.where(criterion)
        stmt = (
            stmt.order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        res = await self.scalars(stmt)
        return list(res)


class StockPolicyRepository(BaseRepository):
    """Repository for per-tenant negative stock policies."""

    async def allows_negative(self, tenant_id: UUID, voucher_type: str) -> Optional[bool]:
        """Return the tenant's flag for the voucher type, or None when unset."""
        stmt = select(StockPolicy.allow_negative).where(
            StockPolicy.tenant_id == tenant_id,
            StockPolicy.voucher_type == voucher_type,
        )
        return await self.scalar_one_or_none(stmt)
