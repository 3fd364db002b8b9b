from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core.settings import get_app_settings
from mfgerp.db.models.inventory import StockLedgerEntry, VoucherType
from mfgerp.repositories.inventory import StockLedgerRepository, StockPolicyRepository
from mfgerp.repositories.master_data import ItemRepository
from mfgerp.services.base import BaseService
from mfgerp.services.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    InvalidReferenceError,
    NotFoundError,
)
from mfgerp.services.locks import lock_registry
from mfgerp.services.quantities import QUANTUM, to_quantity
from mfgerp.services.realtime import broadcast_manager

logger = logging.getLogger(__name__)


class StockMovement(BaseModel):
    """A single signed movement to post to the ledger."""
    item_id: UUID = Field(...)
    qty_delta: Decimal = Field(...)
    voucher_type: str = Field(...)
    ref_type: Optional[str] = Field(None)
    ref_id: Optional[UUID] = Field(None)
    rate: Optional[Decimal] = Field(None, description="Defaults to the item's standard rate")
    notes: Optional[str] = Field(None)


class StockLedgerService(BaseService):
    """
    Append-only stock ledger.

    Current stock is the sum of an item's entries. Postings for an item are
    serialized by the in-process item lock plus a row lock on the item, and
    a negative running balance is refused unless the tenant's policy for the
    voucher type allows it.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.ledger = StockLedgerRepository(session)
        self.policies = StockPolicyRepository(session)
        self.items = ItemRepository(session)

    # PUBLIC_INTERFACE
    async def record_movement(
        self,
        item_id: UUID,
        tenant_id: UUID,
        delta: Any,
        voucher_type: str | VoucherType,
        *,
        ref_type: Optional[str] = None,
        ref_id: Optional[UUID] = None,
        rate: Optional[Decimal] = None,
        notes: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> StockLedgerEntry:
        """
        Append one movement in its own unit of work and return the entry.

        Raises:
            InvalidQuantityError: zero or non-finite delta.
            NotFoundError: item absent from the tenant.
            InsufficientStockError: negative balance without a policy override.
        """
        qty = to_quantity(delta, field="qty_delta")
        if qty == 0:
            raise InvalidQuantityError("qty_delta must be non-zero", details={"field": "qty_delta"})
        try:
            voucher = VoucherType(voucher_type).value
        except ValueError:
            raise InvalidReferenceError("Unknown voucher type", details={"voucher_type": str(voucher_type)})
        movement = StockMovement(
            item_id=item_id,
            qty_delta=qty,
            voucher_type=voucher,
            ref_type=ref_type,
            ref_id=ref_id,
            rate=rate,
            notes=notes,
        )

        await self.release_snapshot()
        async with lock_registry.hold_items(tenant_id, [item_id]):
            async with self.unit_of_work("record_movement"):
                entries = await self.post_movements(tenant_id, [movement], created_by=created_by)
        entry = entries[0]

        logger.info(
            "Stock movement item=%s delta=%s voucher=%s balance=%s",
            item_id,
            entry.qty_delta,
            entry.voucher_type,
            entry.qty_after_transaction,
        )
        await broadcast_manager.publish_production_event(
            tenant_id,
            "stock.movement",
            {
                "entry_id": str(entry.id),
                "item_id": str(item_id),
                "qty_delta": str(entry.qty_delta),
                "qty_after_transaction": str(entry.qty_after_transaction),
                "voucher_type": entry.voucher_type,
            },
            user_id=created_by,
        )
        return entry

    # PUBLIC_INTERFACE
    async def current_stock(self, item_id: UUID, tenant_id: UUID) -> Decimal:
        """Sum of the item's ledger entries in the tenant."""
        item = await self.items.get_item(tenant_id, item_id)
        if item is None:
            raise NotFoundError("Item not found", details={"item_id": str(item_id)})
        return (await self.ledger.balance(tenant_id, item_id)).quantize(QUANTUM)

    # PUBLIC_INTERFACE
    async def list_entries(
        self, tenant_id: UUID, *, filters: Mapping[str, Any], limit: int = 100, offset: int = 0
    ) -> List[StockLedgerEntry]:
        """List ledger entries newest first; filters are restricted to an allow-list."""
        return await self.ledger.list_entries(tenant_id, filters=filters, limit=limit, offset=offset)

    async def post_movements(
        self,
        tenant_id: UUID,
        movements: Sequence[StockMovement],
        *,
        created_by: Optional[UUID] = None,
    ) -> List[StockLedgerEntry]:
        """
        Validate every movement, then append them, inside the caller's unit of work.

        Nothing is appended unless all movements pass, so one shortage fails the
        whole batch. The caller holds the in-process item locks and commits.
        """
        if not movements:
            return []
        item_ids = [m.item_id for m in movements]
        locked = {item.id: item for item in await self.items.lock_items(tenant_id, item_ids)}
        missing = sorted({str(i) for i in item_ids if i not in locked})
        if missing:
            raise NotFoundError("Item not found", details={"item_ids": missing})

        running = await self.ledger.balances(tenant_id, item_ids)
        planned: List[tuple[StockMovement, Decimal]] = []
        shortages: List[Dict[str, str]] = []
        for movement in movements:
            before = running[movement.item_id]
            after = before + movement.qty_delta
            if (
                movement.qty_delta < 0
                and after < 0
                and not await self._allows_negative(tenant_id, movement.voucher_type)
            ):
                shortages.append(
                    {
                        "item_id": str(movement.item_id),
                        "available": str(before.quantize(QUANTUM)),
                        "required": str(-movement.qty_delta),
                    }
                )
            running[movement.item_id] = after
            planned.append((movement, after))

        if shortages:
            logger.warning("Rejected %d movement(s): insufficient stock", len(shortages))
            raise InsufficientStockError("Insufficient stock", details={"shortages": shortages})

        entries: List[StockLedgerEntry] = []
        for movement, after in planned:
            rate = movement.rate if movement.rate is not None else locked[movement.item_id].standard_rate
            rate = to_quantity(rate or 0, field="rate")
            entry = StockLedgerEntry(
                tenant_id=tenant_id,
                item_id=movement.item_id,
                qty_delta=movement.qty_delta,
                qty_after_transaction=after.quantize(QUANTUM),
                rate=rate,
                value_delta=(movement.qty_delta * rate).quantize(QUANTUM),
                voucher_type=movement.voucher_type,
                ref_type=movement.ref_type,
                ref_id=movement.ref_id,
                notes=movement.notes,
                created_by=created_by,
            )
            entries.append(await self.ledger.append(entry))
        return entries

    async def _allows_negative(self, tenant_id: UUID, voucher_type: str) -> bool:
        policy = await self.policies.allows_negative(tenant_id, voucher_type)
        if policy is not None:
            return bool(policy)
        return get_app_settings().ALLOW_NEGATIVE_STOCK_DEFAULT
