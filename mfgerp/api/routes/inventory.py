from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core import policy
from mfgerp.core.deps import get_tenant_id, get_tenant_session, require_permission
from mfgerp.db.models.inventory import VoucherType
from mfgerp.schemas.inventory import StockLedgerEntryRead, StockLevel, StockMovementCreate
from mfgerp.services.stock import StockLedgerService

router = APIRouter(prefix="/inventory", tags=["Inventory"])


# PUBLIC_INTERFACE
@router.post(
    "/movements",
    response_model=StockLedgerEntryRead,
    status_code=status.HTTP_201_CREATED,
    summary="Record stock movement",
    description=(
        "Append a signed movement to the stock ledger. Negative movements that would drive the "
        "balance below zero fail with insufficient_stock unless the tenant allows it for the voucher type."
    ),
)
async def record_movement(
    payload: StockMovementCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.ADJUST, policy.STOCK)),
) -> StockLedgerEntryRead:
    entry = await StockLedgerService(session).record_movement(
        payload.item_id,
        tenant_id,
        payload.qty_delta,
        payload.voucher_type,
        rate=payload.rate,
        notes=payload.notes,
        created_by=user.id,
    )
    return StockLedgerEntryRead.model_validate(entry)


# PUBLIC_INTERFACE
@router.get(
    "/ledger",
    response_model=List[StockLedgerEntryRead],
    summary="List stock ledger entries",
    description="List ledger entries for the tenant ordered by created_at desc.",
)
async def list_ledger_entries(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.STOCK)),
    item_id: Optional[UUID] = Query(None, description="Filter by item"),
    voucher_type: Optional[VoucherType] = Query(None, description="Filter by voucher type"),
    ref_type: Optional[str] = Query(None, description="Filter by reference type"),
    ref_id: Optional[UUID] = Query(None, description="Filter by reference id"),
    posted_from: Optional[datetime] = Query(None, description="Posted at or after"),
    posted_to: Optional[datetime] = Query(None, description="Posted at or before"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[StockLedgerEntryRead]:
    """
    Return tenant-scoped ledger entries.

    Only the query parameters above can filter; each maps to a bound criterion.
    """
    filters = {
        "item_id": item_id,
        "voucher_type": voucher_type.value if voucher_type else None,
        "ref_type": ref_type,
        "ref_id": ref_id,
        "posted_from": posted_from,
        "posted_to": posted_to,
    }
    entries = await StockLedgerService(session).list_entries(tenant_id, filters=filters, limit=limit, offset=offset)
    return [StockLedgerEntryRead.model_validate(e) for e in entries]


# PUBLIC_INTERFACE
@router.get(
    "/items/{item_id}/stock",
    response_model=StockLevel,
    summary="Current stock",
    description="Current stock of an item: the sum of its ledger entries.",
)
async def get_current_stock(
    item_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.STOCK)),
) -> StockLevel:
    quantity = await StockLedgerService(session).current_stock(item_id, tenant_id)
    return StockLevel(item_id=item_id, quantity=quantity)
