from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from mfgerp.db.models.inventory import VoucherType


class StockMovementCreate(BaseModel):
    """Record a signed stock movement."""
    item_id: UUID = Field(..., description="Item moved")
    qty_delta: Decimal = Field(..., description="Signed quantity; negative consumes stock")
    voucher_type: VoucherType = Field(VoucherType.MANUAL_ADJUSTMENT, description="Why the quantity moved")
    rate: Optional[Decimal] = Field(None, ge=0, description="Valuation rate per unit; defaults to the item standard rate")
    notes: Optional[str] = Field(None)


class StockLedgerEntryRead(BaseModel):
    """Read model for a stock ledger entry."""
    id: UUID = Field(..., description="Entry ID")
    item_id: UUID = Field(..., description="Item ID")
    qty_delta: Decimal = Field(..., description="Signed quantity moved")
    qty_after_transaction: Decimal = Field(..., description="Running balance after this entry")
    rate: Decimal = Field(...)
    value_delta: Decimal = Field(...)
    voucher_type: str = Field(...)
    ref_type: Optional[str] = Field(None, description="Reference type")
    ref_id: Optional[UUID] = Field(None, description="Reference ID")
    posted_at: datetime = Field(...)
    notes: Optional[str] = Field(None)
    created_by: Optional[UUID] = Field(None)
    created_at: datetime = Field(..., description="Created timestamp")

    class Config:
        from_attributes = True


class StockLevel(BaseModel):
    """Current stock of an item (sum of its ledger entries)."""
    item_id: UUID = Field(...)
    quantity: Decimal = Field(...)
