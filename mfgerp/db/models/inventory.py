from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from mfgerp.db.base import Base, UUIDPkMixin, TimestampMixin, TenantMixin, utcnow


class VoucherType(str, Enum):
    """Why a quantity moved."""
    MANUFACTURING_CONSUMPTION = "manufacturing_consumption"
    MANUFACTURING_RECEIPT = "manufacturing_receipt"
    MANUFACTURING_CONSUMPTION_REVERSAL = "manufacturing_consumption_reversal"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    PURCHASE_RECEIPT = "purchase_receipt"
    BACKORDER = "backorder"


class StockLedgerEntry(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """
    Append-only signed stock movement.

    The sum of qty_delta over an item's entries is its current stock.
    qty_after_transaction is the running balance observed under the item lock.
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        Index("ix_stock_ledger_entries_tenant_item", "tenant_id", "item_id"),
        Index("ix_stock_ledger_entries_ref", "ref_type", "ref_id"),
    )

    item_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    qty_delta: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    qty_after_transaction: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    value_delta: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    voucher_type: Mapped[str] = mapped_column(Text, nullable=False)
    ref_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # e.g., manufacturing_order
    ref_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)


class StockPolicy(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Per-tenant override allowing a voucher type to drive stock negative."""
    __tablename__ = "stock_policies"
    __table_args__ = (
        UniqueConstraint("tenant_id", "voucher_type", name="uq_stock_policies_tenant_voucher_type"),
    )

    voucher_type: Mapped[str] = mapped_column(Text, nullable=False)
    allow_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
