from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mfgerp.db.base import Base, UUIDPkMixin, TimestampMixin, TenantMixin


class OrderState(str, Enum):
    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class WorkOrderState(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ManufacturingOrder(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Manufacturing order header. Never deleted; cancelled orders stay for audit."""
    __tablename__ = "manufacturing_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_no", name="uq_manufacturing_orders_tenant_order_no"),
    )

    order_no: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    bom_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("boms.id", ondelete="RESTRICT"), nullable=True)
    planned_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    produced_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    state: Mapped[str] = mapped_column(Text, nullable=False, default=OrderState.DRAFT.value, index=True)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default=Priority.MEDIUM.value)
    planned_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)


class WorkOrder(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """One BOM operation of a confirmed manufacturing order at a work center."""
    __tablename__ = "work_orders"

    wo_number: Mapped[str] = mapped_column(Text, nullable=False)
    manufacturing_order_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("manufacturing_orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    work_center_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("work_centers.id", ondelete="RESTRICT"), nullable=False, index=True)
    bom_operation_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bom_operations.id", ondelete="SET NULL"), nullable=True
    )
    operation_name: Mapped[str] = mapped_column(Text, nullable=False)
    execution_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_parallel: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    planned_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    duration_minutes: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    state: Mapped[str] = mapped_column(Text, nullable=False, default=WorkOrderState.TODO.value)
    assigned_to: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
