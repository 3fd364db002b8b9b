from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mfgerp.db.base import Base, UUIDPkMixin, TimestampMixin, TenantMixin


class ItemType(str, Enum):
    RAW_MATERIAL = "raw_material"
    SEMI_FINISHED = "semi_finished"
    FINISHED_GOOD = "finished_good"
    CONSUMABLE = "consumable"


class Item(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """
    Item master record.

    There is deliberately no stock column: on-hand quantity is the running
    balance of the item's stock ledger entries.
    """
    __tablename__ = "items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_items_tenant_code"),
    )

    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    uom: Mapped[str] = mapped_column(Text, nullable=False, default="EA", server_default="EA")
    item_type: Mapped[str] = mapped_column(Text, nullable=False, default=ItemType.RAW_MATERIAL.value)
    standard_rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")


class WorkCenter(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Production station to which BOM operations are routed."""
    __tablename__ = "work_centers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_work_centers_tenant_name"),
    )

    code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    capacity_per_hour: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("1"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")


class Bom(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Bill of Materials producing one unit of an item."""
    __tablename__ = "boms"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_boms_tenant_code"),
    )

    code: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    revision: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")


class BomLine(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Components required by a BOM."""
    __tablename__ = "bom_lines"

    bom_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("boms.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    component_item_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    qty_per: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)


class BomOperation(UUIDPkMixin, TenantMixin, TimestampMixin, Base):
    """Routing step of a BOM; operations sharing a sequence run in parallel."""
    __tablename__ = "bom_operations"

    bom_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("boms.id", ondelete="CASCADE"), nullable=False, index=True)
    work_center_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("work_centers.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    duration_minutes: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
