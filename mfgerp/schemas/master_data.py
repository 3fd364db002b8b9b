from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ItemRead(BaseModel):
    """Item read model."""
    id: UUID = Field(..., description="Item ID")
    code: str = Field(..., description="Item code (unique within tenant)")
    name: str = Field(..., description="Item name")
    uom: str = Field(..., description="Unit of measure")
    item_type: str = Field(..., description="raw_material / semi_finished / finished_good / consumable")
    standard_rate: Decimal = Field(..., description="Standard valuation rate")
    is_active: bool = Field(..., description="Active flag")
    created_at: datetime = Field(..., description="Created timestamp")
    updated_at: datetime = Field(..., description="Updated timestamp")

    class Config:
        from_attributes = True


class WorkCenterRead(BaseModel):
    """Work center with its derived utilization."""
    id: UUID = Field(..., description="Work center ID")
    code: Optional[str] = Field(None)
    name: str = Field(..., description="Work center name")
    capacity_per_hour: Decimal = Field(..., description="Capacity per hour")
    is_active: bool = Field(..., description="Active flag")
    active_work_orders: int = Field(0, description="Work orders currently in progress")
    utilization: Decimal = Field(Decimal("0"), description="Derived utilization percentage (0-100)")


class BomRead(BaseModel):
    """BOM read model."""
    id: UUID = Field(..., description="BOM ID")
    code: str = Field(..., description="BOM code")
    item_id: UUID = Field(..., description="Produced item id")
    revision: Optional[str] = Field(None)
    is_active: bool = Field(..., description="Active flag")
    created_at: datetime = Field(..., description="Created at")
    updated_at: datetime = Field(..., description="Updated at")

    class Config:
        from_attributes = True


class ResolvedComponent(BaseModel):
    """Component item and quantity needed for one unit of the produced item."""
    item_id: UUID = Field(..., description="Component item id")
    qty_per_unit: Decimal = Field(..., description="Quantity per produced unit")


class ResolvedOperation(BaseModel):
    """BOM operation bound to a work center."""
    operation_id: UUID = Field(..., description="BOM operation id")
    work_center_id: UUID = Field(..., description="Work center id")
    name: str = Field(..., description="Operation name")
    duration_minutes: Decimal = Field(..., description="Duration per produced unit")
    sequence: int = Field(..., description="Execution stage; equal values run in parallel")


class ResolvedBom(BaseModel):
    """Flat resolution of a BOM: components and ordered operations."""
    bom_id: UUID = Field(..., description="BOM id")
    item_id: UUID = Field(..., description="Produced item id")
    components: List[ResolvedComponent] = Field(default_factory=list)
    operations: List[ResolvedOperation] = Field(default_factory=list)
