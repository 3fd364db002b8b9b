from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from mfgerp.db.models.production import Priority


class PlanRequest(BaseModel):
    """Plan an order without persisting it."""
    item_id: UUID = Field(..., description="Item to produce")
    bom_id: Optional[UUID] = Field(None, description="BOM to route through; omit for an unrouted order")
    planned_qty: Decimal = Field(..., description="Quantity to produce (> 0)")


class ComponentRequirement(BaseModel):
    """Total quantity of a component needed for the planned quantity."""
    item_id: UUID = Field(..., description="Component item id")
    qty_per_unit: Decimal = Field(..., description="Quantity per produced unit")
    total_qty: Decimal = Field(..., description="qty_per_unit x planned_qty")


class WorkOrderSpec(BaseModel):
    """Work order to materialize when the order is confirmed."""
    operation_id: UUID = Field(..., description="Source BOM operation id")
    work_center_id: UUID = Field(..., description="Work center id")
    operation_name: str = Field(..., description="Operation name")
    execution_order: int = Field(..., description="Execution stage")
    parallel: bool = Field(..., description="Shares its execution stage with siblings")
    duration_minutes: Decimal = Field(..., description="Planned duration for the whole quantity")


class OrderPlan(BaseModel):
    """Component requirements and work-order fan-out for an order."""
    item_id: UUID = Field(...)
    bom_id: Optional[UUID] = Field(None)
    planned_qty: Decimal = Field(...)
    component_requirements: List[ComponentRequirement] = Field(default_factory=list)
    work_order_specs: List[WorkOrderSpec] = Field(default_factory=list)


class ManufacturingOrderCreate(BaseModel):
    """Create manufacturing order payload. Orders start in DRAFT."""
    item_id: UUID = Field(..., description="Item to produce")
    bom_id: Optional[UUID] = Field(None, description="BOM reference")
    planned_qty: Decimal = Field(..., description="Quantity to produce (> 0)")
    priority: Priority = Field(Priority.MEDIUM)
    planned_start: Optional[datetime] = Field(None)
    planned_end: Optional[datetime] = Field(None)


class ManufacturingOrderRead(BaseModel):
    """Manufacturing order read model."""
    id: UUID = Field(..., description="Order id")
    order_no: str = Field(..., description="Order number")
    item_id: UUID = Field(...)
    bom_id: Optional[UUID] = Field(None)
    planned_qty: Decimal = Field(...)
    produced_qty: Decimal = Field(...)
    state: str = Field(..., description="DRAFT / CONFIRMED / IN_PROGRESS / DONE / CANCELLED")
    priority: str = Field(...)
    planned_start: Optional[datetime] = Field(None)
    planned_end: Optional[datetime] = Field(None)
    actual_start: Optional[datetime] = Field(None)
    actual_end: Optional[datetime] = Field(None)
    created_by: Optional[UUID] = Field(None)
    created_at: datetime = Field(..., description="Created at")
    updated_at: datetime = Field(..., description="Updated at")

    class Config:
        from_attributes = True


class WorkOrderRead(BaseModel):
    """Work order read model."""
    id: UUID = Field(..., description="Work order id")
    wo_number: str = Field(...)
    manufacturing_order_id: UUID = Field(...)
    work_center_id: UUID = Field(...)
    bom_operation_id: Optional[UUID] = Field(None)
    operation_name: str = Field(...)
    execution_order: int = Field(...)
    is_parallel: bool = Field(...)
    planned_qty: Decimal = Field(...)
    duration_minutes: Decimal = Field(...)
    state: str = Field(..., description="TODO / IN_PROGRESS / DONE / CANCELLED")
    assigned_to: Optional[UUID] = Field(None)
    started_at: Optional[datetime] = Field(None)
    ended_at: Optional[datetime] = Field(None)
    notes: Optional[str] = Field(None)
    created_at: datetime = Field(...)
    updated_at: datetime = Field(...)

    class Config:
        from_attributes = True


class ManufacturingOrderDetail(ManufacturingOrderRead):
    """Manufacturing order with its work orders."""
    work_orders: List[WorkOrderRead] = Field(default_factory=list)


class WorkOrderAction(BaseModel):
    """Optional operator and notes for a work order transition."""
    operator_id: Optional[UUID] = Field(None, description="Operator; defaults to the caller")
    notes: Optional[str] = Field(None)


class WorkOrderAssign(BaseModel):
    """Assign an operator to a work order."""
    operator_id: UUID = Field(..., description="Operator user id")
