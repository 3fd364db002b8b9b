from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core import policy
from mfgerp.core.deps import get_tenant_id, get_tenant_session, require_permission
from mfgerp.db.models.production import OrderState, Priority, WorkOrderState
from mfgerp.schemas.master_data import WorkCenterRead
from mfgerp.schemas.production import (
    ManufacturingOrderCreate,
    ManufacturingOrderDetail,
    ManufacturingOrderRead,
    OrderPlan,
    PlanRequest,
    WorkOrderAction,
    WorkOrderAssign,
    WorkOrderRead,
)
from mfgerp.services.planning import OrderPlanner
from mfgerp.services.production import OrderStateMachine, WorkCenterLoadService, WorkOrderService

router = APIRouter(prefix="/production", tags=["Production"])


# PUBLIC_INTERFACE
@router.post(
    "/plan",
    response_model=OrderPlan,
    summary="Plan an order",
    description="Compute component requirements and work orders for a quantity without persisting anything.",
)
async def plan_order(
    payload: PlanRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.PLAN, policy.ORDERS)),
) -> OrderPlan:
    return await OrderPlanner(session).plan(payload.item_id, payload.bom_id, payload.planned_qty, tenant_id)


# PUBLIC_INTERFACE
@router.post(
    "/manufacturing-orders",
    response_model=ManufacturingOrderRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create manufacturing order",
    description="Create a DRAFT manufacturing order with a generated order number.",
)
async def create_manufacturing_order(
    payload: ManufacturingOrderCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.CREATE, policy.ORDERS)),
) -> ManufacturingOrderRead:
    order = await OrderStateMachine(session).create_order(payload, tenant_id, created_by=user.id)
    return ManufacturingOrderRead.model_validate(order)


# PUBLIC_INTERFACE
@router.get(
    "/manufacturing-orders",
    response_model=List[ManufacturingOrderRead],
    summary="List manufacturing orders",
    description="List manufacturing orders for the tenant ordered by created_at desc.",
)
async def list_manufacturing_orders(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.ORDERS)),
    state: Optional[OrderState] = Query(None, description="Filter by state"),
    item_id: Optional[UUID] = Query(None, description="Filter by produced item"),
    priority: Optional[Priority] = Query(None, description="Filter by priority"),
    order_no: Optional[str] = Query(None, description="Filter by order number (substring)"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[ManufacturingOrderRead]:
    filters = {
        "state": state.value if state else None,
        "item_id": item_id,
        "priority": priority.value if priority else None,
        "order_no": order_no,
    }
    orders = await OrderStateMachine(session).list_orders(tenant_id, filters=filters, limit=limit, offset=offset)
    return [ManufacturingOrderRead.model_validate(o) for o in orders]


# PUBLIC_INTERFACE
@router.get(
    "/manufacturing-orders/{order_id}",
    response_model=ManufacturingOrderDetail,
    summary="Get manufacturing order",
    description="Get a manufacturing order with its work orders.",
)
async def get_manufacturing_order(
    order_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.ORDERS)),
) -> ManufacturingOrderDetail:
    return await OrderStateMachine(session).get_order_detail(order_id, tenant_id)


# PUBLIC_INTERFACE
@router.post(
    "/manufacturing-orders/{order_id}/confirm",
    response_model=ManufacturingOrderRead,
    summary="Confirm manufacturing order",
    description=(
        "DRAFT -> CONFIRMED. Consumes BOM components from stock and creates work orders atomically; "
        "fails with insufficient_stock without changing anything."
    ),
)
async def confirm_manufacturing_order(
    order_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.CONFIRM, policy.ORDERS)),
) -> ManufacturingOrderRead:
    order = await OrderStateMachine(session).confirm_order(order_id, tenant_id, user_id=user.id)
    return ManufacturingOrderRead.model_validate(order)


# PUBLIC_INTERFACE
@router.post(
    "/manufacturing-orders/{order_id}/start",
    response_model=ManufacturingOrderRead,
    summary="Start manufacturing order",
    description="CONFIRMED -> IN_PROGRESS.",
)
async def start_manufacturing_order(
    order_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.START, policy.ORDERS)),
) -> ManufacturingOrderRead:
    order = await OrderStateMachine(session).start_order(order_id, tenant_id, user_id=user.id)
    return ManufacturingOrderRead.model_validate(order)


# PUBLIC_INTERFACE
@router.post(
    "/manufacturing-orders/{order_id}/complete",
    response_model=ManufacturingOrderRead,
    summary="Complete manufacturing order",
    description="IN_PROGRESS -> DONE once every work order is finished; receives the produced quantity.",
)
async def complete_manufacturing_order(
    order_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.COMPLETE, policy.ORDERS)),
) -> ManufacturingOrderRead:
    order = await OrderStateMachine(session).complete_order(order_id, tenant_id, user_id=user.id)
    return ManufacturingOrderRead.model_validate(order)


# PUBLIC_INTERFACE
@router.post(
    "/manufacturing-orders/{order_id}/cancel",
    response_model=ManufacturingOrderRead,
    summary="Cancel manufacturing order",
    description="DRAFT/CONFIRMED -> CANCELLED. A confirmed order returns its consumed components to stock.",
)
async def cancel_manufacturing_order(
    order_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.CANCEL, policy.ORDERS)),
) -> ManufacturingOrderRead:
    order = await OrderStateMachine(session).cancel_order(order_id, tenant_id, user_id=user.id)
    return ManufacturingOrderRead.model_validate(order)


# PUBLIC_INTERFACE
@router.get(
    "/work-orders",
    response_model=List[WorkOrderRead],
    summary="List work orders",
    description="List work orders for the tenant ordered by created_at desc.",
)
async def list_work_orders(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.WORK_ORDERS)),
    state: Optional[WorkOrderState] = Query(None, description="Filter by state"),
    manufacturing_order_id: Optional[UUID] = Query(None, description="Filter by manufacturing order"),
    work_center_id: Optional[UUID] = Query(None, description="Filter by work center"),
    assigned_to: Optional[UUID] = Query(None, description="Filter by operator"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[WorkOrderRead]:
    filters = {
        "state": state.value if state else None,
        "manufacturing_order_id": manufacturing_order_id,
        "work_center_id": work_center_id,
        "assigned_to": assigned_to,
    }
    items = await WorkOrderService(session).list_work_orders(tenant_id, filters=filters, limit=limit, offset=offset)
    return [WorkOrderRead.model_validate(x) for x in items]


# PUBLIC_INTERFACE
@router.post(
    "/work-orders/{wo_id}/start",
    response_model=WorkOrderRead,
    summary="Start work order",
    description="TODO -> IN_PROGRESS once earlier stages are finished. Defaults the operator to the caller.",
)
async def start_work_order(
    wo_id: UUID = Path(...),
    payload: Optional[WorkOrderAction] = Body(None),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.START, policy.WORK_ORDERS)),
) -> WorkOrderRead:
    payload = payload or WorkOrderAction()
    wo = await WorkOrderService(session).start(
        wo_id, tenant_id, operator_id=payload.operator_id or user.id, notes=payload.notes
    )
    return WorkOrderRead.model_validate(wo)


# PUBLIC_INTERFACE
@router.post(
    "/work-orders/{wo_id}/complete",
    response_model=WorkOrderRead,
    summary="Complete work order",
    description="IN_PROGRESS -> DONE.",
)
async def complete_work_order(
    wo_id: UUID = Path(...),
    payload: Optional[WorkOrderAction] = Body(None),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.COMPLETE, policy.WORK_ORDERS)),
) -> WorkOrderRead:
    payload = payload or WorkOrderAction()
    wo = await WorkOrderService(session).complete(
        wo_id, tenant_id, operator_id=payload.operator_id or user.id, notes=payload.notes
    )
    return WorkOrderRead.model_validate(wo)


# PUBLIC_INTERFACE
@router.post(
    "/work-orders/{wo_id}/cancel",
    response_model=WorkOrderRead,
    summary="Cancel work order",
    description="TODO/IN_PROGRESS -> CANCELLED.",
)
async def cancel_work_order(
    wo_id: UUID = Path(...),
    payload: Optional[WorkOrderAction] = Body(None),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    user=Depends(require_permission(policy.CANCEL, policy.WORK_ORDERS)),
) -> WorkOrderRead:
    payload = payload or WorkOrderAction()
    wo = await WorkOrderService(session).cancel(wo_id, tenant_id, operator_id=user.id, notes=payload.notes)
    return WorkOrderRead.model_validate(wo)


# PUBLIC_INTERFACE
@router.post(
    "/work-orders/{wo_id}/assign",
    response_model=WorkOrderRead,
    summary="Assign work order",
    description="Assign an operator to an open work order.",
)
async def assign_work_order(
    payload: WorkOrderAssign,
    wo_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.ASSIGN, policy.WORK_ORDERS)),
) -> WorkOrderRead:
    wo = await WorkOrderService(session).assign(wo_id, tenant_id, payload.operator_id)
    return WorkOrderRead.model_validate(wo)


# PUBLIC_INTERFACE
@router.get(
    "/work-centers",
    response_model=List[WorkCenterRead],
    summary="List work centers",
    description="List work centers with in-progress work order count and derived utilization.",
)
async def list_work_centers(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.WORK_CENTERS)),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[WorkCenterRead]:
    return await WorkCenterLoadService(session).list_work_centers(
        tenant_id, is_active=is_active, limit=limit, offset=offset
    )
