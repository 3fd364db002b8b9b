from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.core import policy
from mfgerp.core.deps import get_tenant_id, get_tenant_session, require_permission
from mfgerp.repositories.master_data import BomRepository, ItemRepository
from mfgerp.schemas.master_data import BomRead, ItemRead, ResolvedBom
from mfgerp.services.bom import BomResolver

router = APIRouter(prefix="/master-data", tags=["Master Data"])


# PUBLIC_INTERFACE
@router.get(
    "/items",
    response_model=List[ItemRead],
    summary="List items",
    description="List items for the tenant ordered by code.",
)
async def list_items(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.ITEMS)),
    search: Optional[str] = Query(None, description="Filter by code or name (substring)"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[ItemRead]:
    repo = ItemRepository(session)
    items = await repo.list_items(tenant_id, search=search, is_active=is_active, limit=limit, offset=offset)
    return [ItemRead.model_validate(x) for x in items]


# PUBLIC_INTERFACE
@router.get(
    "/boms",
    response_model=List[BomRead],
    summary="List BOMs",
    description="List Bills of Materials for the tenant ordered by code.",
)
async def list_boms(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.BOMS)),
    item_id: Optional[UUID] = Query(None, description="Filter by produced item"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[BomRead]:
    repo = BomRepository(session)
    boms = await repo.list_boms(tenant_id, item_id=item_id, is_active=is_active, limit=limit, offset=offset)
    return [BomRead.model_validate(b) for b in boms]


# PUBLIC_INTERFACE
@router.get(
    "/boms/{bom_id}/resolve",
    response_model=ResolvedBom,
    summary="Resolve BOM",
    description=(
        "Flat component list and ordered operations for one unit of the BOM's item. "
        "Fails with cyclic_bom when the component graph leads back to the produced item."
    ),
)
async def resolve_bom(
    bom_id: UUID = Path(...),
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_tenant_session),
    _user=Depends(require_permission(policy.VIEW, policy.BOMS)),
) -> ResolvedBom:
    return await BomResolver(session).resolve(bom_id, tenant_id)
