from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID, uuid4

import httpx
import pytest
from fastapi import Depends

from conftest import build_catalog
from mfgerp.api.main import app
from mfgerp.core.deps import get_current_active_user, get_tenant_id, get_tenant_session
from mfgerp.core.security import get_password_hash
from mfgerp.db.models import Role, User, UserRole
from mfgerp.db.session import tenant_context

API = "/api/v1"


def _fake_user(*roles: str):
    return SimpleNamespace(id=uuid4(), is_active=True, roles=[SimpleNamespace(name=r) for r in roles])


@pytest.fixture
def override_session(session_factory):
    async def _session(tenant_id: UUID = Depends(get_tenant_id)):
        async with session_factory() as s:
            async with tenant_context(s, tenant_id):
                yield s

    app.dependency_overrides[get_tenant_session] = _session
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def acting_as(override_session):
    def _set(*roles: str):
        user = _fake_user(*roles)
        app.dependency_overrides[get_current_active_user] = lambda: user
        return user

    return _set


@pytest.fixture
async def client():
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _headers(catalog):
    return {"X-Tenant-ID": str(catalog.tenant_id)}


async def test_health(client):
    resp = await client.get(f"{API}/health")

    assert resp.status_code == 200
    assert resp.json()["message"] == "Healthy"
    assert resp.headers["X-Correlation-ID"]


async def test_missing_tenant_header_uses_error_envelope(client, acting_as):
    acting_as("admin")

    resp = await client.get(f"{API}/production/manufacturing-orders", headers={"X-Correlation-ID": "abc-123"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["type"] == "http_error"
    assert body["correlation_id"] == "abc-123"
    assert body["path"] == f"{API}/production/manufacturing-orders"


async def test_plan_endpoint(client, acting_as, catalog):
    acting_as("manager")

    resp = await client.post(
        f"{API}/production/plan",
        json={"item_id": str(catalog.product), "bom_id": str(catalog.bom), "planned_qty": "10"},
        headers=_headers(catalog),
    )

    assert resp.status_code == 200
    totals = {r["item_id"]: Decimal(r["total_qty"]) for r in resp.json()["component_requirements"]}
    assert totals == {str(catalog.steel_rod): Decimal("20"), str(catalog.screws): Decimal("40")}


async def test_order_lifecycle_over_http(client, acting_as, catalog):
    manager = acting_as("manager")
    headers = _headers(catalog)

    created = await client.post(
        f"{API}/production/manufacturing-orders",
        json={"item_id": str(catalog.product), "bom_id": str(catalog.bom), "planned_qty": "10", "priority": "high"},
        headers=headers,
    )
    assert created.status_code == 201
    order = created.json()
    assert order["state"] == "DRAFT"
    assert order["created_by"] == str(manager.id)

    confirmed = await client.post(f"{API}/production/manufacturing-orders/{order['id']}/confirm", headers=headers)
    assert confirmed.status_code == 200
    assert confirmed.json()["state"] == "CONFIRMED"

    detail = await client.get(f"{API}/production/manufacturing-orders/{order['id']}", headers=headers)
    work_orders = detail.json()["work_orders"]
    assert len(work_orders) == 3

    acting_as("operator")
    started = await client.post(f"{API}/production/work-orders/{work_orders[0]['id']}/start", headers=headers)
    assert started.status_code == 200
    assert started.json()["state"] == "IN_PROGRESS"

    stock = await client.get(f"{API}/inventory/items/{catalog.steel_rod}/stock", headers=headers)
    assert stock.status_code == 403

    acting_as("inventory")
    stock = await client.get(f"{API}/inventory/items/{catalog.steel_rod}/stock", headers=headers)
    assert Decimal(stock.json()["quantity"]) == Decimal("980")

    acting_as("manager")
    centers = await client.get(f"{API}/production/work-centers", headers=headers)
    by_name = {wc["name"]: wc for wc in centers.json()}
    assert Decimal(by_name["Cutting"]["utilization"]) == Decimal("25")


async def test_domain_errors_map_to_status_codes(client, acting_as, session):
    acting_as("admin")
    catalog = await build_catalog(session, "Thin Stock", steel="5")
    headers = _headers(catalog)

    created = await client.post(
        f"{API}/production/manufacturing-orders",
        json={"item_id": str(catalog.product), "bom_id": str(catalog.bom), "planned_qty": "10"},
        headers=headers,
    )
    order_id = created.json()["id"]

    resp = await client.post(f"{API}/production/manufacturing-orders/{order_id}/confirm", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "insufficient_stock"
    assert resp.json()["error"]["details"]["shortages"][0]["item_id"] == str(catalog.steel_rod)

    resp = await client.post(f"{API}/production/manufacturing-orders/{order_id}/complete", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "invalid_transition"

    resp = await client.get(f"{API}/production/manufacturing-orders/{uuid4()}", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "not_found"

    resp = await client.post(
        f"{API}/production/manufacturing-orders",
        json={"item_id": str(catalog.product), "planned_qty": "-1"},
        headers=headers,
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "invalid_quantity"


async def test_manual_movement_and_ledger(client, acting_as, catalog):
    clerk = acting_as("inventory")
    headers = _headers(catalog)

    resp = await client.post(
        f"{API}/inventory/movements",
        json={"item_id": str(catalog.screws), "qty_delta": "-25", "voucher_type": "manual_adjustment"},
        headers=headers,
    )
    assert resp.status_code == 201
    entry = resp.json()
    assert Decimal(entry["qty_after_transaction"]) == Decimal("4975")
    assert entry["created_by"] == str(clerk.id)

    ledger = await client.get(f"{API}/inventory/ledger", params={"item_id": str(catalog.screws)}, headers=headers)
    assert sorted(Decimal(e["qty_delta"]) for e in ledger.json()) == [Decimal("-25"), Decimal("5000")]

    resp = await client.get(f"{API}/inventory/ledger", params={"voucher_type": "bogus"}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "validation_error"


async def test_resolve_bom_endpoint(client, acting_as, catalog):
    acting_as("inventory")

    resp = await client.get(f"{API}/master-data/boms/{catalog.bom}/resolve", headers=_headers(catalog))

    assert resp.status_code == 200
    assert [op["sequence"] for op in resp.json()["operations"]] == [10, 20, 20]


async def test_login_and_me(client, override_session, session, catalog):
    user = User(
        tenant_id=catalog.tenant_id,
        email="planner@acme.com",
        full_name="Pat Planner",
        hashed_password=get_password_hash("s3cret-pass"),
    )
    role = Role(tenant_id=catalog.tenant_id, name="manager")
    session.add_all([user, role])
    await session.flush()
    session.add(UserRole(tenant_id=catalog.tenant_id, user_id=user.id, role_id=role.id))
    await session.commit()
    headers = _headers(catalog)

    bad = await client.post(
        f"{API}/auth/login", data={"username": "planner@acme.com", "password": "nope"}, headers=headers
    )
    assert bad.status_code == 401

    tokens = await client.post(
        f"{API}/auth/login", data={"username": "planner@acme.com", "password": "s3cret-pass"}, headers=headers
    )
    assert tokens.status_code == 200
    access = tokens.json()["access_token"]

    me = await client.get(f"{API}/auth/me", headers={**headers, "Authorization": f"Bearer {access}"})
    assert me.status_code == 200
    assert me.json()["roles"] == ["manager"]

    other_tenant = await client.get(
        f"{API}/auth/me", headers={"X-Tenant-ID": str(uuid4()), "Authorization": f"Bearer {access}"}
    )
    assert other_tenant.status_code == 403

    refreshed = await client.post(
        f"{API}/auth/refresh", json={"refresh_token": tokens.json()["refresh_token"]}, headers=headers
    )
    assert refreshed.status_code == 200
    wrong_type = await client.post(f"{API}/auth/refresh", json={"refresh_token": access}, headers=headers)
    assert wrong_type.status_code == 401
