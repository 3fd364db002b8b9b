from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mfgerp.core.settings import get_app_settings
from mfgerp.core.deps import get_tenant_id
from mfgerp.core.security import ACCESS, TokenError, token_subject
from mfgerp.core.logging import configure_logging, correlation_id_var, tenant_id_var
from mfgerp.db.run_migrations import upgrade_head
from mfgerp.db.seed import seed_all
from mfgerp.schemas.common import ErrorInfo, ErrorResponse, MessageResponse, TenantEcho
from mfgerp.services.errors import DomainError
from mfgerp.services.realtime import broadcast_manager

# Routers
from mfgerp.api.routes.auth import router as auth_router
from mfgerp.api.routes.inventory import router as inventory_router
from mfgerp.api.routes.master_data import router as masterdata_router
from mfgerp.api.routes.production import router as production_router

settings = get_app_settings()

# Configure structured logging once at import
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Liveness and readiness checks."},
    {"name": "Auth", "description": "Authentication and token endpoints."},
    {"name": "Master Data", "description": "Items and BOM resolution."},
    {"name": "Inventory", "description": "Stock ledger movements and balances."},
    {"name": "Production", "description": "Order planning, manufacturing orders and work orders."},
    {"name": "WebSocket", "description": "Realtime production feed usage."},
]

app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    openapi_tags=openapi_tags,
)

# CORS - avoid wildcard with credentials
cors_allow_credentials = settings.CORS_ALLOW_CREDENTIALS
if settings.CORS_ORIGINS == ["*"] and cors_allow_credentials:
    logger.warning("CORS_ALLOW_CREDENTIALS=True with '*' origins is not permitted; disabling credentials.")
    cors_allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Enrich request context with correlation_id and tenant_id for logging and error responses.
    Adds 'X-Correlation-ID' to every response.
    """
    corr = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID") or str(uuid4())
    tenant = request.headers.get("X-Tenant-ID")
    token_corr = correlation_id_var.set(corr)
    token_tenant = tenant_id_var.set(tenant)
    request.state.correlation_id = corr
    request.state.tenant_id = tenant

    logger.info("Incoming request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    finally:
        correlation_id_var.reset(token_corr)
        tenant_id_var.reset(token_tenant)

    response.headers["X-Correlation-ID"] = corr
    return response


def _build_error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    """Build a standardized ErrorResponse JSONResponse."""
    ts = datetime.now(tz=timezone.utc)
    corr = getattr(request.state, "correlation_id", None)
    tenant = getattr(request.state, "tenant_id", None)
    err = ErrorResponse(
        status=status_code,
        error=ErrorInfo(type=error_type, message=message, details=details),
        correlation_id=corr,
        tenant_id=tenant,
        path=request.url.path,
        method=request.method,
        timestamp=ts,
    )
    return JSONResponse(status_code=status_code, content=err.model_dump(mode="json"))


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """
    Render expected business failures (not found, insufficient stock, illegal
    transition, ...) with their machine-readable type.
    """
    logger.info("Domain error %s: %s", exc.error_type, exc.message)
    return _build_error_response(
        request=request,
        status_code=exc.status_code,
        error_type=exc.error_type,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Global handler for HTTPException to produce a standardized error envelope.
    """
    detail = exc.detail if isinstance(exc.detail, str) else "HTTP Error"
    return _build_error_response(
        request=request,
        status_code=exc.status_code,
        error_type="http_error",
        message=str(detail),
        details=None if isinstance(exc.detail, str) else exc.detail,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Global handler for request validation errors with a standard structure.
    """
    return _build_error_response(
        request=request,
        status_code=422,
        error_type="validation_error",
        message="Request validation failed",
        details=exc.errors(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler to avoid leaking stack traces and to return a structured error.
    """
    logger.exception("Unhandled error processing request")
    return _build_error_response(
        request=request,
        status_code=500,
        error_type="internal_error",
        message="An unexpected error occurred",
        details=None,
    )


@app.on_event("startup")
async def on_startup() -> None:
    """
    Run migrations and optional seeding on service startup.

    This ensures the database schema is up to date. Seeding is opt-in via settings.
    """
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            logger.info("Running Alembic migrations: upgrade head")
            # env.py drives its own event loop, so keep it off the server loop
            await run_in_threadpool(upgrade_head)
            logger.info("Migrations completed.")
        except Exception as exc:
            logger.exception("Migration step failed: %s", exc)

    if settings.AUTO_SEED:
        try:
            logger.info("Running database seeding...")
            await seed_all()
            logger.info("Seeding completed.")
        except Exception as exc:
            logger.exception("Seeding step failed: %s", exc)


# Build API v1 router and include sub-routers
api_v1 = APIRouter(prefix="/api/v1")


# PUBLIC_INTERFACE
@api_v1.get(
    "/health",
    response_model=MessageResponse,
    summary="Health Check",
    tags=["Health"],
)
def health_check() -> MessageResponse:
    """
    Basic liveness health check endpoint.

    Returns:
        MessageResponse: Simple confirmation that the service is running.
    """
    return MessageResponse(message="Healthy")


# PUBLIC_INTERFACE
@api_v1.get(
    "/health/tenant",
    response_model=TenantEcho,
    summary="Tenant Health Echo",
    description="Echoes the tenant context to verify header handling.",
    tags=["Health"],
)
async def tenant_health_echo(tenant_id=Depends(get_tenant_id)) -> TenantEcho:
    """Echo the provided tenant ID to verify multi-tenant request handling."""
    return TenantEcho(tenant_id=tenant_id)


# PUBLIC_INTERFACE
@api_v1.get(
    "/websocket-info",
    response_model=Dict[str, Any],
    summary="WebSocket Usage Information",
    description="Connection details for the realtime production feed.",
    tags=["WebSocket"],
)
def websocket_info() -> Dict[str, Any]:
    """Describe how to connect to the production feed."""
    return {
        "usage": (
            "Connect with a valid access token as a 'token' query parameter and include the 'X-Tenant-ID' header. "
            "Messages are JSON: { type: string, payload: object, at: ISO-8601, user_id?: string, channel?: string }."
        ),
        "security": {
            "token": "JWT must contain 'sub' (user id) and 'tenant_id' matching the X-Tenant-ID header.",
            "header": "X-Tenant-ID: UUID",
        },
        "endpoints": [
            {
                "path": "/ws/production",
                "summary": "Order, work order and stock events for the tenant (server push).",
                "query": ["token"],
                "headers": ["X-Tenant-ID"],
                "messages": {
                    "client_to_server": ["ping"],
                    "server_to_client": [
                        "order.created",
                        "order.confirmed",
                        "order.started",
                        "order.completed",
                        "order.cancelled",
                        "work_order.started",
                        "work_order.completed",
                        "work_order.cancelled",
                        "work_order.assigned",
                        "stock.movement",
                    ],
                },
            }
        ],
        "notes": "Events are published after commit on a best-effort basis and are not replayed.",
    }


api_v1.include_router(auth_router)
api_v1.include_router(masterdata_router)
api_v1.include_router(inventory_router)
api_v1.include_router(production_router)

app.include_router(api_v1)


async def _reject(websocket: WebSocket, code: int) -> None:
    await websocket.close(code=code)
    raise WebSocketDisconnect(code=code)


async def _validate_ws_and_get_user(websocket: WebSocket) -> tuple[str, str]:
    """
    Validate an accepted WebSocket by its 'token' query param and 'X-Tenant-ID' header.

    Returns:
        (tenant_id, user_id)
    Raises:
        WebSocketDisconnect if invalid.
    """
    token = websocket.query_params.get("token")
    tenant_id = websocket.headers.get("x-tenant-id")
    if not token or not tenant_id:
        await _reject(websocket, 4401)

    try:
        user_id = token_subject(token, token_type=ACCESS, tenant_id=tenant_id)
    except TokenError as exc:
        await _reject(websocket, 4403 if exc.tenant_mismatch else 4401)

    return str(tenant_id), str(user_id)


# PUBLIC_INTERFACE
@app.websocket("/ws/production")
async def ws_production(websocket: WebSocket):
    """
    WebSocket endpoint for the tenant's production feed.

    Security:
      - Query param 'token' must be a valid access JWT.
      - Header 'X-Tenant-ID' must match JWT tenant_id.
    Messages:
      - Server -> Client: order.*, work_order.* and stock.movement envelopes.
      - Client -> Server: optional 'ping' keepalive; other messages ignored.
    """
    await websocket.accept()
    try:
        tenant_id, user_id = await _validate_ws_and_get_user(websocket)
    except WebSocketDisconnect:
        return

    topic = broadcast_manager.production_topic(tenant_id)
    await broadcast_manager.connect(topic, websocket)
    logger.info("Production feed subscriber user=%s", user_id)
    try:
        while True:
            msg = await websocket.receive_text()
            if msg and msg.lower() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        await broadcast_manager.disconnect(topic, websocket)
    except Exception:
        logger.exception("Error on ws_production connection")
        await broadcast_manager.disconnect(topic, websocket)
        await websocket.close()
