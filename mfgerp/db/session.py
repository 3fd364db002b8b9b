from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Union
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session

from .config import get_settings


_ENGINE: AsyncEngine | None = None
_SESSION_MAKER: async_sessionmaker[AsyncSession] | None = None

TENANT_INFO_KEY = "tenant_id"


def _ensure_engine_initialized() -> None:
    """
    Lazily initialize the AsyncEngine and session maker.
    """
    global _ENGINE, _SESSION_MAKER
    if _ENGINE is None:
        settings = get_settings()
        options = {"echo": settings.SQL_ECHO, "pool_pre_ping": True}
        if settings.DB_ISOLATION_LEVEL:
            options["isolation_level"] = settings.DB_ISOLATION_LEVEL
        _ENGINE = create_async_engine(settings.async_database_url, **options)
    if _SESSION_MAKER is None:
        _SESSION_MAKER = make_session_factory(_ENGINE)


# PUBLIC_INTERFACE
def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used for every unit of work."""
    return async_sessionmaker(
        bind=engine, expire_on_commit=False, autoflush=False, autocommit=False
    )


# PUBLIC_INTERFACE
def get_engine() -> AsyncEngine:
    """Return the global AsyncEngine instance."""
    _ensure_engine_initialized()
    assert _ENGINE is not None
    return _ENGINE


# PUBLIC_INTERFACE
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global session factory."""
    _ensure_engine_initialized()
    assert _SESSION_MAKER is not None
    return _SESSION_MAKER


# PUBLIC_INTERFACE
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an AsyncSession suitable for FastAPI dependency injection.
    Ensures engine/session factory is initialized.
    """
    async with get_session_factory()() as session:
        yield session


@event.listens_for(Session, "after_begin")
def _apply_tenant_guc(session: Session, transaction, connection) -> None:
    """
    Re-apply the tenant GUC at the start of every transaction.

    The setting is transaction-local, so commits, rollbacks and pooled
    connection swaps can never leak or lose the tenant between units of work.
    """
    tenant_id = session.info.get(TENANT_INFO_KEY)
    if tenant_id is None or connection.dialect.name != "postgresql":
        return
    connection.execute(
        text("SELECT set_config('app.tenant_id', :tenant_id, true)"),
        {"tenant_id": tenant_id},
    )


# PUBLIC_INTERFACE
async def set_current_tenant(
    session: AsyncSession, tenant_id: Union[str, UUID]
) -> None:
    """
    Set the current tenant for the DB session.

    This enables Row-Level Security (RLS) policies that reference:
      current_setting('app.tenant_id', true)

    Repositories filter by tenant explicitly as well; RLS is the second fence.
    """
    session.info[TENANT_INFO_KEY] = str(tenant_id)
    if session.in_transaction() and session.get_bind().dialect.name == "postgresql":
        await session.execute(
            text("SELECT set_config('app.tenant_id', :tenant_id, true)"),
            {"tenant_id": str(tenant_id)},
        )


# PUBLIC_INTERFACE
@asynccontextmanager
async def tenant_context(
    session: AsyncSession, tenant_id: Union[str, UUID]
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager that sets and clears the tenant context on the session.

    Usage:
        async with tenant_context(session, tenant_id):
            # all queries inside are additionally filtered by RLS
            ...
    """
    await set_current_tenant(session, tenant_id)
    try:
        yield session
    finally:
        session.info.pop(TENANT_INFO_KEY, None)
