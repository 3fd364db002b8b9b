from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.services.errors import ConflictError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, unique_violation
_CONFLICT_SQLSTATES = {"40001", "40P01", "23505"}


def _is_conflict(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    # SQLite reports unique violations only in the message text.
    return isinstance(exc, IntegrityError) and "UNIQUE constraint failed" in str(orig)


class BaseService:
    """
    Base class for services. Holds a session for use across multiple repositories.

    Services keep business logic and orchestration and own the unit of work;
    repositories only read, add and flush.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def unit_of_work(self, operation: str) -> AsyncIterator[None]:
        """
        Commit when the block succeeds, roll back on any exception.

        Serialization failures, deadlocks and unique-key races are re-raised as
        ConflictError; other storage faults propagate unchanged after rollback.
        """
        try:
            yield
            await self.session.commit()
        except DBAPIError as exc:
            await self.session.rollback()
            if _is_conflict(exc):
                logger.warning("Concurrent write conflict during %s: %s", operation, exc.orig)
                raise ConflictError(
                    "Concurrent modification detected; retry the operation",
                    details={"operation": operation},
                ) from exc
            raise
        except Exception:
            await self.session.rollback()
            raise

    async def release_snapshot(self) -> None:
        """
        End the transaction opened by reads made before taking locks, so the
        locked unit of work starts from a fresh snapshot.

        Sessions do not expire on commit, so entities already returned to the
        caller stay loaded. A rollback here would expire them.
        """
        if self.session.in_transaction():
            await self.session.commit()
