from __future__ import annotations

from typing import Any, Callable, Iterable, List, Mapping, Optional

from sqlalchemy import ColumnElement, Executable
from sqlalchemy.ext.asyncio import AsyncSession

from mfgerp.services.errors import InvalidFilterError

FilterBuilder = Callable[[Any], ColumnElement[bool]]


class BaseRepository:
    """
    Base class for repositories providing common helpers.

    Note:
      Every query filters by tenant_id explicitly. Repositories never commit on
      behalf of a service: the service owns the unit of work and decides when
      to commit or roll back.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def execute(self, statement: Executable, params: Optional[dict[str, Any]] = None):
        """Execute a SQLAlchemy statement."""
        return await self.session.execute(statement, params or {})

    async def scalars(self, statement: Executable, params: Optional[dict[str, Any]] = None):
        """Execute and return scalars."""
        result = await self.execute(statement, params)
        return result.scalars()

    async def scalar_one_or_none(self, statement: Executable, params: Optional[dict[str, Any]] = None):
        """Execute and return a single scalar or None."""
        result = await self.execute(statement, params)
        return result.scalar_one_or_none()

    async def flush(self) -> None:
        """Flush pending changes inside the current transaction."""
        await self.session.flush()

    async def add_all(self, entities: Iterable[Any]) -> None:
        """Add multiple entities to session."""
        self.session.add_all(list(entities))

    async def add(self, entity: Any) -> None:
        """Add a single entity to session."""
        self.session.add(entity)


# PUBLIC_INTERFACE
def build_filters(
    allowed: Mapping[str, FilterBuilder], filters: Mapping[str, Any]
) -> List[ColumnElement[bool]]:
    """
    Turn a mapping of filter values into bound SQL criteria.

    Only names present in `allowed` are accepted; values are always bound as
    parameters by the builder. None values are skipped.
    """
    unknown = sorted(set(filters) - set(allowed))
    if unknown:
        raise InvalidFilterError(
            "Unsupported filter field(s)", details={"fields": unknown, "allowed": sorted(allowed)}
        )
    return [allowed[name](value) for name, value in filters.items() if value is not None]
