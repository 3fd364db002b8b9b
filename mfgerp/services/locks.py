from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Iterable
from uuid import UUID

logger = logging.getLogger(__name__)


class LockRegistry:
    """
    In-process keyed asyncio locks for units of work in this worker.

    Keys are scoped per tenant:
      - order:{tenant_id}:{order_id}
      - item:{tenant_id}:{item_id}

    An entry lives only while some coroutine holds or awaits its lock.

    Row locks taken with SELECT ... FOR UPDATE inside the transaction
    serialize across processes; these locks keep coroutines in one process
    from racing into the same rows and failing late on serialization errors.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; an entry is dropped when it reaches zero.
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _held(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    # PUBLIC_INTERFACE
    def order_key(self, tenant_id: UUID, order_id: UUID) -> str:
        """Return lock key for a manufacturing order."""
        return f"order:{tenant_id}:{order_id}"

    # PUBLIC_INTERFACE
    def item_key(self, tenant_id: UUID, item_id: UUID) -> str:
        """Return lock key for an item's ledger aggregate."""
        return f"item:{tenant_id}:{item_id}"

    # PUBLIC_INTERFACE
    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold a single keyed lock."""
        async with self._held(key):
            yield

    # PUBLIC_INTERFACE
    @asynccontextmanager
    async def hold_items(self, tenant_id: UUID, item_ids: Iterable[UUID]) -> AsyncIterator[None]:
        """
        Hold the locks of several items, acquired in ascending id order so two
        orders sharing components can never deadlock each other.
        """
        ordered = sorted(set(item_ids), key=str)
        async with AsyncExitStack() as stack:
            for item_id in ordered:
                await stack.enter_async_context(self._held(self.item_key(tenant_id, item_id)))
            logger.debug("Holding %d item lock(s)", len(ordered))
            yield


# Singleton instance
lock_registry = LockRegistry()
