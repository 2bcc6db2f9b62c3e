"""Concurrency primitives for the job worker."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from contextlib import asynccontextmanager

__all__ = ["BoundedPools"]


class BoundedPools:
    """A global semaphore combined with one semaphore per named pool."""

    def __init__(
        self,
        *,
        global_limit: int,
        pool_limits: Mapping[str, int] | None = None,
        default_pool_limit: int | None = None,
    ) -> None:
        self._global_limit = max(1, int(global_limit))
        self._global = asyncio.Semaphore(self._global_limit)
        self._pool_limits = {
            str(name): max(1, int(value)) for name, value in (pool_limits or {}).items()
        }
        self._default_pool_limit = (
            max(1, int(default_pool_limit)) if default_pool_limit is not None else None
        )
        self._pools: dict[str, asyncio.Semaphore] = {}

    @property
    def global_limit(self) -> int:
        return self._global_limit

    def limit_for(self, name: str) -> int:
        key = str(name)
        if key in self._pool_limits:
            return min(self._pool_limits[key], self._global_limit)
        if self._default_pool_limit is not None:
            return min(self._default_pool_limit, self._global_limit)
        return self._global_limit

    def _semaphore_for(self, name: str) -> asyncio.Semaphore:
        key = str(name)
        semaphore = self._pools.get(key)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.limit_for(key))
            self._pools[key] = semaphore
        return semaphore

    async def reserve(self, name: str) -> None:
        """Take one slot from the pool and one from the global limit, pool first."""

        pool = self._semaphore_for(name)
        await pool.acquire()
        try:
            await self._global.acquire()
        except BaseException:
            pool.release()
            raise

    def release(self, name: str) -> None:
        self._global.release()
        self._semaphore_for(name).release()

    @asynccontextmanager
    async def acquire(self, name: str):
        await self.reserve(name)
        try:
            yield
        finally:
            self.release(name)
