"""Single-leader election over the distributed lock table."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from portal.config import LockConfig
from portal.logging import get_logger
from portal.orchestrator.events import emit_leader_event
from portal.services.lock_manager import DistributedLockManager

LeadershipCallback = Callable[[], Awaitable[None]]


async def _noop() -> None:
    return None


class LeaderElection:
    """Run ``on_acquired`` while this instance holds the leader lock.

    A passive instance polls for the lock; the leader renews it. A failed
    renewal demotes the instance and calls ``on_lost`` before polling again.
    """

    def __init__(
        self,
        lock_manager: DistributedLockManager,
        config: LockConfig,
        *,
        on_acquired: LeadershipCallback = _noop,
        on_lost: LeadershipCallback = _noop,
    ) -> None:
        self._locks = lock_manager
        self._config = config
        self._on_acquired = on_acquired
        self._on_lost = on_lost
        self._logger = get_logger(__name__)
        self._is_leader = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def holder_id(self) -> str:
        return self._config.instance_id

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    async def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="leader-election")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._is_leader:
            await self._demote(status="stepped_down")
            try:
                await self._locks.release(self._config.name, self.holder_id)
            except SQLAlchemyError:
                self._logger.warning("Failed to release leader lock", exc_info=True)

    async def run_once(self) -> bool:
        """Perform one acquire-or-renew step and return the leadership state."""

        if self._is_leader:
            try:
                renewed = await self._locks.renew(self._config.name, self.holder_id, self._config.ttl_s)
            except SQLAlchemyError:
                self._logger.warning("Leader lock renewal failed", exc_info=True)
                renewed = False
            if not renewed:
                await self._demote(status="lost")
            return self._is_leader

        try:
            acquired = await self._locks.try_acquire(
                self._config.name, self.holder_id, self._config.ttl_s
            )
        except SQLAlchemyError:
            self._logger.warning("Leader lock acquisition failed", exc_info=True)
            return False
        if not acquired:
            return False

        self._is_leader = True
        emit_leader_event(
            self._logger,
            lock_name=self._config.name,
            holder_id=self.holder_id,
            status="acquired",
        )
        try:
            await self._on_acquired()
        except Exception as exc:
            self._logger.exception("Leader start-up failed; releasing lock")
            await self._demote(status="startup_failed", error=str(exc))
            with contextlib.suppress(SQLAlchemyError):
                await self._locks.release(self._config.name, self.holder_id)
        return self._is_leader

    async def _demote(self, *, status: str, error: str | None = None) -> None:
        self._is_leader = False
        emit_leader_event(
            self._logger,
            lock_name=self._config.name,
            holder_id=self.holder_id,
            status=status,
            error=error,
        )
        try:
            await self._on_lost()
        except Exception:
            self._logger.exception("Leader shutdown callback failed")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            delay = self._config.renew_interval_s if self._is_leader else self._config.poll_interval_s
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)


__all__ = ["LeaderElection", "LeadershipCallback"]
