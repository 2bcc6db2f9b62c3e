"""Keep the recurring sync-all trigger in line with the persisted global config."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from portal.config import WatchlistSyncConfig
from portal.logging import get_logger
from portal.orchestrator.handlers import WATCHLIST_SCHEDULER_ID, JobType
from portal.orchestrator.queue import JobQueue, RepeatSpec
from portal.services.watchlist_sync_dao import WatchlistSyncDAO

_MS_PER_MINUTE = 60_000


@dataclass(slots=True, frozen=True)
class SchedulerStatus:
    enabled: bool
    interval_minutes: int
    next_run: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "intervalMinutes": self.interval_minutes,
            "nextRun": self.next_run,
        }


class WatchlistSyncScheduler:
    """Register or remove the ``watchlist-sync-scheduled`` repeat on demand.

    Registration is an upsert keyed by a stable scheduler id, so calling
    :meth:`refresh` repeatedly never duplicates the trigger.
    """

    def __init__(
        self,
        queue: JobQueue,
        dao: WatchlistSyncDAO,
        config: WatchlistSyncConfig | None = None,
    ) -> None:
        self._queue = queue
        self._dao = dao
        self._config = config or WatchlistSyncConfig()
        self._logger = get_logger(__name__)
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    async def refresh(self) -> SchedulerStatus:
        """Re-read the persisted global config and apply it."""

        config = await asyncio.to_thread(self._dao.get_global_config)
        return await self.apply(enabled=config.enabled, interval_minutes=config.interval_minutes)

    async def apply(self, *, enabled: bool, interval_minutes: int) -> SchedulerStatus:
        if not (enabled and self._config.enabled):
            await self._queue.remove_scheduler(WATCHLIST_SCHEDULER_ID)
            return SchedulerStatus(False, interval_minutes, None)
        info = await self._queue.schedule_recurring(
            WATCHLIST_SCHEDULER_ID,
            JobType.WATCHLIST_SYNC_ALL,
            {"triggeredBy": "scheduled"},
            RepeatSpec(every_ms=interval_minutes * _MS_PER_MINUTE),
        )
        return SchedulerStatus(True, interval_minutes, info.next)

    async def status(self) -> SchedulerStatus:
        config = await asyncio.to_thread(self._dao.get_global_config)
        next_run: datetime | None = None
        for info in await self._queue.get_schedulers():
            if info.id == WATCHLIST_SCHEDULER_ID:
                next_run = info.next
                break
        return SchedulerStatus(config.enabled, config.interval_minutes, next_run)

    async def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="watchlist-sync-scheduler")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        # Config changes made through another instance are picked up here.
        while not self._stop_event.is_set():
            try:
                await self.refresh()
            except (RedisError, OSError, SQLAlchemyError):
                self._logger.warning("Watchlist schedule refresh failed", exc_info=True)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.schedule_refresh_s
                )


__all__ = ["SchedulerStatus", "WatchlistSyncScheduler"]
