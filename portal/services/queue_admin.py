"""Admin actions for inspecting and controlling the job queue."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from portal.config import AdminConfig, WatchlistSyncConfig
from portal.errors import (
    ActionResult,
    AppError,
    DependencyError,
    ErrorCode,
    InvalidStateError,
    ValidationAppError,
)
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.orchestrator.handlers import JobType, sync_user_dedup_key
from portal.orchestrator.queue import JobOptions, JobQueue, QueueStats
from portal.orchestrator.scheduler import SchedulerStatus, WatchlistSyncScheduler
from portal.schemas import JobIdInput, QueueJobsQuery, TriggerSyncInput, UpdateScheduleInput
from portal.services.access import Actor, SlidingWindowRateLimiter, require_admin
from portal.services.watchlist_sync_dao import WatchlistSyncDAO
from portal.services.watchlist_sync_service import DISABLED_GLOBALLY

logger = get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

REDIS_NOT_CONFIGURED = "Redis is not configured"
SYNC_ALL_MANUAL_DEDUP_KEY = f"{JobType.WATCHLIST_SYNC_ALL.value}:manual"


def _validate(model: type[M], payload: Mapping[str, Any] | None, message: str) -> M:
    try:
        return model.model_validate(dict(payload or {}))
    except ValidationError as exc:
        fields = [".".join(map(str, err["loc"])) for err in exc.errors()]
        raise ValidationAppError(message, meta={"fields": fields}) from exc


def _idle_stats() -> dict[str, int]:
    return QueueStats().to_dict()


class QueueAdminService:
    """Every action authorises first and reports failures as values.

    Mutating actions share one sliding-window limit per admin.
    """

    def __init__(
        self,
        *,
        queue: JobQueue | None,
        dao: WatchlistSyncDAO,
        scheduler: WatchlistSyncScheduler | None = None,
        worker_running: Callable[[], bool] = lambda: False,
        admin_config: AdminConfig | None = None,
        watchlist_config: WatchlistSyncConfig | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        admin = admin_config or AdminConfig()
        self._queue = queue
        self._dao = dao
        self._watchlist_config = watchlist_config or WatchlistSyncConfig()
        if scheduler is None and queue is not None:
            scheduler = WatchlistSyncScheduler(queue, dao, self._watchlist_config)
        self._scheduler = scheduler
        self._worker_running = worker_running
        self._limiter = rate_limiter or SlidingWindowRateLimiter(
            limit=admin.rate_limit, window_seconds=admin.rate_window_s
        )

    @property
    def queue_configured(self) -> bool:
        return self._queue is not None

    def _require_queue(self) -> JobQueue:
        if self._queue is None:
            raise DependencyError(REDIS_NOT_CONFIGURED)
        return self._queue

    def _require_scheduler(self) -> WatchlistSyncScheduler:
        self._require_queue()
        if self._scheduler is None:
            raise DependencyError(REDIS_NOT_CONFIGURED)
        return self._scheduler

    async def _require_sync_enabled(self) -> None:
        config = await asyncio.to_thread(self._dao.get_global_config)
        if not (self._watchlist_config.enabled and config.enabled):
            raise InvalidStateError(DISABLED_GLOBALLY)

    async def _guarded(
        self,
        actor: Actor | None,
        action: Callable[[Actor], Awaitable[T]],
        *,
        failure: str,
        mutating: bool = False,
    ) -> ActionResult[T]:
        try:
            admin = require_admin(actor)
            if mutating:
                self._limiter.check(admin.user_id)
            return ActionResult.ok(await action(admin))
        except AppError as exc:
            return ActionResult.from_error(exc)
        except (RedisError, OSError, SQLAlchemyError):
            logger.exception(failure)
            return ActionResult.fail(failure, ErrorCode.DEPENDENCY_ERROR)

    def _audit(self, admin: Actor, action: str, **fields: Any) -> None:
        log_event(logger, "queue.admin", admin_id=admin.user_id, action=action, **fields)

    async def get_queue_dashboard_data(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            data: dict[str, Any] = {
                "workerRunning": self._worker_running(),
                "isPaused": False,
                "redisConnected": False,
                "stats": _idle_stats(),
                "schedulers": [],
            }
            if self._queue is None or not await self._queue.ping():
                return data
            stats, paused, schedulers = await asyncio.gather(
                self._queue.get_stats(),
                self._queue.is_paused(),
                self._queue.get_schedulers(),
            )
            data.update(
                isPaused=paused,
                redisConnected=True,
                stats=stats.to_dict(),
                schedulers=[
                    {"id": info.id, "pattern": info.pattern, "next": info.next}
                    for info in schedulers
                    if info.id and info.pattern
                ],
            )
            return data

        return await self._guarded(
            actor, _load, failure="Failed to load queue dashboard. Please try again."
        )

    async def get_queue_health(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            data: dict[str, Any] = {
                "redisConnected": False,
                "workerRunning": False,
                "isPaused": False,
                "stats": _idle_stats(),
            }
            if self._queue is None:
                return data
            data["workerRunning"] = self._worker_running()
            if not await self._queue.ping():
                return data
            stats, paused = await asyncio.gather(self._queue.get_stats(), self._queue.is_paused())
            data.update(redisConnected=True, isPaused=paused, stats=stats.to_dict())
            return data

        return await self._guarded(
            actor, _load, failure="Failed to load queue health. Please try again."
        )

    async def get_queue_jobs(
        self, actor: Actor | None, payload: Mapping[str, Any] | None = None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            query = _validate(QueueJobsQuery, payload, "Invalid input")
            queue = self._require_queue()
            page = await queue.list_jobs(
                status=query.status,
                job_type=query.job_type,
                page=query.page,
                page_size=query.limit,
            )
            return {
                "jobs": [job.to_metadata() for job in page.jobs],
                "page": page.page,
                "limit": page.page_size,
                "hasMore": page.has_more,
            }

        return await self._guarded(actor, _load, failure="Failed to load jobs. Please try again.")

    async def get_queue_job(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            job_id = _validate(JobIdInput, payload, "Invalid job ID").job_id
            job = await self._require_queue().get_job(job_id)
            return job.to_metadata()

        return await self._guarded(actor, _load, failure="Failed to load job. Please try again.")

    async def retry_queue_job(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _retry(admin: Actor) -> dict[str, Any]:
            job_id = _validate(JobIdInput, payload, "Invalid job ID").job_id
            job = await self._require_queue().retry(job_id)
            self._audit(admin, "retry", job_id=job.id)
            return {"jobId": job.id, "attemptsMade": job.attempts}

        return await self._guarded(
            actor, _retry, failure="Failed to retry job. Please try again.", mutating=True
        )

    async def remove_queue_job(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _remove(admin: Actor) -> dict[str, Any]:
            job_id = _validate(JobIdInput, payload, "Invalid job ID").job_id
            await self._require_queue().remove(job_id)
            self._audit(admin, "remove", job_id=job_id)
            return {"jobId": job_id}

        return await self._guarded(
            actor, _remove, failure="Failed to remove job. Please try again.", mutating=True
        )

    async def pause_job_queue(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _pause(admin: Actor) -> dict[str, Any]:
            await self._require_queue().pause()
            self._audit(admin, "pause")
            return {"isPaused": True}

        return await self._guarded(
            actor, _pause, failure="Failed to pause queue. Please try again.", mutating=True
        )

    async def resume_job_queue(self, actor: Actor | None) -> ActionResult[dict[str, Any]]:
        async def _resume(admin: Actor) -> dict[str, Any]:
            await self._require_queue().resume()
            self._audit(admin, "resume")
            return {"isPaused": False}

        return await self._guarded(
            actor, _resume, failure="Failed to resume queue. Please try again.", mutating=True
        )

    async def trigger_watchlist_sync_job(
        self, actor: Actor | None, payload: Mapping[str, Any] | None = None
    ) -> ActionResult[dict[str, Any]]:
        async def _trigger(admin: Actor) -> dict[str, Any]:
            data = _validate(TriggerSyncInput, payload, "Invalid input")
            queue = self._require_queue()
            await self._require_sync_enabled()
            if data.user_id:
                job_id = await queue.enqueue(
                    JobType.WATCHLIST_SYNC_USER,
                    {"userId": data.user_id, "triggeredBy": "manual"},
                    JobOptions(dedup_key=sync_user_dedup_key(data.user_id)),
                )
            else:
                job_id = await queue.enqueue(
                    JobType.WATCHLIST_SYNC_ALL,
                    {"triggeredBy": "manual"},
                    JobOptions(dedup_key=SYNC_ALL_MANUAL_DEDUP_KEY),
                )
            self._audit(admin, "trigger", job_id=job_id, user_id=data.user_id)
            return {"jobId": job_id}

        return await self._guarded(
            actor, _trigger, failure="Failed to trigger sync. Please try again.", mutating=True
        )

    async def update_watchlist_sync_schedule(
        self, actor: Actor | None, payload: Mapping[str, Any] | None
    ) -> ActionResult[dict[str, Any]]:
        async def _update(admin: Actor) -> dict[str, Any]:
            data = _validate(UpdateScheduleInput, payload, "Invalid interval")
            scheduler = self._require_scheduler()
            current =await asyncio.to_thread(self._dao.get_global_config)
            # The refresh loop re-reads the stored interval, so persist it first.
            config = await asyncio.to_thread(
                self._dao.upsert_global_config,
                enabled=current.enabled,
                interval_minutes=data.interval_minutes,
                updated_by=admin.user_id,
            )
            status = await scheduler.apply(
                enabled=config.enabled, interval_minutes=data.interval_minutes
            )
            self._audit(
                admin,
                "schedule",
                interval_minutes=data.interval_minutes,
                status="updated" if status.enabled else "removed",
            )
            return status.to_dict()

        return await self._guarded(
            actor, _update, failure="Failed to update schedule. Please try again.", mutating=True
        )

    async def get_watchlist_sync_scheduler_status(
        self, actor: Actor | None
    ) -> ActionResult[dict[str, Any]]:
        async def _load(_: Actor) -> dict[str, Any]:
            if self._scheduler is not None:
                return (await self._scheduler.status()).to_dict()
            config = await asyncio.to_thread(self._dao.get_global_config)
            return SchedulerStatus(config.enabled, config.interval_minutes, None).to_dict()

        return await self._guarded(actor, _load, failure="Failed to fetch scheduler status")


__all__ = ["QueueAdminService", "REDIS_NOT_CONFIGURED", "SYNC_ALL_MANUAL_DEDUP_KEY"]
