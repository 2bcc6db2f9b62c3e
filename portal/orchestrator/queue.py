"""Logical job queue on top of the Redis persistence layer."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
import logging
import random
from typing import Any

from apscheduler.triggers.cron import CronTrigger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from portal.config import QueueConfig
from portal.errors import InvalidStateError, NotFoundError, ValidationAppError
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.utils.retry import backoff_delay_ms
from portal.utils.time import from_epoch_ms, now_ms
from portal.workers.persistence import (
    JobStatus,
    QueueJobDTO,
    RedisQueueStore,
    SchedulerRecord,
    STALLED_LIMIT_ERROR,
)

logger = get_logger(__name__)

_ERROR_MAX_LENGTH = 512
_LIST_CHUNK_SIZE = 200


def job_type_name(job_type: str | Enum) -> str:
    if isinstance(job_type, Enum):
        return str(job_type.value)
    return str(job_type)


def truncate_error(message: str) -> str:
    text = message.strip() or "Job failed"
    if len(text) <= _ERROR_MAX_LENGTH:
        return text
    return text[: _ERROR_MAX_LENGTH - 3] + "..."


@dataclass(slots=True, frozen=True)
class JobOptions:
    dedup_key: str | None = None
    delay_ms: int = 0
    max_attempts: int | None = None
    backoff_ms: int | None = None
    priority: int = 0


@dataclass(slots=True, frozen=True)
class RepeatSpec:
    """Either a fixed interval in milliseconds or a five-field cron expression."""

    every_ms: int | None = None
    cron: str | None = None

    def __post_init__(self) -> None:
        if (self.every_ms is None) == (self.cron is None):
            raise ValidationAppError("Provide exactly one of every_ms or cron")
        if self.every_ms is not None and self.every_ms < 1000:
            raise ValidationAppError("Repeat interval must be at least one second")
        if self.cron is not None:
            try:
                CronTrigger.from_crontab(self.cron, timezone=UTC)
            except ValueError as exc:
                raise ValidationAppError(f"Invalid cron expression: {self.cron}") from exc

    @property
    def pattern(self) -> str:
        if self.cron is not None:
            return self.cron
        return f"every {self.every_ms}ms"

    def next_after(self, reference_ms: int) -> int:
        if self.every_ms is not None:
            return reference_ms + self.every_ms
        trigger = CronTrigger.from_crontab(self.cron, timezone=UTC)
        reference = datetime.fromtimestamp(reference_ms / 1000, tz=UTC) + timedelta(seconds=1)
        fire_time = trigger.get_next_fire_time(None, reference)
        return int(fire_time.timestamp() * 1000)

    @classmethod
    def from_record(cls, record: SchedulerRecord) -> RepeatSpec:
        return cls(every_ms=record.every_ms, cron=record.cron)


@dataclass(slots=True, frozen=True)
class SchedulerInfo:
    id: str
    job_type: str
    pattern: str
    next_run_ms: int | None

    @property
    def next(self) -> datetime | None:
        return from_epoch_ms(self.next_run_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "jobType": self.job_type, "pattern": self.pattern, "next": self.next}


@dataclass(slots=True, frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }


@dataclass(slots=True, frozen=True)
class JobPage:
    jobs: list[QueueJobDTO]
    page: int
    page_size: int
    has_more: bool


@dataclass(slots=True, frozen=True)
class MaintenanceReport:
    promoted: int = 0
    stalled: int = 0
    stalled_failed: int = 0
    scheduled: int = 0
    cleaned: int = 0


class JobQueue:
    """Enqueue, schedule, inspect and control jobs.

    The Redis client is owned by the caller; :meth:`close` only closes it when
    the queue was asked to take ownership.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        config: QueueConfig,
        store: RedisQueueStore | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
        owns_client: bool = False,
    ) -> None:
        self._redis = redis
        self._config = config
        self._store = store or RedisQueueStore(redis, prefix=config.name)
        self._clock = clock
        self._rng = rng or random.Random()
        self._owns_client = owns_client
        self._logger = logger

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def store(self) -> RedisQueueStore:
        return self._store

    async def enqueue(
        self,
        job_type: str | Enum,
        payload: Mapping[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> str:
        """Persist a job and return its id, or the id of the pending duplicate."""

        opts = options or JobOptions()
        type_name = job_type_name(job_type)
        job, created = await self._store.add(
            type_name,
            dict(payload or {}),
            priority=opts.priority,
            max_attempts=opts.max_attempts or self._config.default_attempts,
            backoff_ms=opts.backoff_ms if opts.backoff_ms is not None else self._config.backoff_base_ms,
            delay_ms=max(0, int(opts.delay_ms)),
            dedup_key=opts.dedup_key,
            now_ms=self._clock(),
        )
        log_event(
            self._logger,
            "queue.enqueue" if created else "queue.dedupe",
            job_id=job.id,
            job_type=type_name,
            status=job.status.value,
            dedup_key=opts.dedup_key,
        )
        return job.id

    async def schedule_recurring(
        self,
        scheduler_id: str,
        job_type: str | Enum,
        payload: Mapping[str, Any] | None,
        repeat: RepeatSpec,
    ) -> SchedulerInfo:
        """Create or update the recurring trigger ``scheduler_id``.

        Re-registering an unchanged pattern keeps the pending slot so repeated
        calls never shift or duplicate the schedule.
        """

        type_name = job_type_name(job_type)
        existing = await self._store.get_scheduler(scheduler_id)
        now = self._clock()
        unchanged = (
            existing is not None
            and existing.every_ms == repeat.every_ms
            and existing.cron == repeat.cron
        )
        next_run = existing.next_run_ms if unchanged and existing else repeat.next_after(now)
        record = SchedulerRecord(
            id=scheduler_id,
            job_type=type_name,
            payload=dict(payload or {}),
            every_ms=repeat.every_ms,
            cron=repeat.cron,
            next_run_ms=next_run,
        )
        await self._store.save_scheduler(record)
        log_event(
            self._logger,
            "queue.scheduler",
            scheduler_id=scheduler_id,
            job_type=type_name,
            status="unchanged" if unchanged else "upserted",
            pattern=repeat.pattern,
            next_run_ms=next_run,
        )
        return SchedulerInfo(scheduler_id, type_name, repeat.pattern, next_run)

    async def remove_scheduler(self, scheduler_id: str) -> bool:
        removed = await self._store.delete_scheduler(scheduler_id)
        if removed:
            log_event(self._logger, "queue.scheduler", scheduler_id=scheduler_id, status="removed")
        return removed

    async def get_schedulers(self) -> list[SchedulerInfo]:
        records = await self._store.list_schedulers()
        return [
            SchedulerInfo(
                record.id,
                record.job_type,
                RepeatSpec.from_record(record).pattern,
                record.next_run_ms,
            )
            for record in records
        ]

    async def get_stats(self) -> QueueStats:
        """Counts per status; finished jobs only within their retention window."""

        now = self._clock()
        counts = await self._store.counts(
            completed_since_ms=now - self._config.completed_retention_s * 1000,
            failed_since_ms=now - self._config.failed_retention_s * 1000,
        )
        return QueueStats(**counts)

    async def list_jobs(
        self,
        *,
        status: JobStatus | str | None = None,
        job_type: str | Enum | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> JobPage:
        """Newest-first page of jobs filtered by status and/or type."""

        page = max(1, int(page))
        page_size = max(1, int(page_size))
        wanted = JobStatus(status) if status is not None else None
        skip = (page - 1) * page_size
        matched: list[QueueJobDTO] = []
        type_name = job_type_name(job_type) if job_type is not None else None
        async for chunk in self._store.iter_newest(job_type=type_name, chunk_size=_LIST_CHUNK_SIZE):
            for job in chunk:
                if wanted is not None and job.status is not wanted:
                    continue
                if skip:
                    skip -= 1
                    continue
                matched.append(job)
                if len(matched) > page_size:
                    break
            if len(matched) > page_size:
                break
        return JobPage(
            jobs=matched[:page_size],
            page=page,
            page_size=page_size,
            has_more=len(matched) > page_size,
        )

    async def get_job(self, job_id: str) -> QueueJobDTO:
        job = await self._store.get(str(job_id))
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def retry(self, job_id: str) -> QueueJobDTO:
        """Re-queue a failed job; anything else is reported as not found."""

        if not await self._store.retry(str(job_id), now_ms=self._clock()):
            raise NotFoundError("Job not found or not in a failed state")
        job = await self.get_job(job_id)
        log_event(
            self._logger,
            "queue.retry",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )
        return job

    async def remove(self, job_id: str) -> None:
        outcome = await self._store.remove(str(job_id))
        if outcome == "missing":
            raise NotFoundError("Job not found")
        if outcome == "active":
            raise InvalidStateError("Cannot remove a job while it is running")
        log_event(self._logger, "queue.remove", job_id=str(job_id))

    async def pause(self) -> None:
        await self._store.set_paused(True)
        log_event(self._logger, "queue.pause", queue=self._config.name)

    async def resume(self) -> None:
        await self._store.set_paused(False)
        log_event(self._logger, "queue.resume", queue=self._config.name)

    async def is_paused(self) -> bool:
        return await self._store.is_paused()

    async def clean(self, status: JobStatus | str, *, grace_s: int = 0, limit: int = 1000) -> int:
        """Delete finished jobs that finished more than ``grace_s`` seconds ago."""

        resolved = JobStatus(status)
        cutoff = self._clock() - max(0, int(grace_s)) * 1000
        return await self._store.clean(resolved, finished_before_ms=cutoff, limit=limit)

    async def ping(self) -> bool:
        try:
            return await self._store.ping()
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    async def claim(self, job_type: str | Enum) -> QueueJobDTO | None:
        if await self._store.is_paused():
            return None
        return await self._store.claim(
            job_type_name(job_type),
            lease_ms=self._config.lease_timeout_s * 1000,
            now_ms=self._clock(),
        )

    async def heartbeat(self, job: QueueJobDTO) -> bool:
        return await self._store.heartbeat(
            job.id,
            lease_ms=self._config.lease_timeout_s * 1000,
            now_ms=self._clock(),
        )

    async def complete(self, job: QueueJobDTO, result: Mapping[str, Any] | None) -> bool:
        return await self._store.complete(job.id, result=result, now_ms=self._clock())

    def backoff_for(self, job: QueueJobDTO) -> int:
        return backoff_delay_ms(
            job.backoff_ms or self._config.backoff_base_ms,
            job.attempts,
            jitter_pct=self._config.jitter_pct,
            rng=self._rng,
        )

    async def fail(
        self,
        job: QueueJobDTO,
        error: str,
        *,
        retryable: bool = True,
    ) -> JobStatus | None:
        """Record a failed run, scheduling a retry while attempts remain."""

        now = self._clock()
        retry_at: int | None = None
        if retryable and job.attempts < job.max_attempts:
            retry_at = now + self.backoff_for(job)
        return await self._store.fail(
            job.id,
            error=truncate_error(error),
            retry_at_ms=retry_at,
            now_ms=now,
        )

    async def run_maintenance(self, *, full: bool = True) -> MaintenanceReport:
        """Promote delayed jobs and fire due schedules.

        A ``full`` pass also requeues stalled jobs and trims finished history.
        """

        now = self._clock()
        promoted = await self._store.promote_due(now_ms=now)
        scheduled = await self._materialise_schedules(now)
        if not full:
            return MaintenanceReport(promoted=promoted, scheduled=scheduled)
        sweep = await self._store.requeue_stalled(now_ms=now, max_stalled=self._config.max_stalled)
        for job_id in sweep.requeued:
            log_event(self._logger, "worker.stalled", job_id=job_id, status="requeued")
        for job_id in sweep.failed:
            log_event(
                self._logger,
                "worker.stalled",
                level=logging.WARNING,
                job_id=job_id,
                status="failed",
                error=STALLED_LIMIT_ERROR,
            )
        cleaned = await self._store.clean(
            JobStatus.COMPLETED,
            finished_before_ms=now - self._config.completed_retention_s * 1000,
            keep=self._config.completed_max,
        )
        cleaned += await self._store.clean(
            JobStatus.FAILED,
            finished_before_ms=now - self._config.failed_retention_s * 1000,
        )
        return MaintenanceReport(
            promoted=promoted,
            stalled=len(sweep.requeued),
            stalled_failed=len(sweep.failed),
            scheduled=scheduled,
            cleaned=cleaned,
        )

    async def _materialise_schedules(self, now: int) -> int:
        fired = 0
        for record in await self._store.list_schedulers():
            if record.next_run_ms > now:
                continue
            repeat = RepeatSpec.from_record(record)
            if not await self._store.advance_scheduler(record, next_run_ms=repeat.next_after(now)):
                continue
            await self.enqueue(
                record.job_type,
                {**record.payload, "schedulerId": record.id},
                JobOptions(dedup_key=f"scheduler:{record.id}"),
            )
            fired += 1
        return fired


__all__ = [
    "JobOptions",
    "JobPage",
    "JobQueue",
    "MaintenanceReport",
    "QueueStats",
    "RepeatSpec",
    "SchedulerInfo",
    "job_type_name",
    "truncate_error",
]
