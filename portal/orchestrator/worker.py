"""Asynchronous worker executing leased queue jobs with bounded concurrency."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Mapping
from typing import Any

from redis.exceptions import RedisError

from portal.config import QueueConfig
from portal.logging import get_logger
from portal.logging_events import log_event
from portal.orchestrator import events as orchestrator_events
from portal.orchestrator.handlers import JobHandler, JobType, ensure_exhaustive
from portal.orchestrator.queue import JobQueue, truncate_error
from portal.utils.concurrency import BoundedPools
from portal.workers.persistence import JobStatus, QueueJobDTO

_LIGHT_MAINTENANCE_INTERVAL_S = 1.0


class JobWorker:
    """Consume every :class:`JobType` from the queue and dispatch to handlers.

    Each type gets its own consumer loop gated by a per-type pool and the
    global concurrency limit, so one slow type never starves the others.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[JobType, JobHandler] | None = None,
        *,
        config: QueueConfig | None = None,
        maintenance: bool = True,
    ) -> None:
        self._queue = queue
        self._config = config or queue.config
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})
        self._pools = BoundedPools(
            global_limit=self._config.global_concurrency,
            pool_limits={job_type.value: self._config.pool_limit(job_type.value) for job_type in JobType},
        )
        self._maintenance = maintenance
        self._logger = get_logger(__name__)
        self._poll_s = max(0.01, self._config.poll_interval_ms / 1000)
        self._heartbeat_s = max(0.05, float(self._config.heartbeat_s))
        self._stop_event = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []
        self._jobs: set[asyncio.Task[None]] = set()

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[JobType(job_type)] = handler

    @property
    def is_running(self) -> bool:
        return bool(self._loops) and not self._stop_event.is_set()

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    async def start(self) -> bool:
        if self.is_running:
            return False
        ensure_exhaustive(self._handlers)
        self._stop_event = asyncio.Event()
        self._loops = [
            asyncio.create_task(self._consume(job_type), name=f"worker:{job_type.value}")
            for job_type in JobType
        ]
        if self._maintenance:
            self._loops.append(asyncio.create_task(self._maintain(), name="worker:maintenance"))
        log_event(
            self._logger,
            "worker.state",
            component="orchestrator.worker",
            status="started",
            concurrency=self._pools.global_limit,
        )
        return True

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""

        if not self._loops:
            return
        self._stop_event.set()
        loops, self._loops = self._loops, []
        await asyncio.gather(*loops, return_exceptions=True)
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)
        log_event(self._logger, "worker.state", component="orchestrator.worker", status="stopped")

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def _consume(self, job_type: JobType) -> None:
        pool = job_type.value
        handler = self._handlers[job_type]
        while not self._stop_event.is_set():
            await self._pools.reserve(pool)
            if self._stop_event.is_set():
                self._pools.release(pool)
                break
            try:
                job = await self._queue.claim(job_type)
            except (RedisError, OSError):
                self._pools.release(pool)
                self._logger.exception("Failed to claim %s job", pool)
                await self._sleep(self._poll_s)
                continue
            if job is None:
                self._pools.release(pool)
                await self._sleep(self._poll_s)
                continue
            task = asyncio.create_task(self._execute(job, handler))
            self._jobs.add(task)
            task.add_done_callback(lambda done, name=pool: self._job_done(done, name))

    def _job_done(self, task: asyncio.Task[None], pool: str) -> None:
        self._jobs.discard(task)
        self._pools.release(pool)

    async def _execute(self, job: QueueJobDTO, handler: JobHandler) -> None:
        start = time.perf_counter()
        orchestrator_events.emit_job_event(self._logger, job, status="started")
        stop_heartbeat = asyncio.Event()
        lease_lost = asyncio.Event()
        heartbeat_task = asyncio.create_task(self._maintain_heartbeat(job, stop_heartbeat, lease_lost))
        handler_task = asyncio.create_task(handler(job))
        lease_wait_task = asyncio.create_task(lease_lost.wait())
        try:
            done, _ = await asyncio.wait(
                {handler_task, lease_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if handler_task not in done:
                stop_heartbeat.set()
                handler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await handler_task
                orchestrator_events.emit_heartbeat_event(self._logger, job, status="lease_lost")
                return
            result = handler_task.result()
        except asyncio.CancelledError:
            stop_heartbeat.set()
            handler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handler_task
            raise
        except Exception as exc:
            stop_heartbeat.set()
            await self._handle_failure(job, exc, start)
        else:
            stop_heartbeat.set()
            await self._handle_success(job, result, start)
        finally:
            lease_wait_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await lease_wait_task
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task

    async def _handle_success(
        self, job: QueueJobDTO, result: Mapping[str, Any] | None, start: float
    ) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        payload = dict(result) if isinstance(result, Mapping) else None
        try:
            recorded = await self._queue.complete(job, payload)
        except (RedisError, OSError):
            self._logger.exception("Failed to record completion of job %s", job.id)
            return
        orchestrator_events.emit_job_event(
            self._logger,
            job,
            status="completed" if recorded else "lease_lost",
            duration_ms=duration_ms,
        )

    async def _handle_failure(self, job: QueueJobDTO, exc: Exception, start: float) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        message = truncate_error(str(exc) or exc.__class__.__name__)
        retryable = bool(getattr(exc, "retryable", True))
        try:
            outcome = await self._queue.fail(job, message, retryable=retryable)
        except (RedisError, OSError):
            self._logger.exception("Failed to record failure of job %s", job.id)
            return
        if outcome is JobStatus.DELAYED:
            orchestrator_events.emit_job_event(
                self._logger,
                job,
                status="retry",
                duration_ms=duration_ms,
                error=message,
                retry_in_ms=self._queue.backoff_for(job),
            )
        elif outcome is JobStatus.FAILED:
            orchestrator_events.emit_job_event(
                self._logger, job, status="failed", duration_ms=duration_ms, error=message
            )
        else:
            orchestrator_events.emit_heartbeat_event(self._logger, job, status="skip_failure")

    async def _maintain_heartbeat(
        self,
        job: QueueJobDTO,
        stop_signal: asyncio.Event,
        lease_lost: asyncio.Event,
    ) -> None:
        while True:
            try:
                await asyncio.wait_for(stop_signal.wait(), timeout=self._heartbeat_s)
                return
            except asyncio.TimeoutError:
                pass
            try:
                alive = await self._queue.heartbeat(job)
            except (RedisError, OSError):
                self._logger.warning("Heartbeat for job %s failed", job.id, exc_info=True)
                continue
            if not alive:
                orchestrator_events.emit_heartbeat_event(self._logger, job, status="lost")
                lease_lost.set()
                return

    async def _maintain(self) -> None:
        full_every = float(self._config.maintenance_interval_s)
        last_full = float("-inf")
        while not self._stop_event.is_set():
            now = time.monotonic()
            full = now - last_full >= full_every
            try:
                await self._queue.run_maintenance(full=full)
            except (RedisError, OSError):
                self._logger.warning("Queue maintenance failed", exc_info=True)
            else:
                if full:
                    last_full = now
            await self._sleep(_LIGHT_MAINTENANCE_INTERVAL_S)


__all__ = ["JobWorker"]
