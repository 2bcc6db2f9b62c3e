import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from portal.orchestrator.handlers import (
    JobFailedError,
    JobType,
    MissingHandlersError,
    UnrecoverableJobError,
)
from portal.orchestrator.queue import JobQueue
from portal.orchestrator.worker import JobWorker
from portal.workers.persistence import JobStatus, QueueJobDTO


async def _wait_for(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("condition not met in time")


async def _noop_handler(job: QueueJobDTO) -> dict[str, Any]:
    return {"handled": job.id}


def _handlers(**overrides: Any) -> dict[JobType, Any]:
    handlers: dict[JobType, Any] = {
        JobType.WATCHLIST_SYNC_USER: _noop_handler,
        JobType.WATCHLIST_SYNC_ALL: _noop_handler,
    }
    for name, handler in overrides.items():
        handlers[JobType[name]] = handler
    return handlers


def _status_is(queue: JobQueue, job_id: str, status: JobStatus) -> Callable[[], Awaitable[bool]]:
    async def _check() -> bool:
        return (await queue.get_job(job_id)).status is status

    return _check


@pytest.mark.asyncio
async def test_worker_completes_jobs_and_stores_result(redis_client, queue_config) -> None:
    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(), config=queue_config)
    job_id = await queue.enqueue(JobType.WATCHLIST_SYNC_USER, {"userId": "u1"})

    assert await worker.start() is True
    assert worker.is_running is True
    try:
        await _wait_for(_status_is(queue, job_id, JobStatus.COMPLETED))
    finally:
        await worker.stop()

    job = await queue.get_job(job_id)
    assert job.result == {"handled": job_id}
    assert worker.is_running is False


@pytest.mark.asyncio
async def test_retryable_failure_is_rescheduled(redis_client, queue_config) -> None:
    async def _flaky(job: QueueJobDTO) -> None:
        raise JobFailedError("Plex unavailable")

    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(WATCHLIST_SYNC_USER=_flaky), config=queue_config)
    job_id = await queue.enqueue(JobType.WATCHLIST_SYNC_USER, {"userId": "u1"})

    await worker.start()
    try:
        await _wait_for(_status_is(queue, job_id, JobStatus.DELAYED))
    finally:
        await worker.stop()

    job = await queue.get_job(job_id)
    assert job.attempts == 2
    assert job.last_error == "Plex unavailable"


@pytest.mark.asyncio
async def test_unrecoverable_failure_is_final(redis_client, queue_config) -> None:
    async def _broken(job: QueueJobDTO) -> None:
        raise UnrecoverableJobError("User not found")

    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(WATCHLIST_SYNC_USER=_broken), config=queue_config)
    job_id = await queue.enqueue(JobType.WATCHLIST_SYNC_USER, {"userId": "ghost"})

    await worker.start()
    try:
        await _wait_for(_status_is(queue, job_id, JobStatus.FAILED))
    finally:
        await worker.stop()

    job = await queue.get_job(job_id)
    assert job.attempts == 1
    assert job.last_error == "User not found"


@pytest.mark.asyncio
async def test_same_type_jobs_run_one_at_a_time(redis_client, queue_config) -> None:
    running = 0
    peak = 0

    async def _slow(job: QueueJobDTO) -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1

    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(WATCHLIST_SYNC_USER=_slow), config=queue_config)
    ids = [await queue.enqueue(JobType.WATCHLIST_SYNC_USER, {"userId": str(n)}) for n in range(3)]

    await worker.start()
    try:
        for job_id in ids:
            await _wait_for(_status_is(queue, job_id, JobStatus.COMPLETED))
    finally:
        await worker.stop()

    assert peak == 1


@pytest.mark.asyncio
async def test_stop_waits_for_running_jobs(redis_client, queue_config) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def _blocking(job: QueueJobDTO) -> dict[str, Any]:
        started.set()
        await release.wait()
        return {"done": True}

    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(WATCHLIST_SYNC_ALL=_blocking), config=queue_config)
    job_id = await queue.enqueue(JobType.WATCHLIST_SYNC_ALL, {})

    await worker.start()
    await asyncio.wait_for(started.wait(), timeout=5)
    stopping = asyncio.create_task(worker.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    release.set()
    await asyncio.wait_for(stopping, timeout=5)

    assert (await queue.get_job(job_id)).status is JobStatus.COMPLETED
    assert worker.active_jobs == 0


@pytest.mark.asyncio
async def test_paused_queue_is_not_consumed(redis_client, queue_config) -> None:
    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, _handlers(), config=queue_config, maintenance=False)
    job_id = await queue.enqueue(JobType.WATCHLIST_SYNC_ALL, {})
    await queue.pause()

    await worker.start()
    try:
        await asyncio.sleep(0.1)
        assert (await queue.get_job(job_id)).status is JobStatus.WAITING
        await queue.resume()
        await _wait_for(_status_is(queue, job_id, JobStatus.COMPLETED))
    finally:
        await worker.stop()


@pytest.mark.asyncio
async def test_start_requires_a_handler_for_every_job_type(redis_client, queue_config) -> None:
    queue = JobQueue(redis_client, config=queue_config)
    worker = JobWorker(queue, {JobType.WATCHLIST_SYNC_USER: _noop_handler}, config=queue_config)

    with pytest.raises(MissingHandlersError) as excinfo:
        await worker.start()

    assert "watchlist:sync:all" in str(excinfo.value)
    assert worker.is_running is False

    worker.register_handler(JobType.WATCHLIST_SYNC_ALL, _noop_handler)
    assert await worker.start() is True
    await worker.stop()
