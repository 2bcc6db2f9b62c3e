import pytest

from portal.errors import ErrorCode
from portal.orchestrator.handlers import JobType
from portal.orchestrator.queue import JobQueue
from portal.services.access import Actor, SlidingWindowRateLimiter
from portal.services.queue_admin import REDIS_NOT_CONFIGURED, QueueAdminService
from portal.services.watchlist_sync_dao import WatchlistSyncDAO
from portal.services.watchlist_sync_service import DISABLED_GLOBALLY
from portal.workers.persistence import JobStatus
from tests.helpers import seed_global_config

ADMIN = Actor(user_id="admin-1", is_admin=True)
USER = Actor(user_id="user-1")


def _service(queue: JobQueue | None, **kwargs) -> QueueAdminService:
    return QueueAdminService(queue=queue, dao=WatchlistSyncDAO(), **kwargs)


@pytest.fixture
def job_queue(redis_client, queue_config) -> JobQueue:
    return JobQueue(redis_client, config=queue_config)


@pytest.mark.asyncio
@pytest.mark.parametrize("actor", [None, USER])
async def test_non_admins_are_rejected(job_queue, actor) -> None:
    service = _service(job_queue)

    dashboard = await service.get_queue_dashboard_data(actor)
    paused = await service.pause_job_queue(actor)

    for result in (dashboard, paused):
        assert result.success is False
        assert result.error == "Unauthorized"
        assert result.code is ErrorCode.UNAUTHORIZED
    assert await job_queue.is_paused() is False


@pytest.mark.asyncio
async def test_dashboard_without_redis_reports_disconnected() -> None:
    service = _service(None, worker_running=lambda: False)

    result = await service.get_queue_dashboard_data(ADMIN)

    assert result.success is True
    assert result.data == {
        "workerRunning": False,
        "isPaused": False,
        "redisConnected": False,
        "stats": {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0},
        "schedulers": [],
    }


@pytest.mark.asyncio
async def test_queue_operations_without_redis_fail_with_message() -> None:
    service = _service(None)

    jobs = await service.get_queue_jobs(ADMIN, {})
    trigger = await service.trigger_watchlist_sync_job(ADMIN, {})
    schedule = await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": 30})

    for result in (jobs, trigger, schedule):
        assert result.success is False
        assert result.error == REDIS_NOT_CONFIGURED
        assert result.code is ErrorCode.DEPENDENCY_ERROR


@pytest.mark.asyncio
async def test_dashboard_reports_stats_and_schedulers(job_queue) -> None:
    seed_global_config(enabled=True, interval_minutes=30)
    service = _service(job_queue, worker_running=lambda: True)
    await job_queue.enqueue(JobType.WATCHLIST_SYNC_ALL, {})
    await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": 30})

    result = await service.get_queue_dashboard_data(ADMIN)

    assert result.success is True and result.data is not None
    assert result.data["workerRunning"] is True
    assert result.data["redisConnected"] is True
    assert result.data["stats"]["waiting"] == 1
    [scheduler] = result.data["schedulers"]
    assert scheduler["id"] == "watchlist-sync-scheduled"
    assert scheduler["pattern"] == "every 1800000ms"
    assert scheduler["next"] is not None


@pytest.mark.asyncio
async def test_health_reports_pause_state(job_queue) -> None:
    service = _service(job_queue)
    await service.pause_job_queue(ADMIN)

    result = await service.get_queue_health(ADMIN)

    assert result.data is not None
    assert result.data["isPaused"] is True
    assert result.data["redisConnected"] is True

    await service.resume_job_queue(ADMIN)
    assert (await service.get_queue_health(ADMIN)).data["isPaused"] is False


@pytest.mark.asyncio
async def test_invalid_input_messages(job_queue) -> None:
    service = _service(job_queue)

    missing_id = await service.get_queue_job(ADMIN, {})
    bad_interval = await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": 0})
    bad_filter = await service.get_queue_jobs(ADMIN, {"status": "exploded"})

    assert missing_id.error == "Invalid job ID"
    assert bad_interval.error == "Invalid interval"
    assert bad_filter.error == "Invalid input"
    assert {missing_id.code, bad_interval.code, bad_filter.code} == {ErrorCode.VALIDATION_ERROR}


@pytest.mark.asyncio
async def test_trigger_deduplicates_pending_jobs(job_queue) -> None:
    seed_global_config(enabled=True)
    service = _service(job_queue)

    first = await service.trigger_watchlist_sync_job(ADMIN, {"userId": "u1"})
    second = await service.trigger_watchlist_sync_job(ADMIN, {"userId": "u1"})
    everyone = await service.trigger_watchlist_sync_job(ADMIN, None)

    assert first.data == second.data
    assert everyone.data is not None and everyone.data["jobId"] != first.data["jobId"]
    job = await job_queue.get_job(first.data["jobId"])
    assert job.payload == {"userId": "u1", "triggeredBy": "manual"}
    assert job.type == JobType.WATCHLIST_SYNC_USER.value


@pytest.mark.asyncio
async def test_trigger_is_refused_while_sync_is_disabled(job_queue) -> None:
    seed_global_config(enabled=False)
    service = _service(job_queue)

    one = await service.trigger_watchlist_sync_job(ADMIN, {"userId": "u1"})
    everyone = await service.trigger_watchlist_sync_job(ADMIN, None)

    for result in (one, everyone):
        assert result.success is False
        assert result.code is ErrorCode.INVALID_STATE
        assert result.error == DISABLED_GLOBALLY
    assert (await job_queue.get_stats()).waiting == 0


@pytest.mark.asyncio
async def test_list_get_retry_and_remove_jobs(job_queue) -> None:
    service = _service(job_queue)
    failed_id = await job_queue.enqueue(JobType.WATCHLIST_SYNC_USER, {"userId": "u1"})
    job = await job_queue.claim(JobType.WATCHLIST_SYNC_USER)
    assert job is not None
    await job_queue.fail(job, "Plex down", retryable=False)

    listing = await service.get_queue_jobs(ADMIN, {"status": "failed", "page": "1", "limit": "10"})
    assert listing.data is not None
    assert [entry["id"] for entry in listing.data["jobs"]] == [failed_id]
    assert listing.data["jobs"][0]["failedReason"] == "Plex down"
    assert listing.data["hasMore"] is False

    detail = await service.get_queue_job(ADMIN, {"jobId": int(failed_id)})
    assert detail.data is not None and detail.data["status"] == "failed"

    retried = await service.retry_queue_job(ADMIN, {"jobId": failed_id})
    assert retried.data == {"jobId": failed_id, "attemptsMade": 2}
    assert (await job_queue.get_job(failed_id)).status is JobStatus.WAITING

    again = await service.retry_queue_job(ADMIN, {"jobId": failed_id})
    assert again.code is ErrorCode.NOT_FOUND

    removed = await service.remove_queue_job(ADMIN, {"jobId": failed_id})
    assert removed.success is True
    missing = await service.get_queue_job(ADMIN, {"jobId": failed_id})
    assert missing.code is ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_mutations_are_rate_limited_per_admin(job_queue) -> None:
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60)
    service = _service(job_queue, rate_limiter=limiter)

    assert (await service.pause_job_queue(ADMIN)).success is True
    assert (await service.resume_job_queue(ADMIN)).success is True
    limited = await service.pause_job_queue(ADMIN)

    assert limited.success is False
    assert limited.code is ErrorCode.RATE_LIMITED
    assert limited.error == "Too many requests. Please try again later."
    assert (await service.get_queue_health(ADMIN)).success is True
    other = Actor(user_id="admin-2", is_admin=True)
    assert (await service.pause_job_queue(other)).success is True


@pytest.mark.asyncio
async def test_schedule_update_persists_interval_and_follows_enabled_flag(job_queue) -> None:
    seed_global_config(enabled=True, interval_minutes=60)
    service = _service(job_queue)

    updated = await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": 15})

    assert updated.data is not None
    assert updated.data["enabled"] is True
    assert updated.data["intervalMinutes"] == 15
    assert WatchlistSyncDAO().get_global_config().interval_minutes == 15
    status = await service.get_watchlist_sync_scheduler_status(ADMIN)
    assert status.data is not None and status.data["nextRun"] is not None

    seed_global_config(enabled=False, interval_minutes=15)
    removed = await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": 20})
    assert removed.data is not None and removed.data["enabled"] is False
    assert await job_queue.get_schedulers() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("interval", [5, 14, 1441])
async def test_schedule_update_rejects_interval_outside_stored_bounds(job_queue, interval) -> None:
    seed_global_config(enabled=True, interval_minutes=60)
    service = _service(job_queue)

    result = await service.update_watchlist_sync_schedule(ADMIN, {"intervalMinutes": interval})

    assert result.success is False
    assert result.code is ErrorCode.VALIDATION_ERROR
    assert result.error == "Invalid interval"
    assert WatchlistSyncDAO().get_global_config().interval_minutes == 60
    assert await job_queue.get_schedulers() == []


@pytest.mark.asyncio
async def test_scheduler_status_without_redis_reads_config() -> None:
    seed_global_config(enabled=True, interval_minutes=90)
    service = _service(None)

    result = await service.get_watchlist_sync_scheduler_status(ADMIN)

    assert result.data == {"enabled": True, "intervalMinutes": 90, "nextRun": None}
