import pytest

from portal.config import load_config
from portal.orchestrator.bootstrap import BackgroundRuntime, build_redis_client
from tests.helpers import StubPlexClient


class RecordingService:
    def __init__(self, log: list[str]) -> None:
        self._log = log

    async def start(self) -> bool:
        self._log.append("start")
        return True

    async def stop(self) -> None:
        self._log.append("stop")


def test_runtime_without_redis_has_no_background_components() -> None:
    config = load_config()

    runtime = BackgroundRuntime.from_config(config, plex_client=StubPlexClient())

    assert build_redis_client(config) is None
    assert runtime.queue is None
    assert runtime.worker is None
    assert runtime.scheduler is None
    assert runtime.leader is None
    assert runtime.queue_admin.queue_configured is False
    assert runtime.worker_running() is False


@pytest.mark.asyncio
async def test_leadership_starts_and_stops_components(redis_client) -> None:
    log: list[str] = []
    runtime = BackgroundRuntime.from_config(
        load_config(),
        redis=redis_client,
        plex_client=StubPlexClient(),
        services=[RecordingService(log)],
    )
    assert runtime.leader is not None

    assert await runtime.leader.run_once() is True
    assert runtime.is_leader is True
    assert runtime.worker_running() is True
    assert runtime.scheduler is not None and runtime.scheduler.is_running

    await runtime.close()

    assert runtime.worker_running() is False
    assert runtime.scheduler.is_running is False
    assert runtime.is_leader is False
    assert log == ["start", "stop"]
