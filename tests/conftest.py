import asyncio
import inspect
import os
from pathlib import Path
import sys
from collections.abc import Iterator

import fakeredis
from fakeredis import aioredis as fake_aioredis
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("PORTAL_DISABLE_WORKERS", "true")

from portal.config import QueueConfig, override_runtime_env  # noqa: E402
from portal.db import init_db, reset_engine_for_tests  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _test_environment(tmp_path: Path) -> Iterator[None]:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    os.environ["DATABASE_URL"] = f"sqlite:///{data_dir / 'portal.db'}"
    os.environ.pop("REDIS_URL", None)

    override_runtime_env(None)
    reset_engine_for_tests()
    init_db()
    try:
        yield
    finally:
        reset_engine_for_tests()
        override_runtime_env(None)


@pytest.fixture()
def redis_client() -> fake_aioredis.FakeRedis:
    return fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture()
def queue_config() -> QueueConfig:
    return QueueConfig(
        redis_url="redis://fake",
        name="test-queue",
        backoff_base_ms=1_000,
        poll_interval_ms=10,
        heartbeat_s=1,
        lease_timeout_s=2,
    )
