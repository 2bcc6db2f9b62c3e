import asyncio

import pytest

from portal.utils.concurrency import BoundedPools


@pytest.mark.asyncio
async def test_pool_limit_serialises_same_pool():
    pools = BoundedPools(global_limit=2, pool_limits={"watchlist:sync:user": 1})
    entered: list[str] = []
    release = asyncio.Event()

    async def first():
        async with pools.acquire("watchlist:sync:user"):
            entered.append("first")
            await release.wait()

    async def second():
        async with pools.acquire("watchlist:sync:user"):
            entered.append("second")

    task_one = asyncio.create_task(first())
    await asyncio.sleep(0)
    task_two = asyncio.create_task(second())
    await asyncio.sleep(0)

    assert entered == ["first"]

    release.set()
    await task_one
    await task_two

    assert entered == ["first", "second"]


@pytest.mark.asyncio
async def test_global_limit_caps_all_pools():
    pools = BoundedPools(global_limit=1, default_pool_limit=1)

    await pools.reserve("a")
    waiter = asyncio.create_task(pools.reserve("b"))
    await asyncio.sleep(0)
    assert not waiter.done()

    pools.release("a")
    await asyncio.wait_for(waiter, timeout=1)
    pools.release("b")


def test_limit_for_respects_global_cap():
    pools = BoundedPools(global_limit=3, pool_limits={"big": 10, "small": 0})

    assert pools.limit_for("big") == 3
    assert pools.limit_for("small") == 1
    assert pools.limit_for("other") == 3
