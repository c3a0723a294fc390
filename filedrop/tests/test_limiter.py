import asyncio

import pytest

from filedrop.app.services.limiter import ConcurrencyLimiter
from filedrop.config import Config


async def run_workers(limiter, count, hold=0.05):
    """Run ``count`` tasks through the limiter and return the peak concurrency."""
    peak = 0

    async def worker():
        nonlocal peak
        async with limiter:
            peak = max(peak, limiter.active)
            await asyncio.sleep(hold)

    await asyncio.gather(*(worker() for _ in range(count)))
    return peak


@pytest.mark.asyncio
async def test_limit_bounds_concurrency():
    limiter = ConcurrencyLimiter(lambda: Config(concurrency_limit=2))
    assert await run_workers(limiter, 6) == 2
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_zero_is_unbounded():
    limiter = ConcurrencyLimiter(lambda: Config(concurrency_limit=0))
    assert await run_workers(limiter, 6) == 6


@pytest.mark.asyncio
async def test_raised_limit_admits_waiters():
    settings = {"config": Config(concurrency_limit=1)}
    limiter = ConcurrencyLimiter(lambda: settings["config"])

    await limiter.acquire()
    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    settings["config"] = Config(concurrency_limit=2)
    await limiter.release()  # wakes the waiter, which now fits
    await asyncio.wait_for(waiter, timeout=1)
    assert limiter.active == 1


@pytest.mark.asyncio
async def test_slot_released_on_error():
    limiter = ConcurrencyLimiter(lambda: Config(concurrency_limit=1))
    with pytest.raises(RuntimeError):
        async with limiter:
            raise RuntimeError("upload failed")
    assert limiter.active == 0
