import pytest

from app.core.exceptions import RateLimited
from app.core.rate_limit import MemoryAttemptStore, RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryAttemptStore(clock), max_attempts=3, window_seconds=60)


@pytest.mark.asyncio
async def test_allows_up_to_max_attempts(limiter):
    assert await limiter.check("booking:1.2.3.4") == 2
    assert await limiter.check("booking:1.2.3.4") == 1
    assert await limiter.check("booking:1.2.3.4") == 0


@pytest.mark.asyncio
async def test_blocks_after_max_attempts(limiter):
    for _ in range(3):
        await limiter.check("booking:1.2.3.4")

    with pytest.raises(RateLimited) as exc:
        await limiter.check("booking:1.2.3.4")
    assert exc.value.retry_after == 60
    assert exc.value.status_code == 429

    # Other keys are unaffected
    await limiter.check("booking:5.6.7.8")


@pytest.mark.asyncio
async def test_window_resets(limiter, clock):
    for _ in range(3):
        await limiter.check("k")
    clock.advance(seconds=61)
    assert await limiter.check("k") == 2


@pytest.mark.asyncio
async def test_clear(limiter):
    for _ in range(3):
        await limiter.check("k")
    await limiter.clear("k")
    assert await limiter.check("k") == 2
