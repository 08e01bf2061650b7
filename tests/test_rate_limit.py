import threading

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantguard.service.errors import DependencyError
from tenantguard.service.rate_limit import RedisRateLimiter, SlidingWindowRateLimiter


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_blocks():
    clock = ManualClock()
    limiter = SlidingWindowRateLimiter("login", max_attempts=3, window_seconds=60, clock=clock)

    results = [limiter.allow_sync("login:1.2.3.4") for _ in range(4)]

    assert results == [True, True, True, False]


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter("login", max_attempts=1, window_seconds=60)

    assert limiter.allow_sync("login:a")
    assert limiter.allow_sync("login:b")
    assert not limiter.allow_sync("login:a")


def test_window_slides():
    clock = ManualClock()
    limiter = SlidingWindowRateLimiter("login", max_attempts=2, window_seconds=10, clock=clock)

    assert limiter.allow_sync("k")
    clock.now += 5
    assert limiter.allow_sync("k")
    assert not limiter.allow_sync("k")

    # First attempt leaves the window, one slot frees up
    clock.now += 5.5
    assert limiter.allow_sync("k")
    assert not limiter.allow_sync("k")


def test_blocked_attempts_do_not_extend_window():
    clock = ManualClock()
    limiter = SlidingWindowRateLimiter("login", max_attempts=1, window_seconds=10, clock=clock)

    assert limiter.allow_sync("k")
    for _ in range(5):
        clock.now += 1
        assert not limiter.allow_sync("k")
    clock.now += 5
    assert limiter.allow_sync("k")


def test_concurrent_callers_never_exceed_limit():
    limiter = SlidingWindowRateLimiter("refresh", max_attempts=50, window_seconds=60)
    allowed = []
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        for _ in range(10):
            allowed.append(limiter.allow_sync("refresh:shared"))

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(allowed) == 50
    assert len(allowed) == 200


def test_prunes_drained_keys():
    clock = ManualClock()
    limiter = SlidingWindowRateLimiter("login", max_attempts=1, window_seconds=1, clock=clock)
    for i in range(1100):
        limiter.allow_sync(f"k{i}")
    clock.now += 5

    limiter.allow_sync("fresh")

    assert set(limiter._attempts) == {"fresh"}


def test_reset_clears_state():
    limiter = SlidingWindowRateLimiter("login", max_attempts=1, window_seconds=60)
    limiter.allow_sync("k")
    limiter.reset()

    assert limiter.allow_sync("k")


@pytest.mark.parametrize("max_attempts,window", [(0, 10), (5, 0), (-1, 10)])
def test_rejects_non_positive_configuration(max_attempts, window):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter("x", max_attempts=max_attempts, window_seconds=window)


async def test_async_allow_matches_sync():
    limiter = SlidingWindowRateLimiter("login", max_attempts=1, window_seconds=60)

    assert await limiter.allow("k") is True
    assert await limiter.allow("k") is False


class FakeScript:
    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        if self.error:
            raise self.error
        return self.results.pop(0)


class FakeRedis:
    def __init__(self, script):
        self.script = script
        self.registered = []

    def register_script(self, body):
        self.registered.append(body)
        return self.script


async def test_redis_limiter_hashes_keys_and_maps_results():
    script = FakeScript(results=[1, 0])
    limiter = RedisRateLimiter(
        "login", FakeRedis(script), max_attempts=5, window_seconds=300
    )

    assert await limiter.allow("login:198.51.100.1") is True
    assert await limiter.allow("login:198.51.100.1") is False

    keys, args = script.calls[0]
    assert keys[0].startswith("rate:login:")
    assert "198.51.100.1" not in keys[0]
    assert args[1:3] == [300.0, 5]


async def test_redis_failure_is_dependency_error():
    script = FakeScript(error=RedisConnectionError("down"))
    limiter = RedisRateLimiter("refresh", FakeRedis(script), max_attempts=5, window_seconds=60)

    with pytest.raises(DependencyError):
        await limiter.allow("refresh:k")
