import asyncio

import pytest

from errors import InvalidDataError, RateLimitError, TransientNetworkError
from rate_limiter import RateLimiter, TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, sec):
        self.sleeps.append(sec)
        self.now += sec


def limiter(clock, **kw):
    kw.setdefault("min_delay_ms", 0)
    return RateLimiter("test", sleep=clock.sleep, clock=clock, **kw)


def flaky(errors, result="ok"):
    """Coroutine factory that raises the given errors in order, then returns `result`."""
    calls = {"n": 0}

    async def fn():
        i = calls["n"]
        calls["n"] += 1
        if i < len(errors):
            raise errors[i]
        return result

    return fn, calls


class TestRetries:
    def test_success_first_try(self):
        clock = FakeClock()
        rl = limiter(clock)
        fn, calls = flaky([])
        assert asyncio.run(rl.run(fn)) == "ok"
        assert calls["n"] == 1
        assert rl.retries == 0

    def test_rate_limit_backs_off_exponentially(self):
        clock = FakeClock()
        rl = limiter(clock, max_retries=3, rate_limit_backoff_sec=2.0)
        fn, calls = flaky([RateLimitError("429"), RateLimitError("429")])
        assert asyncio.run(rl.run(fn)) == "ok"
        assert calls["n"] == 3
        assert clock.sleeps == [2.0, 4.0]
        assert rl.retries == 2

    def test_retry_after_wins(self):
        clock = FakeClock()
        rl = limiter(clock)
        fn, _ = flaky([RateLimitError("429", retry_after=7.0)])
        asyncio.run(rl.run(fn))
        assert clock.sleeps == [7.0]

    def test_network_backs_off_linearly(self):
        clock = FakeClock()
        rl = limiter(clock, max_retries=3, network_backoff_sec=0.5)
        fn, _ = flaky([TransientNetworkError("reset"), TransientNetworkError("reset")])
        asyncio.run(rl.run(fn))
        assert clock.sleeps == [0.5, 1.0]

    def test_gives_up_and_reraises(self):
        clock = FakeClock()
        rl = limiter(clock, max_retries=3)
        fn, calls = flaky([RateLimitError("a"), RateLimitError("b"), RateLimitError("c"), RateLimitError("d")])
        with pytest.raises(RateLimitError, match="c"):
            asyncio.run(rl.run(fn))
        assert calls["n"] == 3
        assert rl.failures == 1

    def test_zero_retries_still_reraises_the_error(self):
        clock = FakeClock()
        rl = limiter(clock, max_retries=0)
        fn, calls = flaky([TransientNetworkError("down")])
        with pytest.raises(TransientNetworkError, match="down"):
            asyncio.run(rl.run(fn))
        assert calls["n"] == 1
        assert rl.failures == 1
        assert clock.sleeps == []

    def test_invalid_data_not_retried(self):
        clock = FakeClock()
        rl = limiter(clock)
        fn, calls = flaky([InvalidDataError("bad")])
        with pytest.raises(InvalidDataError):
            asyncio.run(rl.run(fn))
        assert calls["n"] == 1

    def test_backoff_capped(self):
        rl = RateLimiter("t", rate_limit_backoff_sec=2.0, max_backoff_sec=15.0)
        assert rl.backoff_for(RateLimitError("x"), 5) == 15.0
        assert rl.backoff_for(RateLimitError("x", retry_after=60.0), 0) == 15.0


class TestPacing:
    def test_min_delay_between_starts(self):
        clock = FakeClock()
        clock.now = 100.0
        rl = limiter(clock, min_delay_ms=300)

        async def go():
            fn, _ = flaky([])
            for _ in range(3):
                await rl.run(fn)

        asyncio.run(go())
        assert clock.sleeps == [pytest.approx(0.3), pytest.approx(0.3)]

    def test_concurrency_bound(self):
        rl = RateLimiter("t", max_concurrent=2, min_delay_ms=0)
        state = {"now": 0, "peak": 0}

        async def job():
            state["now"] += 1
            state["peak"] = max(state["peak"], state["now"])
            await asyncio.sleep(0.01)
            state["now"] -= 1
            return True

        async def go():
            return await asyncio.gather(*(rl.run(job) for _ in range(6)))

        assert all(asyncio.run(go()))
        assert state["peak"] == 2
        assert rl.requests == 6

    def test_call_runs_blocking_fn_in_thread(self):
        rl = RateLimiter("t", min_delay_ms=0)
        assert asyncio.run(rl.call(lambda a, b=0: a + b, 2, b=3, what="sum")) == 5


class TestTTLCache:
    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(5.0, clock=clock)
        cache.set("BTCUSDT", 1.0)
        clock.now = 5.0
        assert cache.get("BTCUSDT") == 1.0
        clock.now = 5.1
        assert cache.get("BTCUSDT") is None
        assert len(cache) == 0

    def test_clear(self):
        cache = TTLCache(60.0)
        cache.set("a", [1])
        cache.clear()
        assert cache.get("a") is None
