#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Request pacing for the public market-data endpoints.

RateLimiter: bounded in-flight requests, a minimum spacing between request
starts, and bounded retries with backoff. Rate limits (HTTP 429 / MEXC
futures code 510) back off exponentially and are log-throttled; transient
network errors back off linearly. InvalidDataError is never retried.

TTLCache: small time-based cache for prices and 24h tickers.
Both are plain objects owned by the scan context; nothing here is global.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from errors import InvariantViolation, RateLimitError, TransientNetworkError
from log_utils import ThrottledLog

T = TypeVar("T")
V = TypeVar("V")


class RateLimiter:
    def __init__(
        self,
        name: str,
        max_concurrent: int = 10,
        min_delay_ms: int = 100,
        max_retries: int = 3,
        network_backoff_sec: float = 0.5,
        rate_limit_backoff_sec: float = 2.0,
        max_backoff_sec: float = 15.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        log_limit: int = 10,
    ):
        self.name = name
        self.max_concurrent = max(1, int(max_concurrent))
        self.min_delay_sec = max(0.0, min_delay_ms / 1000.0)
        self.max_retries = max(1, int(max_retries))
        self.network_backoff_sec = network_backoff_sec
        self.rate_limit_backoff_sec = rate_limit_backoff_sec
        self.max_backoff_sec = max_backoff_sec
        self._sleep = sleep
        self._clock = clock
        self.log = ThrottledLog(name, log_limit)

        # created lazily so the limiter can be built outside a running loop
        self._sem: Optional[asyncio.Semaphore] = None
        self._lock: Optional[asyncio.Lock] = None
        self._last_start = 0.0

        self.requests = 0
        self.retries = 0
        self.failures = 0

    def _primitives(self) -> Tuple[asyncio.Semaphore, asyncio.Lock]:
        if self._sem is None or self._lock is None:
            self._sem = asyncio.Semaphore(self.max_concurrent)
            self._lock = asyncio.Lock()
        return self._sem, self._lock

    async def _space(self, lock: asyncio.Lock) -> None:
        async with lock:
            wait = self._last_start + self.min_delay_sec - self._clock()
            if wait > 0:
                await self._sleep(wait)
            self._last_start = self._clock()

    def backoff_for(self, err: Exception, attempt: int) -> float:
        if isinstance(err, RateLimitError):
            if err.retry_after is not None:
                return min(self.max_backoff_sec, float(err.retry_after))
            return min(self.max_backoff_sec, self.rate_limit_backoff_sec * (2 ** attempt))
        return min(self.max_backoff_sec, self.network_backoff_sec * (attempt + 1))

    async def run(self, fn: Callable[[], Awaitable[T]], what: str = "request") -> T:
        """Run `fn` under the limiter. Re-raises the last error after max_retries attempts."""
        sem, lock = self._primitives()
        last: Optional[Exception] = None
        for attempt in range(self.max_retries):
            async with sem:
                await self._space(lock)
                self.requests += 1
                try:
                    out = await fn()
                except (RateLimitError, TransientNetworkError) as e:
                    last = e
                else:
                    self.log.success("rate_limit")
                    return out

            if attempt + 1 >= self.max_retries:
                break
            self.retries += 1
            delay = self.backoff_for(last, attempt)
            kind = "rate_limit" if isinstance(last, RateLimitError) else "network"
            self.log.warn(kind, f"{what}: {last} - retry {attempt + 1}/{self.max_retries - 1} in {delay:.1f}s")
            await self._sleep(delay)

        self.failures += 1
        if last is None:
            raise InvariantViolation(f"{self.name}: {what} gave up without an error")
        raise last

    async def call(self, fn: Callable[..., T], *args: Any, what: str = "request", **kwargs: Any) -> T:
        """Blocking callable (requests) run in a worker thread under the limiter."""
        return await self.run(lambda: asyncio.to_thread(fn, *args, **kwargs), what=what)


class TTLCache(Generic[V]):
    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._data: Dict[str, Tuple[float, V]] = {}

    def get(self, key: str) -> Optional[V]:
        hit = self._data.get(key)
        if hit is None:
            return None
        ts, val = hit
        if self._clock() - ts > self.ttl_sec:
            del self._data[key]
            return None
        return val

    def set(self, key: str, value: V) -> None:
        self._data[key] = (self._clock(), value)

    def clear(self) -> None:
        self._data = {}

    def __len__(self) -> int:
        return len(self._data)
