#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""MEXC historical klines with a local JSON cache.

Replays may request weeks of 5-minute klines across many symbols. To avoid
repeated downloads, responses are cached under ./data_cache.
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from errors import InvalidDataError, RateLimitError, TransientNetworkError
from mexc_data import MEXC_SPOT_BASE, parse_spot_klines
from screener_config import MEXC_SPOT_INTERVAL, TIMEFRAME_MS
from screener_types import Candle

CACHE_DIR = os.getenv("BB_DATA_CACHE_DIR", "data_cache")
DEFAULT_POLITE_SLEEP_SEC = float(os.getenv("BB_DATA_POLITE_SLEEP_SEC", "0.25"))
PAGE_LIMIT = 1000
MAX_ATTEMPTS = 10
MAX_BACKOFF_SEC = 15.0


def _dt_utc(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y%m%d%H%M")


def _cache_path(symbol: str, timeframe: str, start_ms: int, end_ms: int, cache_dir: str) -> str:
    os.makedirs(cache_dir, exist_ok=True)
    return os.path.join(cache_dir, f"{symbol}_{timeframe}_{_dt_utc(start_ms)}_{_dt_utc(end_ms)}.json")


def _req_json(session: Any, url: str, params: Dict[str, Any], timeout: int = 20) -> Any:
    try:
        r = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as e:
        raise TransientNetworkError(f"GET {url}: {e}") from e
    if r.status_code == 429:
        raise RateLimitError(f"GET {url}: HTTP 429")
    if r.status_code >= 500:
        raise TransientNetworkError(f"GET {url}: HTTP {r.status_code}")
    if r.status_code >= 400:
        raise InvalidDataError(f"GET {url}: HTTP {r.status_code}")
    try:
        return r.json()
    except ValueError as e:
        raise InvalidDataError(f"GET {url}: invalid JSON") from e


def fetch_history(
    symbol: str,
    timeframe: str,
    start_ms: int,
    end_ms: int,
    *,
    session: Optional[Any] = None,
    cache: bool = True,
    cache_dir: str = "",
    polite_sleep_sec: float = DEFAULT_POLITE_SLEEP_SEC,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Candle]:
    """Spot klines with open time in [start_ms, end_ms), oldest first.

    Paged forward with startTime since the endpoint caps each call. Rate limits
    and network hiccups back off (x1.7, capped at 15s); bad payloads raise.
    """
    if end_ms <= start_ms:
        return []

    cache_dir = cache_dir or CACHE_DIR
    path = _cache_path(symbol, timeframe, start_ms, end_ms, cache_dir)
    if cache and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return [Candle(**x) for x in raw]

    session = session or requests.Session()
    url = f"{MEXC_SPOT_BASE}/api/v3/klines"
    interval = MEXC_SPOT_INTERVAL[timeframe]
    tf_ms = TIMEFRAME_MS[timeframe]

    by_ts: Dict[int, Candle] = {}
    cursor = start_ms
    while cursor < end_ms:
        params = {
            "symbol": symbol,
            "interval": interval,
            "startTime": cursor,
            "endTime": end_ms - 1,
            "limit": PAGE_LIMIT,
        }
        backoff = max(0.6, float(polite_sleep_sec))
        rows = None
        for _ in range(MAX_ATTEMPTS):
            try:
                rows = _req_json(session, url, params)
                break
            except (RateLimitError, TransientNetworkError):
                sleep(min(MAX_BACKOFF_SEC, backoff))
                backoff = min(MAX_BACKOFF_SEC, backoff * 1.7)
        else:
            raise RateLimitError(f"klines {symbol} {timeframe}: still failing after {MAX_ATTEMPTS} attempts")

        page = parse_spot_klines(rows)
        if not page:
            break
        for c in page:
            if start_ms <= c.timestamp < end_ms:
                by_ts[c.timestamp] = c

        nxt = page[-1].timestamp + tf_ms
        if nxt <= cursor:
            break
        cursor = nxt

        if polite_sleep_sec > 0:
            sleep(polite_sleep_sec)

    out = [by_ts[ts] for ts in sorted(by_ts)]
    if cache:
        with open(path, "w", encoding="utf-8") as f:
            json.dump([c.__dict__ for c in out], f, ensure_ascii=False)
    return out


def aggregate_candles(src: List[Candle], from_tf: str, to_tf: str) -> List[Candle]:
    """Group lower-timeframe candles into higher-timeframe buckets.

    Buckets are aligned to the target timeframe boundary; a trailing bucket
    that is not complete is dropped.
    """
    src_ms = TIMEFRAME_MS[from_tf]
    dst_ms = TIMEFRAME_MS[to_tf]
    if dst_ms < src_ms or dst_ms % src_ms:
        raise ValueError(f"cannot aggregate {from_tf} into {to_tf}")
    need = dst_ms // src_ms

    buckets: Dict[int, List[Candle]] = {}
    for c in src:
        buckets.setdefault(c.timestamp - c.timestamp % dst_ms, []).append(c)

    out: List[Candle] = []
    for ts0 in sorted(buckets):
        chunk = sorted(buckets[ts0], key=lambda c: c.timestamp)
        if len(chunk) < need:
            continue
        out.append(
            Candle(
                timestamp=ts0,
                open=chunk[0].open,
                high=max(x.high for x in chunk),
                low=min(x.low for x in chunk),
                close=chunk[-1].close,
                volume=sum(x.volume for x in chunk),
            )
        )
    return out
