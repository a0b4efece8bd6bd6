#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""MEXC public market data (spot v3 + futures contract API).

Only public endpoints, no keys. Blocking `requests` calls run in worker
threads behind the spot/futures RateLimiter; the session is injectable so
tests never touch the network.

Spot klines rows: [openTime, open, high, low, close, volume, closeTime, quoteVolume]
Futures klines: {"success": true, "code": 0, "data": {"time": [...s], "open": [...], ...}}
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Set

import requests

from errors import InvalidDataError, RateLimitError, TransientNetworkError
from log_utils import log_info
from rate_limiter import RateLimiter, TTLCache
from screener_config import (
    MEXC_FUTURES_INTERVAL,
    MEXC_SPOT_INTERVAL,
    TIMEFRAME_MS,
    ScreenerConfig,
    is_excluded,
)
from screener_types import FUTURES, SPOT, Candle, SymbolInfo

MEXC_SPOT_BASE = os.getenv("MEXC_SPOT_BASE", "https://api.mexc.com")
MEXC_FUTURES_BASE = os.getenv("MEXC_FUTURES_BASE", "https://contract.mexc.com")

FUTURES_RATE_LIMIT_CODE = 510


def to_futures_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC_USDT"""
    if "_" in symbol:
        return symbol
    if symbol.endswith("USDT"):
        return f"{symbol[:-4]}_USDT"
    return symbol


def from_futures_symbol(symbol: str) -> str:
    return symbol.replace("_", "")


def _f(x: Any) -> float:
    try:
        return float(x)
    except (TypeError, ValueError) as e:
        raise InvalidDataError(f"bad number {x!r}") from e


def parse_spot_klines(rows: Any) -> List[Candle]:
    if not isinstance(rows, list):
        raise InvalidDataError(f"spot klines: expected list, got {type(rows).__name__}")
    out: List[Candle] = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 6:
            raise InvalidDataError(f"spot klines: malformed row {row!r}")
        out.append(
            Candle(
                timestamp=int(_f(row[0])),
                open=_f(row[1]),
                high=_f(row[2]),
                low=_f(row[3]),
                close=_f(row[4]),
                volume=_f(row[5]),
            )
        )
    out.sort(key=lambda c: c.timestamp)
    return out


def parse_futures_klines(payload: Any) -> List[Candle]:
    if not isinstance(payload, dict):
        raise InvalidDataError("futures klines: expected object")
    if payload.get("code") == FUTURES_RATE_LIMIT_CODE:
        raise RateLimitError("futures klines: code 510 (rate limited)")
    data = payload.get("data") or {}
    if not payload.get("success") or not isinstance(data.get("time"), list):
        raise InvalidDataError(f"futures klines: code={payload.get('code')} msg={payload.get('message', 'unknown')}")

    times = data["time"]
    cols = [data.get(k) or [] for k in ("open", "high", "low", "close", "vol")]
    if any(len(c) != len(times) for c in cols):
        raise InvalidDataError("futures klines: column lengths differ")

    out = [
        Candle(
            timestamp=int(_f(t)) * 1000,
            open=_f(o),
            high=_f(h),
            low=_f(l),
            close=_f(c),
            volume=_f(v),
        )
        for t, o, h, l, c, v in zip(times, *cols)
    ]
    out.sort(key=lambda c: c.timestamp)
    return out


def closed_only(candles: List[Candle], timeframe: str, now_ms: int) -> List[Candle]:
    """Drop the still-forming last candle, if any."""
    tf_ms = TIMEFRAME_MS.get(timeframe, 0)
    if candles and tf_ms and candles[-1].timestamp + tf_ms > now_ms:
        return candles[:-1]
    return candles


class MexcClient:
    def __init__(
        self,
        cfg: Optional[ScreenerConfig] = None,
        session: Optional[Any] = None,
        spot_limiter: Optional[RateLimiter] = None,
        futures_limiter: Optional[RateLimiter] = None,
        timeout: float = 15.0,
    ):
        self.cfg = cfg or ScreenerConfig()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.spot_limiter = spot_limiter or RateLimiter(
            "mexc-spot",
            max_concurrent=self.cfg.max_concurrent_requests,
            min_delay_ms=self.cfg.min_request_delay_ms,
            max_retries=self.cfg.max_retries,
        )
        self.futures_limiter = futures_limiter or RateLimiter(
            "mexc-futures",
            max_concurrent=self.cfg.futures_max_concurrent,
            min_delay_ms=self.cfg.futures_min_delay_ms,
            max_retries=4,
            rate_limit_backoff_sec=1.0,
        )
        self.price_cache: TTLCache[float] = TTLCache(self.cfg.price_cache_ttl_sec)
        self.ticker_cache: TTLCache[List[Dict[str, Any]]] = TTLCache(self.cfg.ticker_cache_ttl_sec)

    # ---------------- transport ----------------

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"GET {url}: {e}") from e

        if r.status_code == 429:
            retry_after = r.headers.get("Retry-After") if getattr(r, "headers", None) else None
            try:
                ra = float(retry_after) if retry_after is not None else None
            except ValueError:
                ra = None
            raise RateLimitError(f"GET {url}: HTTP 429", retry_after=ra)
        if r.status_code >= 500:
            raise TransientNetworkError(f"GET {url}: HTTP {r.status_code}")
        if r.status_code >= 400:
            raise InvalidDataError(f"GET {url}: HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise InvalidDataError(f"GET {url}: invalid JSON") from e

    # ---------------- candles ----------------

    async def fetch_candles(
        self, symbol: str, timeframe: str, market_type: str = SPOT, limit: Optional[int] = None
    ) -> List[Candle]:
        n = limit or self.cfg.candles_to_fetch
        if market_type == FUTURES:
            interval = MEXC_FUTURES_INTERVAL[timeframe]
            url = f"{MEXC_FUTURES_BASE}/api/v1/contract/kline/{to_futures_symbol(symbol)}"

            def _fetch() -> List[Candle]:
                return parse_futures_klines(self._get_json(url, {"interval": interval, "limit": n}))

            return await self.futures_limiter.call(_fetch, what=f"futures klines {symbol} {timeframe}")

        interval = MEXC_SPOT_INTERVAL[timeframe]
        url = f"{MEXC_SPOT_BASE}/api/v3/klines"

        def _fetch_spot() -> List[Candle]:
            return parse_spot_klines(self._get_json(url, {"symbol": symbol, "interval": interval, "limit": n}))

        return await self.spot_limiter.call(_fetch_spot, what=f"klines {symbol} {timeframe}")

    # ---------------- prices / tickers ----------------

    async def get_current_price(self, symbol: str, market_type: str = SPOT) -> Optional[float]:
        key = f"{market_type}:{symbol}"
        cached = self.price_cache.get(key)
        if cached is not None:
            return cached

        if market_type == FUTURES:
            url = f"{MEXC_FUTURES_BASE}/api/v1/contract/ticker"
            params = {"symbol": to_futures_symbol(symbol)}
            limiter = self.futures_limiter
        else:
            url = f"{MEXC_SPOT_BASE}/api/v3/ticker/price"
            params = {"symbol": symbol}
            limiter = self.spot_limiter

        js = await limiter.call(self._get_json, url, params, what=f"price {symbol}")
        if market_type == FUTURES:
            data = js.get("data") if isinstance(js, dict) else None
            raw = data.get("lastPrice") if isinstance(data, dict) else None
        else:
            raw = js.get("price") if isinstance(js, dict) else None
        if raw is None:
            raise InvalidDataError(f"price {symbol}: missing field")
        price = _f(raw)
        self.price_cache.set(key, price)
        return price

    async def get_24h_tickers(self) -> List[Dict[str, Any]]:
        cached = self.ticker_cache.get("spot")
        if cached is not None:
            return cached
        js = await self.spot_limiter.call(self._get_json, f"{MEXC_SPOT_BASE}/api/v3/ticker/24hr", what="24h tickers")
        if not isinstance(js, list):
            raise InvalidDataError("24h tickers: expected list")
        self.ticker_cache.set("spot", js)
        return js

    async def get_exchange_info(self) -> List[Dict[str, Any]]:
        js = await self.spot_limiter.call(self._get_json, f"{MEXC_SPOT_BASE}/api/v3/exchangeInfo", what="exchangeInfo")
        syms = js.get("symbols") if isinstance(js, dict) else None
        if not isinstance(syms, list):
            raise InvalidDataError("exchangeInfo: missing symbols")
        return syms

    async def list_futures_symbols(self) -> Set[str]:
        """Active USDT perpetuals, spot-style names (BTCUSDT)."""
        js = await self.futures_limiter.call(
            self._get_json, f"{MEXC_FUTURES_BASE}/api/v1/contract/detail", what="contract detail"
        )
        if not isinstance(js, dict) or not js.get("success") or not isinstance(js.get("data"), list):
            raise InvalidDataError("contract detail: invalid response")
        return {
            from_futures_symbol(str(c.get("symbol", "")))
            for c in js["data"]
            if c.get("state") == 0 and c.get("quoteCoin") == "USDT"
        }

    async def discover_symbols(self) -> List[SymbolInfo]:
        """
        Tradeable USDT pairs above min 24h quote volume, minus excluded names,
        sorted by volume (desc). Futures availability marks market_type.
        """
        info = await self.get_exchange_info()
        tickers = await self.get_24h_tickers()
        try:
            futures = await self.list_futures_symbols()
        except (InvalidDataError, RateLimitError, TransientNetworkError) as e:
            log_info("mexc", f"futures list unavailable, scanning spot only: {e}")
            futures = set()

        by_sym = {str(t.get("symbol")): t for t in tickers if isinstance(t, dict)}
        out: List[SymbolInfo] = []
        for s in info:
            sym = str(s.get("symbol", ""))
            if str(s.get("status")) not in ("1", "ENABLED"):
                continue
            if s.get("quoteAsset") != "USDT" or is_excluded(sym):
                continue
            t = by_sym.get(sym)
            if t is None:
                continue
            try:
                vol = float(t.get("quoteVolume") or 0.0)
                chg = float(t.get("priceChangePercent") or 0.0) * 100.0
                last = float(t.get("lastPrice") or 0.0)
            except (TypeError, ValueError):
                continue
            if vol < self.cfg.min_volume_24h:
                continue
            out.append(
                SymbolInfo(
                    symbol=sym,
                    volume_24h=vol,
                    price_change_pct=chg,
                    last_price=last,
                    market_type=FUTURES if sym in futures else SPOT,
                )
            )

        out.sort(key=lambda x: x.volume_24h, reverse=True)
        if self.cfg.top_n_symbols > 0:
            out = out[: self.cfg.top_n_symbols]
        return out
