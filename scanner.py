#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""One scan cycle over the symbol universe.

Symbols are scanned concurrently (asyncio.gather); timeframes of one symbol run
sequentially inside that symbol's task, so a symbol's setups are only ever
touched by one task. A failing symbol (network or otherwise) is logged and
skipped for this cycle; the cycle itself keeps going. InvariantViolation is
the exception: it propagates.

After all symbols are done, closed candles are fed to the bots first (stops),
then setup events are dispatched in a stable (symbol, timeframe) order.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from errors import InvariantViolation, ScreenerError
from log_utils import ThrottledLog, log_error, log_info
from mexc_data import MexcClient, closed_only
from policies.base import NEUTRAL_BIAS, BIAS_TIMEFRAMES, Bot, PolicyContext, compute_btc_bias
from rate_limiter import TTLCache
from screener_config import HTF_FOR, ScreenerConfig
from screener_types import Candle, Position, SetupEvent, SymbolInfo
from setup_detector import SetupDetector

BTC_SYMBOL = "BTCUSDT"
BTC_BIAS_CANDLES = 200
HTF_CACHE_TTL_SEC = 300.0


@dataclass
class ScanContext:
    cfg: ScreenerConfig
    client: MexcClient
    detector: SetupDetector
    bots: List[Bot] = field(default_factory=list)
    symbols: List[SymbolInfo] = field(default_factory=list)
    btc_bias: str = NEUTRAL_BIAS
    htf_cache: TTLCache[List[Candle]] = field(default_factory=lambda: TTLCache(HTF_CACHE_TTL_SEC))


@dataclass
class CycleResult:
    now_ms: int
    events: List[SetupEvent] = field(default_factory=list)
    opened: List[Position] = field(default_factory=list)
    closed: List[Position] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # symbols that failed this cycle


@dataclass
class _SymbolResult:
    symbol: str
    events: List[SetupEvent] = field(default_factory=list)
    last_candles: Dict[str, Candle] = field(default_factory=dict)
    error: Optional[str] = None


class Scanner:
    def __init__(self, ctx: ScanContext):
        self.ctx = ctx
        self.log = ThrottledLog("scan", 10)
        self.cycles = 0

    async def refresh_universe(self) -> List[SymbolInfo]:
        syms = await self.ctx.client.discover_symbols()
        # market cap is only known when a caller supplied it
        min_cap = self.ctx.cfg.min_market_cap
        syms = [s for s in syms if s.market_cap is None or s.market_cap >= min_cap]
        self.ctx.symbols = syms
        for s in syms:
            self.ctx.detector.tiers.update(s.symbol, volume_24h=s.volume_24h, market_cap=s.market_cap)
        log_info("scan", f"universe: {len(syms)} symbols")
        return syms

    async def refresh_btc_bias(self) -> str:
        by_tf: Dict[str, List[Candle]] = {}
        for tf in BIAS_TIMEFRAMES:
            try:
                by_tf[tf] = await self.ctx.client.fetch_candles(BTC_SYMBOL, tf, limit=BTC_BIAS_CANDLES)
            except InvariantViolation:
                raise
            except ScreenerError as e:
                self.log.warn("btc_bias", f"BTC {tf} candles unavailable: {e}")
        if by_tf:
            self.ctx.btc_bias = compute_btc_bias(by_tf, self.ctx.cfg.rsi_period)
        return self.ctx.btc_bias

    async def _htf_candles(self, info: SymbolInfo, timeframe: str) -> Optional[List[Candle]]:
        htf = HTF_FOR.get(timeframe)
        if not htf:
            return None
        key = f"{info.market_type}:{info.symbol}:{htf}"
        cached = self.ctx.htf_cache.get(key)
        if cached is not None:
            return cached
        candles = await self.ctx.client.fetch_candles(info.symbol, htf, info.market_type)
        self.ctx.htf_cache.set(key, candles)
        return candles

    async def scan_symbol(self, info: SymbolInfo, now_ms: int) -> _SymbolResult:
        res = _SymbolResult(symbol=info.symbol)
        for tf in self.ctx.cfg.timeframes:
            try:
                candles = await self.ctx.client.fetch_candles(info.symbol, tf, info.market_type)
                candles = closed_only(candles, tf, now_ms)
                if not candles:
                    continue
                htf = await self._htf_candles(info, tf)
                res.last_candles[tf] = candles[-1]
                res.events.extend(
                    self.ctx.detector.analyze(
                        info.symbol,
                        tf,
                        candles,
                        higher_tf_candles=htf,
                        market_type=info.market_type,
                        volume_24h=info.volume_24h,
                    )
                )
            except InvariantViolation:
                raise
            except ScreenerError as e:
                res.error = f"{tf}: {e}"
                self.log.warn(type(e).__name__, f"{info.symbol} {tf} skipped: {e}")
                break
            except Exception as e:
                # any other failure also skips only this symbol
                res.error = f"{tf}: {type(e).__name__}: {e}"
                self.log.warn("unexpected", f"{info.symbol} {tf} skipped: {type(e).__name__}: {e}")
                log_error(f"scan {info.symbol} {tf}: {type(e).__name__}: {e}")
                break
        return res

    async def scan_cycle(self, now_ms: Optional[int] = None) -> CycleResult:
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        out = CycleResult(now_ms=now)

        results = await asyncio.gather(*(self.scan_symbol(s, now) for s in self.ctx.symbols))
        results = sorted(results, key=lambda r: r.symbol)

        for r in results:
            if r.error:
                out.skipped.append(r.symbol)
            for tf, candle in sorted(r.last_candles.items()):
                for bot in self.ctx.bots:
                    closed = bot.on_candle(r.symbol, tf, candle)
                    if closed is not None:
                        out.closed.append(closed)

        context = PolicyContext.from_setups(self.ctx.detector.active_setups(), self.ctx.btc_bias, now)
        for r in results:
            for ev in r.events:
                out.events.append(ev)
                for bot in self.ctx.bots:
                    pos = bot.on_event(ev, context)
                    if pos is None:
                        continue
                    if pos.is_open:
                        out.opened.append(pos)
                    else:
                        out.closed.append(pos)

        self.ctx.detector.purge_played_out(now)
        self.cycles += 1
        return out

    def summary(self) -> List[Tuple[str, float, int, int]]:
        """(bot_id, equity, open positions, closed trades) per bot."""
        return [(b.bot_id, b.engine.equity(), len(b.engine.positions), len(b.engine.closed)) for b in self.ctx.bots]
