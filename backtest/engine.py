#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Deterministic historical replay.

Candles of every (symbol, timeframe) are merged into one timeline ordered by
candle close time, then fed one at a time through the same SetupDetector and
Bot objects the live scanner uses. At each step the detector sees the last
`window` closed candles, like a live fetch would; the higher timeframe only
contributes candles that were already closed at that moment.

Same candles + same config (including the cost-model seed) -> same trades.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from policies.base import BIAS_TIMEFRAMES, NEUTRAL_BIAS, Bot, PolicyContext, compute_btc_bias
from screener_config import CANDLES_TO_FETCH, HTF_FOR, TIMEFRAME_MS, ScreenerConfig
from screener_types import SPOT, Candle, ExitReason, SetupEvent
from setup_detector import SetupDetector

from .metrics import Summary, Trade, equity_curve, summarize, trade_from_position

# symbol -> timeframe -> candles (oldest first)
CandleData = Dict[str, Dict[str, List[Candle]]]

BTC_BIAS_WINDOW = 200


@dataclass
class ReplayParams:
    window: int = CANDLES_TO_FETCH
    use_higher_tf: bool = True
    verbose: bool = False


@dataclass
class ReplayResult:
    events: List[SetupEvent] = field(default_factory=list)
    trades: Dict[str, List[Trade]] = field(default_factory=dict)
    summaries: Dict[str, Summary] = field(default_factory=dict)
    steps: int = 0


class _Series:
    """Candles of one symbol/timeframe plus their close times for bisecting."""

    def __init__(self, timeframe: str, candles: List[Candle]):
        self.timeframe = timeframe
        self.candles = sorted(candles, key=lambda c: c.timestamp)
        tf_ms = TIMEFRAME_MS[timeframe]
        self.close_ts = [c.timestamp + tf_ms for c in self.candles]

    def closed_upto(self, ts: int, limit: int) -> List[Candle]:
        end = bisect.bisect_right(self.close_ts, ts)
        return self.candles[max(0, end - limit):end]


class ReplayEngine:
    def __init__(
        self,
        cfg: Optional[ScreenerConfig] = None,
        bots: Optional[List[Bot]] = None,
        params: Optional[ReplayParams] = None,
        detector: Optional[SetupDetector] = None,
    ):
        self.cfg = cfg or ScreenerConfig()
        self.bots = bots or []
        self.params = params or ReplayParams()
        self.detector = detector or SetupDetector(self.cfg)

    def _timeline(self, series: Dict[Tuple[str, str], _Series]) -> List[Tuple[int, str, int, str, int]]:
        steps = []
        for (symbol, tf), s in series.items():
            if tf not in self.cfg.timeframes:
                continue
            for i, ts in enumerate(s.close_ts):
                steps.append((ts, symbol, TIMEFRAME_MS[tf], tf, i))
        steps.sort()
        return steps

    def _bias_at(self, btc: Dict[str, _Series], ts: int) -> str:
        if not btc:
            return NEUTRAL_BIAS
        by_tf = {tf: s.closed_upto(ts, BTC_BIAS_WINDOW) for tf, s in btc.items()}
        return compute_btc_bias(by_tf, self.cfg.rsi_period)

    def run(
        self,
        data: CandleData,
        market_types: Optional[Dict[str, str]] = None,
        btc: Optional[Dict[str, List[Candle]]] = None,
    ) -> ReplayResult:
        market_types = market_types or {}
        series: Dict[Tuple[str, str], _Series] = {
            (sym, tf): _Series(tf, candles)
            for sym, by_tf in data.items()
            for tf, candles in by_tf.items()
            if tf in TIMEFRAME_MS
        }
        btc_series = {tf: _Series(tf, c) for tf, c in (btc or {}).items() if tf in BIAS_TIMEFRAMES}

        res = ReplayResult()
        bias = NEUTRAL_BIAS
        bias_ts: Optional[int] = None
        last_ts = 0

        for ts, symbol, _, tf, i in self._timeline(series):
            s = series[(symbol, tf)]
            window = s.candles[max(0, i + 1 - self.params.window):i + 1]
            htf: Optional[List[Candle]] = None
            htf_tf = HTF_FOR.get(tf)
            if self.params.use_higher_tf and htf_tf and (symbol, htf_tf) in series:
                htf = series[(symbol, htf_tf)].closed_upto(ts, self.params.window) or None

            if bias_ts != ts:
                bias = self._bias_at(btc_series, ts)
                bias_ts = ts

            events = self.detector.analyze(
                symbol, tf, window, higher_tf_candles=htf, market_type=market_types.get(symbol, SPOT)
            )

            candle = s.candles[i]
            for bot in self.bots:
                bot.on_candle(symbol, tf, candle)

            if events:
                context = PolicyContext.from_setups(self.detector.active_setups(), bias, ts)
                for ev in events:
                    res.events.append(ev)
                    for bot in self.bots:
                        bot.on_event(ev, context)

            self.detector.purge_played_out(candle.timestamp)
            last_ts = ts
            res.steps += 1

        for bot in self.bots:
            bot.finish(ExitReason.END_OF_DATA, last_ts or None)
            trades = [trade_from_position(bot.bot_id, p) for p in bot.engine.closed]
            res.trades[bot.bot_id] = trades
            res.summaries[bot.bot_id] = summarize(
                bot.bot_id, trades, equity_curve(bot.engine.cfg.initial_balance, trades)
            )
        return res
