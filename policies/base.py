from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

import indicators as ind
from execution_costs import ExecutionCostModel, ExecutionCostsConfig
from position_engine import PositionEngine, TrailingConfig
from screener_config import TIMEFRAME_MS
from screener_types import Candle, ExitReason, Position, Setup, SetupEvent, SetupState

STRONG_LONG = "strong_long"
LONG_BIAS = "long"
NEUTRAL_BIAS = "neutral"
SHORT_BIAS = "short"
STRONG_SHORT = "strong_short"

BIAS_TIMEFRAMES = ("4h", "1h", "15m", "5m")
BIAS_WEIGHTS: Dict[str, float] = {"4h": 3.0, "1h": 2.0, "15m": 1.0, "5m": 0.5, "1m": 0.25}
BIAS_MIN_CANDLES = 50


@dataclass
class PolicyContext:
    btc_bias: str = NEUTRAL_BIAS
    # (symbol, direction) -> timeframes with an actionable setup right now
    active_timeframes: Dict[Tuple[str, str], List[str]] = field(default_factory=dict)
    now_ms: int = 0

    def timeframes_for(self, symbol: str, direction: str) -> List[str]:
        return self.active_timeframes.get((symbol, direction), [])

    @classmethod
    def from_setups(cls, setups: List[Setup], btc_bias: str = NEUTRAL_BIAS, now_ms: int = 0) -> "PolicyContext":
        active: Dict[Tuple[str, str], List[str]] = {}
        for s in setups:
            if s.is_actionable:
                active.setdefault((s.symbol, s.direction), []).append(s.timeframe)
        return cls(btc_bias=btc_bias, active_timeframes=active, now_ms=now_ms)


class Policy(Protocol):
    name: str
    trailing: TrailingConfig
    close_on_played_out: bool

    def should_act(self, setup: Setup, context: PolicyContext) -> Optional[str]:
        ...


def is_actionable(setup: Setup) -> bool:
    return setup.state in SetupState.ACTIONABLE


class TradeSink(Protocol):
    def log_open(self, bot_id: str, pos: Position, setup: Optional[Setup] = None) -> None:
        ...

    def log_close(self, bot_id: str, pos: Position) -> None:
        ...


class Bot:
    """
    A policy bound to its own position engine.

    Setup events decide entries, candles mark open positions to market,
    and played-out setups close positions for policies that want that.
    """

    def __init__(
        self,
        bot_id: str,
        policy: Policy,
        costs: Optional[ExecutionCostsConfig] = None,
        sink: Optional[TradeSink] = None,
        verbose: bool = False,
    ):
        self.bot_id = bot_id
        self.policy = policy
        self.engine = PositionEngine(policy.trailing, ExecutionCostModel(costs), bot_id=bot_id, verbose=verbose)
        self.sink = sink

    def on_event(self, event: SetupEvent, context: PolicyContext) -> Optional[Position]:
        setup = event.setup
        if setup.is_played_out:
            if self.policy.close_on_played_out:
                return self._close_played_out(setup)
            return None

        direction = self.policy.should_act(setup, context)
        if direction is None:
            return None
        meta = {"policy": self.policy.name, "signal_direction": setup.direction, "btc_bias": context.btc_bias}
        # entry stamped at the trigger candle close, the same time base as on_candle
        entry_ms = setup.last_updated + TIMEFRAME_MS.get(setup.timeframe, 0)
        pos = self.engine.open(setup, direction, now_ms=entry_ms, meta=meta)
        if pos is not None and self.sink is not None:
            self.sink.log_open(self.bot_id, pos, setup)
        return pos

    def on_candle(self, symbol: str, timeframe: str, candle: Candle) -> Optional[Position]:
        """Mark the symbol/timeframe position with a closed candle. Returns it when it closed."""
        key = self.engine.key_for(symbol, timeframe)
        if key not in self.engine.positions:
            return None
        pos = self.engine.update(key, candle.close, candle.timestamp, high=candle.high, low=candle.low)
        if pos is not None and not pos.is_open:
            self._emit_close(pos)
            return pos
        return None

    def finish(self, reason: str = ExitReason.END_OF_DATA, timestamp: Optional[int] = None) -> List[Position]:
        out = self.engine.close_all(reason, timestamp)
        for pos in out:
            self._emit_close(pos)
        return out

    def _close_played_out(self, setup: Setup) -> Optional[Position]:
        key = self.engine.key_for(setup.symbol, setup.timeframe)
        pos = self.engine.positions.get(key)
        if pos is None:
            return None
        # a played-out long setup must not close an unrelated short position on the same key
        if pos.meta.get("signal_direction") not in (None, setup.direction):
            return None
        closed = self.engine.close(pos, setup.current_price, ExitReason.PLAYED_OUT, setup.last_updated)
        if closed is not None:
            self._emit_close(closed)
        return closed

    def _emit_close(self, pos: Position) -> None:
        if self.sink is not None:
            self.sink.log_close(self.bot_id, pos)


def compute_btc_bias(candles_by_tf: Dict[str, List[Candle]], rsi_period: int = 14, sma_period: int = 9) -> str:
    """
    Macro bias from BTC RSI vs its SMA per timeframe.

    4h & 1h bullish -> long, plus 15m & 5m bullish -> strong_long (mirror for
    shorts). Otherwise a weighted vote: > +30 long, < -30 short, else neutral.
    """
    signals: Dict[str, str] = {}
    for tf, candles in candles_by_tf.items():
        if len(candles) < BIAS_MIN_CANDLES:
            continue
        signals[tf] = ind.rsi_sma_signal(ind.compute_rsi(candles, rsi_period), sma_period)

    htf_bull = signals.get("4h") == "bullish" and signals.get("1h") == "bullish"
    htf_bear = signals.get("4h") == "bearish" and signals.get("1h") == "bearish"
    ltf_bull = signals.get("15m") == "bullish" and signals.get("5m") == "bullish"
    ltf_bear = signals.get("15m") == "bearish" and signals.get("5m") == "bearish"

    if htf_bull and ltf_bull:
        return STRONG_LONG
    if htf_bear and ltf_bear:
        return STRONG_SHORT
    if htf_bull:
        return LONG_BIAS
    if htf_bear:
        return SHORT_BIAS

    total = bull = bear = 0.0
    for tf, sig in signals.items():
        w = BIAS_WEIGHTS.get(tf, 1.0)
        total += w
        if sig == "bullish":
            bull += w
        elif sig == "bearish":
            bear += w
    score = (bull - bear) / total * 100.0 if total > 0 else 0.0
    if score > 30:
        return LONG_BIAS
    if score < -30:
        return SHORT_BIAS
    return NEUTRAL_BIAS
