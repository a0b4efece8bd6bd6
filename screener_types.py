#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Shared data model for the screener.

Setups and positions are plain dataclasses. The detector and the position
engine never mutate an entry that is visible to readers in place: they build
an updated copy and swap it into their map, so a concurrent reader sees
either the old or the new object, never a half-written one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


LONG = "long"
SHORT = "short"
DIRECTIONS = (LONG, SHORT)

SPOT = "spot"
FUTURES = "futures"


class SetupState:
    WATCHING = "watching"
    TRIGGERED = "triggered"
    DEEP_EXTREME = "deep_extreme"
    REVERSING = "reversing"
    PLAYED_OUT = "played_out"

    # forward order; played_out is terminal
    ORDER = (WATCHING, TRIGGERED, DEEP_EXTREME, REVERSING, PLAYED_OUT)
    ACTIONABLE = (TRIGGERED, DEEP_EXTREME)

    @classmethod
    def rank(cls, state: str) -> int:
        return cls.ORDER.index(state)


class QualityTier:
    BLUECHIP = "bluechip"
    MIDCAP = "midcap"
    SHITCOIN = "shitcoin"


class ExitReason:
    INITIAL_STOP = "initial_stop"
    BREAKEVEN_STOP = "breakeven_stop"
    TRAILING_STOP = "trailing_stop"
    PLAYED_OUT = "played_out"
    END_OF_DATA = "end_of_data"
    FORCED = "forced"

    STOPS = (INITIAL_STOP, BREAKEVEN_STOP, TRAILING_STOP)


def opposite(direction: str) -> str:
    return SHORT if direction == LONG else LONG


@dataclass(frozen=True)
class Candle:
    timestamp: int  # ms, candle open time
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class RSIResult:
    value: float
    timestamp: int


@dataclass(frozen=True)
class Impulse:
    start_index: int
    end_index: int
    start_price: float
    end_price: float
    percent_move: float
    direction: str  # "up" | "down"


@dataclass(frozen=True)
class SwingPoint:
    value: float
    index: int
    timestamp: int


@dataclass(frozen=True)
class Divergence:
    type: str  # bullish | bearish | hidden_bullish | hidden_bearish
    strength: str  # strong | moderate | weak
    description: str
    price_swing1: Optional[SwingPoint] = None
    price_swing2: Optional[SwingPoint] = None
    rsi_swing1: Optional[SwingPoint] = None
    rsi_swing2: Optional[SwingPoint] = None

    @property
    def is_bullish(self) -> bool:
        return self.type in ("bullish", "hidden_bullish")

    @property
    def is_bearish(self) -> bool:
        return self.type in ("bearish", "hidden_bearish")


@dataclass
class Setup:
    # --- identity ---
    symbol: str
    timeframe: str
    direction: str  # "long" | "short"
    market_type: str = SPOT

    state: str = SetupState.WATCHING

    # --- impulse ---
    impulse_high: float = 0.0
    impulse_low: float = 0.0
    impulse_start_time: int = 0
    impulse_end_time: int = 0
    impulse_percent_move: float = 0.0

    # --- rsi ---
    current_rsi: float = 50.0
    rsi_at_trigger: Optional[float] = None
    previous_rsi: Optional[float] = None
    rsi_trend: str = "flat"

    # --- price ---
    current_price: float = 0.0
    entry_price: Optional[float] = None

    # --- timestamps (ms, taken from candles) ---
    detected_at: int = 0
    triggered_at: Optional[int] = None
    last_updated: int = 0
    played_out_at: Optional[int] = None
    played_out_reason: str = ""

    # --- volume / quality ---
    impulse_avg_volume: float = 0.0
    pullback_avg_volume: float = 0.0
    volume_contracting: bool = False
    volume_24h: float = 0.0
    quality_tier: str = QualityTier.SHITCOIN

    # --- confirmation (informational) ---
    higher_tf_bullish: Optional[bool] = None
    htf_confirmed: bool = True
    divergence: Optional[Divergence] = None

    # --- structure ---
    pullback_low: Optional[float] = None
    bounce_high: Optional[float] = None
    structure_stop_price: Optional[float] = None

    @property
    def key(self) -> str:
        return setup_key(self.symbol, self.timeframe, self.direction)

    @property
    def is_actionable(self) -> bool:
        return self.state in SetupState.ACTIONABLE

    @property
    def is_played_out(self) -> bool:
        return self.state == SetupState.PLAYED_OUT


def setup_key(symbol: str, timeframe: str, direction: str) -> str:
    return f"{symbol}-{timeframe}-{direction}"


@dataclass(frozen=True)
class SetupEvent:
    """A setup was created (prev_state is None) or changed state."""

    setup: Setup
    prev_state: Optional[str]

    @property
    def is_new(self) -> bool:
        return self.prev_state is None

    @property
    def state(self) -> str:
        return self.setup.state


@dataclass
class Position:
    id: str
    key: str
    symbol: str
    timeframe: str
    direction: str
    market_type: str

    entry_price: float  # market price at the signal
    effective_entry_price: float  # after slippage
    entry_time: int
    margin_used: float
    notional_size: float
    leverage: float

    initial_stop_loss_price: float
    current_stop_loss_price: float

    high_water_mark: float = 0.0  # peak ROI %
    trail_level: int = 0

    entry_costs: float = 0.0
    current_price: float = 0.0
    last_update: int = 0
    unrealized_pnl: float = 0.0
    unrealized_roi: float = 0.0

    status: str = "open"  # open | closed

    # --- exit ---
    exit_price: Optional[float] = None
    effective_exit_price: Optional[float] = None
    exit_time: Optional[int] = None
    exit_reason: Optional[str] = None
    exit_costs: float = 0.0
    funding_paid: float = 0.0
    gross_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    realized_pnl_percent: Optional[float] = None

    # free-form notes from the policy (signal direction, bias at entry, ...)
    meta: Dict[str, str] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def total_costs(self) -> float:
        return self.entry_costs + self.exit_costs


@dataclass
class BotStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    total_costs: float = 0.0
    current_balance: float = 0.0
    peak_balance: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    open_positions: int = 0
    exit_reasons: Dict[str, int] = field(default_factory=dict)


@dataclass
class SymbolInfo:
    symbol: str
    volume_24h: float = 0.0
    price_change_pct: float = 0.0
    last_price: float = 0.0
    market_type: str = SPOT
    market_cap: Optional[float] = None


def closes(candles: List[Candle]) -> List[float]:
    return [c.close for c in candles]
