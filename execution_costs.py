#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Execution cost model: taker fees, adverse slippage, bad fills and funding.

Keeps paper PnL honest for small accounts. Everything here is a pure function
of its inputs except the bad-fill draw, which comes from a random.Random owned
by the model and seeded from the config, so two runs with the same seed fill
identically.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Dict, Optional

from screener_config import _env_bool, _env_float, _env_int
from screener_types import LONG

LOW = "low"
NORMAL = "normal"
ELEVATED = "elevated"
EXTREME = "extreme"
REGIMES = (LOW, NORMAL, ELEVATED, EXTREME)

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"

_HOUR_MS = 60 * 60 * 1000


@dataclass
class ExecutionCostsConfig:
    taker_fee: float = 0.0004  # 0.04% market orders
    maker_fee: float = 0.0002

    base_slippage_bps: float = 2.0
    volatility_multiplier: float = 1.5
    size_impact_bps_per_10k: float = 0.5
    min_slippage_bps: float = 1.0
    max_slippage_bps: float = 20.0

    funding_default_pct: float = 0.01  # per interval, longs pay
    funding_extreme_pct: float = 0.1
    funding_interval_hours: float = 8.0

    bad_fill_probability: Dict[str, float] = field(
        default_factory=lambda: {LOW: 0.05, NORMAL: 0.10, ELEVATED: 0.15, EXTREME: 0.25}
    )
    bad_fill_extra_slippage_pct: float = 0.1
    stop_bad_fill_multiplier: float = 1.5

    seed: Optional[int] = 0
    enabled: bool = True

    @classmethod
    def from_env(cls, base: Optional["ExecutionCostsConfig"] = None) -> "ExecutionCostsConfig":
        cfg = base or cls()
        cfg.taker_fee = _env_float("BB_TAKER_FEE", cfg.taker_fee)
        cfg.maker_fee = _env_float("BB_MAKER_FEE", cfg.maker_fee)
        cfg.base_slippage_bps = _env_float("BB_SLIPPAGE_BPS", cfg.base_slippage_bps)
        cfg.max_slippage_bps = _env_float("BB_MAX_SLIPPAGE_BPS", cfg.max_slippage_bps)
        cfg.funding_default_pct = _env_float("BB_FUNDING_PCT", cfg.funding_default_pct)
        cfg.bad_fill_extra_slippage_pct = _env_float("BB_BAD_FILL_EXTRA_PCT", cfg.bad_fill_extra_slippage_pct)
        cfg.seed = _env_int("BB_COST_SEED", cfg.seed if cfg.seed is not None else 0)
        cfg.enabled = _env_bool("BB_COSTS_ENABLED", cfg.enabled)
        return cfg


def zero_costs() -> ExecutionCostsConfig:
    """Frictionless fills (tests, idealised comparisons)."""
    return ExecutionCostsConfig(enabled=False)


ZERO_COSTS = zero_costs()


@dataclass(frozen=True)
class Fill:
    effective_price: float
    cost: float  # fee + slippage, in quote currency
    fee: float = 0.0
    slippage: float = 0.0
    bad_fill: bool = False


class ExecutionCostModel:
    def __init__(self, cfg: Optional[ExecutionCostsConfig] = None):
        self.cfg = cfg or ExecutionCostsConfig()
        self.rng = random.Random(self.cfg.seed)

    @property
    def enabled(self) -> bool:
        return self.cfg.enabled

    def slippage_bps(self, notional: float, regime: str = NORMAL) -> float:
        if not self.cfg.enabled:
            return 0.0
        c = self.cfg
        bps = c.base_slippage_bps
        if regime == LOW:
            bps *= 0.5
        elif regime == ELEVATED:
            bps *= c.volatility_multiplier
        elif regime == EXTREME:
            bps *= c.volatility_multiplier * 1.5
        bps += (notional / 10_000.0) * c.size_impact_bps_per_10k
        return min(c.max_slippage_bps, max(c.min_slippage_bps, bps))

    def fee(self, notional: float, maker: bool = False) -> float:
        if not self.cfg.enabled:
            return 0.0
        return notional * (self.cfg.maker_fee if maker else self.cfg.taker_fee)

    def _draw_bad_fill(self, regime: str, is_stop: bool) -> bool:
        p = self.cfg.bad_fill_probability.get(regime, self.cfg.bad_fill_probability.get(NORMAL, 0.0))
        if is_stop:
            p *= self.cfg.stop_bad_fill_multiplier
        if p <= 0:
            return False
        return self.rng.random() < p

    def _fill(self, price: float, notional: float, adverse_sign: float, regime: str, is_stop: bool) -> Fill:
        if not self.cfg.enabled or price <= 0:
            return Fill(effective_price=price, cost=0.0)

        rate = self.slippage_bps(notional, regime) / 10_000.0
        bad = self._draw_bad_fill(regime, is_stop)
        if bad:
            extra = self.cfg.bad_fill_extra_slippage_pct / 100.0
            if is_stop:
                extra *= self.cfg.stop_bad_fill_multiplier
            rate += extra

        eff = price * (1.0 + adverse_sign * rate)
        fee = self.fee(notional)
        slip = abs(eff - price) * notional / price
        return Fill(effective_price=eff, cost=fee + slip, fee=fee, slippage=slip, bad_fill=bad)

    def entry_cost(self, price: float, notional: float, direction: str, regime: str = NORMAL) -> Fill:
        """Long buys higher, short sells lower."""
        return self._fill(price, notional, 1.0 if direction == LONG else -1.0, regime, False)

    def exit_cost(
        self, price: float, notional: float, direction: str, regime: str = NORMAL, is_stop: bool = False
    ) -> Fill:
        """Long sells lower, short buys back higher. Stop exits fill worse more often."""
        return self._fill(price, notional, -1.0 if direction == LONG else 1.0, regime, is_stop)

    def funding(self, notional: float, direction: str, holding_ms: float, bias: str = NEUTRAL) -> float:
        """
        Funding over the holding period. Positive = trader pays, negative = receives.
        Holds shorter than a tenth of a funding interval are free.
        """
        if not self.cfg.enabled:
            return 0.0
        periods = holding_ms / (self.cfg.funding_interval_hours * _HOUR_MS)
        if periods < 0.1:
            return 0.0

        if bias == BULLISH:
            rate, longs_pay = self.cfg.funding_extreme_pct / 100.0, True
        elif bias == BEARISH:
            rate, longs_pay = self.cfg.funding_extreme_pct / 100.0, False
        else:
            rate, longs_pay = self.cfg.funding_default_pct / 100.0, True

        total = notional * rate * periods
        pays = (direction == LONG) == longs_pay
        return total if pays else -total

    def round_trip_cost_pct(self, notional: float, holding_hours: float = 24.0) -> float:
        if not self.cfg.enabled:
            return 0.0
        fees = self.cfg.taker_fee * 2 * 100.0
        slip = self.slippage_bps(notional, NORMAL) / 100.0 * 2
        funding = self.cfg.funding_default_pct * holding_hours / self.cfg.funding_interval_hours
        return fees + slip + funding


def determine_volatility(rsi: Optional[float] = None, price_change_pct: Optional[float] = None) -> str:
    if price_change_pct is not None:
        if abs(price_change_pct) > 5:
            return EXTREME
        if abs(price_change_pct) > 2:
            return ELEVATED
    if rsi is not None:
        if rsi < 15 or rsi > 85:
            return EXTREME
        if rsi < 25 or rsi > 75:
            return ELEVATED
        if 40 < rsi < 60:
            return LOW
    return NORMAL


def determine_market_bias(btc_rsi_4h: Optional[float] = None, btc_change_24h: Optional[float] = None) -> str:
    score = 0
    if btc_rsi_4h is not None:
        if btc_rsi_4h > 60:
            score += 1
        if btc_rsi_4h > 70:
            score += 1
        if btc_rsi_4h < 40:
            score -= 1
        if btc_rsi_4h < 30:
            score -= 1
    if btc_change_24h is not None:
        if btc_change_24h > 2:
            score += 1
        if btc_change_24h > 5:
            score += 1
        if btc_change_24h < -2:
            score -= 1
        if btc_change_24h < -5:
            score -= 1
    if score >= 2:
        return BULLISH
    if score <= -2:
        return BEARISH
    return NEUTRAL
