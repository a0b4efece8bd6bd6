#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Backburner setup detector.

Long: strong impulse up, then the FIRST RSI oversold reading on the pullback.
Short: strong impulse down, then the FIRST RSI overbought reading on the bounce.

One setup per (symbol, timeframe, direction). States only move forward:

    watching -> triggered -> deep_extreme -> reversing -> played_out

Every mutation builds a new Setup via dataclasses.replace() and swaps it into
the map in a single assignment. All timestamps come from candle open times, so
a replay of the same candles produces the same setups.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import indicators as ind
from screener_config import ScreenerConfig, VolumeTiers, expiry_ms, retrigger_cooldown_ms
from screener_types import (
    DIRECTIONS,
    LONG,
    SPOT,
    Candle,
    Divergence,
    QualityTier,
    RSIResult,
    Setup,
    SetupEvent,
    SetupState,
    setup_key,
)

# RSI levels that end the bounce/fade (neutral zone)
LONG_EXIT_FROM_TRIGGER = 40.0
SHORT_EXIT_FROM_TRIGGER = 60.0
EXIT_FROM_REVERSING = 50.0

MIN_RSI_VALUES = 5

# played_out reasons
REASON_STRUCTURE_BROKEN = "structure_broken"
REASON_TARGET_REACHED = "target_reached"
REASON_SECOND_EXTREME = "second_extreme"
REASON_IMPULSE_EXTENDED = "impulse_extended"
REASON_RSI_NEUTRAL = "rsi_neutral"
REASON_EXPIRED = "expired"


class TierClassifier:
    """Quality tier from market cap when known, else from 24h quote volume."""

    def __init__(self, tiers: Optional[VolumeTiers] = None):
        self.tiers = tiers or VolumeTiers()
        self.volumes: Dict[str, float] = {}
        self.market_caps: Dict[str, float] = {}

    def update(self, symbol: str, volume_24h: Optional[float] = None, market_cap: Optional[float] = None) -> None:
        if volume_24h is not None:
            self.volumes[symbol] = float(volume_24h)
        if market_cap is not None:
            self.market_caps[symbol] = float(market_cap)

    def classify_tier(self, symbol: str) -> str:
        size = self.market_caps.get(symbol)
        if size is None:
            size = self.volumes.get(symbol, 0.0)
        if size >= self.tiers.bluechip:
            return QualityTier.BLUECHIP
        if size >= self.tiers.midcap:
            return QualityTier.MIDCAP
        return QualityTier.SHITCOIN


class DivergenceClassifier:
    def __init__(self, lookback: int = 50, swing_lookback: int = 3):
        self.lookback = lookback
        self.swing_lookback = swing_lookback

    def detect_divergence(self, candles: List[Candle], rsi: List[RSIResult]) -> Optional[Divergence]:
        return ind.detect_divergence(candles, rsi, self.lookback, self.swing_lookback)


class SetupDetector:
    def __init__(
        self,
        cfg: Optional[ScreenerConfig] = None,
        tiers: Optional[TierClassifier] = None,
        divergence: Optional[DivergenceClassifier] = None,
    ):
        self.cfg = cfg or ScreenerConfig()
        self.tiers = tiers or TierClassifier(self.cfg.volume_tiers)
        self.divergence = divergence or DivergenceClassifier()
        self.setups: Dict[str, Setup] = {}

    # ---------------- public API ----------------

    def analyze(
        self,
        symbol: str,
        timeframe: str,
        candles: List[Candle],
        higher_tf_candles: Optional[List[Candle]] = None,
        market_type: str = SPOT,
        volume_24h: float = 0.0,
    ) -> List[SetupEvent]:
        """
        Evaluate the latest closed candle for both directions.
        Returns one event per created setup or state change.
        """
        if len(candles) < self.cfg.min_candles:
            return []
        rsi = ind.compute_rsi(candles, self.cfg.rsi_period)
        if len(rsi) < MIN_RSI_VALUES:
            return []

        if volume_24h:
            self.tiers.update(symbol, volume_24h=volume_24h)

        htf_bull = ind.is_higher_tf_bullish(higher_tf_candles) if higher_tf_candles else None
        now = candles[-1].timestamp

        events: List[SetupEvent] = []
        for direction in DIRECTIONS:
            key = setup_key(symbol, timeframe, direction)
            existing = self.setups.get(key)
            if existing is not None and not existing.is_played_out:
                ev = self._update(existing, candles, rsi, htf_bull)
            else:
                if existing is not None and existing.played_out_at is not None:
                    if now - existing.played_out_at < retrigger_cooldown_ms(timeframe):
                        continue
                ev = self._detect_new(symbol, timeframe, direction, candles, rsi, htf_bull, market_type, volume_24h)
            if ev is not None:
                events.append(ev)
        return events

    def get(self, symbol: str, timeframe: str, direction: str) -> Optional[Setup]:
        return self.setups.get(setup_key(symbol, timeframe, direction))

    def active_setups(self) -> List[Setup]:
        return [s for s in self.setups.values() if not s.is_played_out]

    def setups_by_state(self, state: str) -> List[Setup]:
        return [s for s in self.setups.values() if s.state == state]

    def setups_by_timeframe(self, timeframe: str) -> List[Setup]:
        return [s for s in self.active_setups() if s.timeframe == timeframe]

    def remove(self, symbol: str, timeframe: str, direction: str) -> None:
        self.setups.pop(setup_key(symbol, timeframe, direction), None)

    def purge_played_out(self, now_ms: int, retention_ms: Optional[int] = None) -> int:
        """Drop played-out setups older than the retention window. Returns how many were removed."""
        keep = self.cfg.played_out_retention_ms if retention_ms is None else retention_ms
        stale = [
            k for k, s in self.setups.items()
            if s.is_played_out and s.played_out_at is not None and now_ms - s.played_out_at >= keep
        ]
        for k in stale:
            del self.setups[k]
        return len(stale)

    def clear(self) -> None:
        self.setups = {}

    # ---------------- detection ----------------

    def _detect_new(
        self,
        symbol: str,
        timeframe: str,
        direction: str,
        candles: List[Candle],
        rsi: List[RSIResult],
        htf_bull: Optional[bool],
        market_type: str,
        volume_24h: float,
    ) -> Optional[SetupEvent]:
        cfg = self.cfg
        impulse = ind.detect_impulse(candles, cfg.min_impulse_percent, cfg.impulse_lookback)
        if impulse is None:
            return None
        is_long = direction == LONG
        if impulse.direction != ("up" if is_long else "down"):
            return None

        high = max(impulse.start_price, impulse.end_price)
        low = min(impulse.start_price, impulse.end_price)
        price = candles[-1].close
        # pullback (long) / bounce (short) must sit inside the impulse range
        if not (low < price < high):
            return None

        cur = rsi[-1].value
        extremes = self._extremes_since(rsi, impulse.end_index, len(candles), direction)
        if self._past_entry(cur, direction):
            if extremes > 1:
                return None
            state = SetupState.DEEP_EXTREME if self._past_deep(cur, direction) else SetupState.TRIGGERED
        else:
            if extremes > 0:
                return None
            state = SetupState.WATCHING

        now = candles[-1].timestamp
        actionable = state in SetupState.ACTIONABLE

        impulse_slice = candles[impulse.start_index:impulse.end_index + 1]
        counter_slice = candles[impulse.end_index + 1:]
        pullback_low, bounce_high, stop = self._structure(candles, impulse.end_index, direction)

        div = self.divergence.detect_divergence(candles, rsi)
        if div is not None and not (div.is_bullish if is_long else div.is_bearish):
            div = None

        setup = Setup(
            symbol=symbol,
            timeframe=timeframe,
            direction=direction,
            market_type=market_type,
            state=state,
            impulse_high=high,
            impulse_low=low,
            impulse_start_time=candles[impulse.start_index].timestamp,
            impulse_end_time=candles[impulse.end_index].timestamp,
            impulse_percent_move=impulse.percent_move,
            current_rsi=cur,
            rsi_at_trigger=cur if actionable else None,
            previous_rsi=rsi[-2].value,
            rsi_trend=ind.rsi_trend(rsi, 3),
            current_price=price,
            entry_price=price if actionable else None,
            detected_at=now,
            triggered_at=now if actionable else None,
            last_updated=now,
            impulse_avg_volume=ind.avg_volume(impulse_slice),
            pullback_avg_volume=ind.avg_volume(counter_slice),
            volume_contracting=ind.is_volume_contracting(impulse_slice, counter_slice),
            volume_24h=volume_24h,
            quality_tier=self.tiers.classify_tier(symbol),
            higher_tf_bullish=htf_bull,
            htf_confirmed=_htf_confirmed(direction, htf_bull),
            divergence=div,
            pullback_low=pullback_low,
            bounce_high=bounce_high,
            structure_stop_price=stop,
        )
        self.setups[setup.key] = setup
        return SetupEvent(setup=setup, prev_state=None)

    def _extremes_since(self, rsi: List[RSIResult], impulse_end_index: int, total: int, direction: str) -> int:
        """Number of RSI readings past the entry threshold since the impulse ended."""
        start = max(0, impulse_end_index - (total - len(rsi)))
        return sum(1 for r in rsi[start:] if self._past_entry(r.value, direction))

    def _structure(
        self, candles: List[Candle], impulse_end_index: int, direction: str
    ) -> Tuple[Optional[float], Optional[float], Optional[float]]:
        if direction == LONG:
            found = ind.find_pullback_low(candles, impulse_end_index)
            low = found[0] if found else None
            return low, None, ind.structure_stop(direction, low, None)
        found = ind.find_bounce_high(candles, impulse_end_index)
        high = found[0] if found else None
        return None, high, ind.structure_stop(direction, None, high)

    # ---------------- update ----------------

    def _update(
        self,
        setup: Setup,
        candles: List[Candle],
        rsi: List[RSIResult],
        htf_bull: Optional[bool],
    ) -> Optional[SetupEvent]:
        now = candles[-1].timestamp
        if now < setup.last_updated:
            # out-of-order candle, ignore
            return None

        cur = rsi[-1].value
        price = candles[-1].close
        changes = dict(
            current_rsi=cur,
            previous_rsi=rsi[-2].value,
            rsi_trend=ind.rsi_trend(rsi, 3),
            current_price=price,
            last_updated=now,
        )
        if htf_bull is not None:
            changes["higher_tf_bullish"] = htf_bull
            changes["htf_confirmed"] = _htf_confirmed(setup.direction, htf_bull)

        reason = self._invalidation(setup, price, cur)
        if reason is None and now - setup.detected_at >= expiry_ms(setup.timeframe):
            reason = REASON_EXPIRED

        if reason is not None:
            new_state = SetupState.PLAYED_OUT
        else:
            new_state, reason = self._next_state(setup, cur)

        changes["state"] = new_state
        if new_state == SetupState.PLAYED_OUT:
            changes["played_out_at"] = now
            changes["played_out_reason"] = reason or ""
        elif setup.state == SetupState.WATCHING and new_state == SetupState.TRIGGERED:
            changes["entry_price"] = price
            changes["rsi_at_trigger"] = cur
            changes["triggered_at"] = now
            end_idx = _index_of(candles, setup.impulse_end_time)
            if end_idx is not None:
                pl, bh, stop = self._structure(candles, end_idx, setup.direction)
                changes.update(pullback_low=pl, bounce_high=bh, structure_stop_price=stop)

        updated = replace(setup, **changes)
        self.setups[updated.key] = updated
        if updated.state == setup.state:
            return None
        return SetupEvent(setup=updated, prev_state=setup.state)

    def _invalidation(self, s: Setup, price: float, rsi: float) -> Optional[str]:
        if s.direction == LONG:
            if price < s.impulse_low:
                return REASON_STRUCTURE_BROKEN
            if s.is_actionable and price >= s.impulse_high * 0.99:
                return REASON_TARGET_REACHED
            if s.state == SetupState.REVERSING and rsi < self.cfg.rsi_oversold_threshold:
                return REASON_SECOND_EXTREME
            if s.state == SetupState.WATCHING and price > s.impulse_high:
                return REASON_IMPULSE_EXTENDED
        else:
            if price > s.impulse_high:
                return REASON_STRUCTURE_BROKEN
            if s.is_actionable and price <= s.impulse_low * 1.01:
                return REASON_TARGET_REACHED
            if s.state == SetupState.REVERSING and rsi > self.cfg.rsi_overbought_threshold:
                return REASON_SECOND_EXTREME
            if s.state == SetupState.WATCHING and price < s.impulse_low:
                return REASON_IMPULSE_EXTENDED
        return None

    def _next_state(self, s: Setup, rsi: float) -> Tuple[str, Optional[str]]:
        state = s.state
        past_entry = self._past_entry(rsi, s.direction)

        if state == SetupState.WATCHING:
            # even a jump straight past the deep level enters at triggered first
            return (SetupState.TRIGGERED if past_entry else state), None

        if state in SetupState.ACTIONABLE:
            if self._past_deep(rsi, s.direction):
                return SetupState.DEEP_EXTREME, None
            if past_entry:
                return state, None
            if s.direction == LONG:
                neutral = rsi > LONG_EXIT_FROM_TRIGGER
            else:
                neutral = rsi < SHORT_EXIT_FROM_TRIGGER
            if neutral:
                return SetupState.PLAYED_OUT, REASON_RSI_NEUTRAL
            return SetupState.REVERSING, None

        if state == SetupState.REVERSING:
            if s.direction == LONG:
                neutral = rsi > EXIT_FROM_REVERSING
            else:
                neutral = rsi < EXIT_FROM_REVERSING
            if neutral:
                return SetupState.PLAYED_OUT, REASON_RSI_NEUTRAL
            return state, None

        return state, None

    def _past_entry(self, rsi: float, direction: str) -> bool:
        if direction == LONG:
            return rsi < self.cfg.rsi_oversold_threshold
        return rsi > self.cfg.rsi_overbought_threshold

    def _past_deep(self, rsi: float, direction: str) -> bool:
        if direction == LONG:
            return rsi < self.cfg.rsi_deep_oversold_threshold
        return rsi > self.cfg.rsi_deep_overbought_threshold


def _htf_confirmed(direction: str, htf_bull: Optional[bool]) -> bool:
    if htf_bull is None:
        return True
    return htf_bull if direction == LONG else not htf_bull


def _index_of(candles: List[Candle], ts: int) -> Optional[int]:
    for i in range(len(candles) - 1, -1, -1):
        if candles[i].timestamp == ts:
            return i
    return None
