from __future__ import annotations

import math
from typing import List, Optional, Tuple

import numpy as np

from screener_types import Candle, Divergence, Impulse, RSIResult, SwingPoint

# RS used when the average loss is exactly zero: RSI = 100 - 100/101 ~= 99.0099.
# Kept as is: it decides which candles count as "extreme" on one-sided runs.
RS_CAP = 100.0


def compute_rsi(candles: List[Candle], period: int = 14) -> List[RSIResult]:
    """
    Wilder RSI, one value per candle from index `period` onward.

    Seed averages are the plain mean of the first `period` deltas, then
    avg = (avg * (period - 1) + x) / period.
    Returns [] when there are fewer than period + 1 candles.
    """
    if period <= 0 or len(candles) < period + 1:
        return []

    d = np.diff(np.asarray([c.close for c in candles], dtype=float))
    gains = np.where(d > 0, d, 0.0)
    losses = np.where(d < 0, -d, 0.0)

    avg_gain = float(np.sum(gains[:period])) / period
    avg_loss = float(np.sum(losses[:period])) / period

    out: List[RSIResult] = [RSIResult(_rsi_value(avg_gain, avg_loss), candles[period].timestamp)]
    for i in range(period, len(d)):
        avg_gain = (avg_gain * (period - 1) + float(gains[i])) / period
        avg_loss = (avg_loss * (period - 1) + float(losses[i])) / period
        out.append(RSIResult(_rsi_value(avg_gain, avg_loss), candles[i + 1].timestamp))
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    rs = RS_CAP if avg_loss == 0 else avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def current_rsi(candles: List[Candle], period: int = 14) -> Optional[float]:
    vals = compute_rsi(candles, period)
    return vals[-1].value if vals else None


def sma(values: List[float], period: int) -> List[float]:
    """Simple moving average, one value per full window."""
    if period <= 0 or len(values) < period:
        return []
    arr = np.asarray(values, dtype=float)
    csum = np.cumsum(np.insert(arr, 0, 0.0))
    return [float(x) for x in (csum[period:] - csum[:-period]) / period]


def avg_volume(candles: List[Candle], period: Optional[int] = None) -> float:
    if not candles:
        return 0.0
    window = candles if period is None or len(candles) < period else candles[-period:]
    return float(np.mean([c.volume for c in window]))


def highest_high(candles: List[Candle]) -> Tuple[float, int, int]:
    """(price, index, timestamp) of the highest high; first one wins on ties."""
    idx = 0
    for i in range(1, len(candles)):
        if candles[i].high > candles[idx].high:
            idx = i
    return candles[idx].high, idx, candles[idx].timestamp


def lowest_low(candles: List[Candle]) -> Tuple[float, int, int]:
    idx = 0
    for i in range(1, len(candles)):
        if candles[i].low < candles[idx].low:
            idx = i
    return candles[idx].low, idx, candles[idx].timestamp


def detect_impulse(candles: List[Candle], min_percent: float, lookback: int = 50) -> Optional[Impulse]:
    """
    Strong directional swing inside the last `lookback` candles.

    Up impulse: the highest high comes after the lowest low and the move
    (high - low) / low is at least min_percent. Down impulse: the low comes
    after the high, measured against the high. Indices refer to `candles`.
    """
    if len(candles) < lookback or lookback <= 1:
        return None

    offset = len(candles) - lookback
    window = candles[offset:]
    hi, hi_i, _ = highest_high(window)
    lo, lo_i, _ = lowest_low(window)

    if hi_i > lo_i and lo > 0:
        move = (hi - lo) / lo * 100.0
        if move >= min_percent:
            return Impulse(
                start_index=offset + lo_i,
                end_index=offset + hi_i,
                start_price=lo,
                end_price=hi,
                percent_move=move,
                direction="up",
            )

    if lo_i > hi_i and hi > 0:
        move = (hi - lo) / hi * 100.0
        if move >= min_percent:
            return Impulse(
                start_index=offset + hi_i,
                end_index=offset + lo_i,
                start_price=hi,
                end_price=lo,
                percent_move=move,
                direction="down",
            )

    return None


def is_volume_contracting(impulse: List[Candle], pullback: List[Candle], ratio: float = 0.8) -> bool:
    """Pullback volume should be at least 20% lower than the impulse volume."""
    if not impulse or not pullback:
        return False
    return avg_volume(pullback) < avg_volume(impulse) * ratio


def is_higher_tf_bullish(candles: List[Candle], sma_period: int = 20) -> bool:
    if len(candles) < sma_period:
        return False
    s = sma([c.close for c in candles], sma_period)
    if not s:
        return False
    return candles[-1].close > s[-1]


def _swings(values: List[float], timestamps: List[int], lookback: int, highs: bool) -> List[SwingPoint]:
    out: List[SwingPoint] = []
    for i in range(lookback, len(values) - lookback):
        v = values[i]
        ok = True
        for j in range(1, lookback + 1):
            if highs:
                if v <= values[i - j] or v <= values[i + j]:
                    ok = False
                    break
            else:
                if v >= values[i - j] or v >= values[i + j]:
                    ok = False
                    break
        if ok:
            out.append(SwingPoint(value=v, index=i, timestamp=timestamps[i]))
    return out


def find_swing_highs(values: List[float], timestamps: List[int], lookback: int = 5) -> List[SwingPoint]:
    """Points strictly higher than `lookback` neighbours on each side."""
    return _swings(values, timestamps, lookback, highs=True)


def find_swing_lows(values: List[float], timestamps: List[int], lookback: int = 5) -> List[SwingPoint]:
    return _swings(values, timestamps, lookback, highs=False)


def _strength(rsi_diff: float, price_diff: float, hidden: bool) -> str:
    strong_rsi, strong_px, mod_rsi, mod_px = (8.0, 1.5, 4.0, 0.75) if hidden else (10.0, 2.0, 5.0, 1.0)
    if rsi_diff > strong_rsi and price_diff > strong_px:
        return "strong"
    if rsi_diff > mod_rsi or price_diff > mod_px:
        return "moderate"
    return "weak"


def detect_divergence(
    candles: List[Candle],
    rsi: List[RSIResult],
    lookback: int = 50,
    swing_lookback: int = 3,
) -> Optional[Divergence]:
    """
    Most recent RSI/price divergence on the last two swing points.

    Checked in order: bearish, bullish, hidden bearish, hidden bullish.
    """
    if len(candles) < lookback or len(rsi) < lookback:
        return None

    cs = candles[-lookback:]
    rs = rsi[-lookback:]
    ts = [c.timestamp for c in cs]
    rts = [r.timestamp for r in rs]

    p_highs = find_swing_highs([c.high for c in cs], ts, swing_lookback)
    p_lows = find_swing_lows([c.low for c in cs], ts, swing_lookback)
    r_highs = find_swing_highs([r.value for r in rs], rts, swing_lookback)
    r_lows = find_swing_lows([r.value for r in rs], rts, swing_lookback)

    if len(p_highs) < 2 and len(p_lows) < 2:
        return None

    have_highs = len(p_highs) >= 2 and len(r_highs) >= 2
    have_lows = len(p_lows) >= 2 and len(r_lows) >= 2

    if have_highs:
        ph1, ph2 = p_highs[-2:]
        rh1, rh2 = r_highs[-2:]
        if ph2.value > ph1.value and rh2.value < rh1.value:
            price_diff = (ph2.value - ph1.value) / ph1.value * 100.0
            rsi_diff = rh1.value - rh2.value
            return Divergence(
                type="bearish",
                strength=_strength(rsi_diff, price_diff, hidden=False),
                description=f"Bearish divergence: Price higher high (+{price_diff:.1f}%), RSI lower high (-{rsi_diff:.1f})",
                price_swing1=ph1, price_swing2=ph2, rsi_swing1=rh1, rsi_swing2=rh2,
            )

    if have_lows:
        pl1, pl2 = p_lows[-2:]
        rl1, rl2 = r_lows[-2:]
        if pl2.value < pl1.value and rl2.value > rl1.value:
            price_diff = (pl1.value - pl2.value) / pl1.value * 100.0
            rsi_diff = rl2.value - rl1.value
            return Divergence(
                type="bullish",
                strength=_strength(rsi_diff, price_diff, hidden=False),
                description=f"Bullish divergence: Price lower low (-{price_diff:.1f}%), RSI higher low (+{rsi_diff:.1f})",
                price_swing1=pl1, price_swing2=pl2, rsi_swing1=rl1, rsi_swing2=rl2,
            )

    if have_highs:
        ph1, ph2 = p_highs[-2:]
        rh1, rh2 = r_highs[-2:]
        if ph2.value < ph1.value and rh2.value > rh1.value:
            price_diff = (ph1.value - ph2.value) / ph1.value * 100.0
            rsi_diff = rh2.value - rh1.value
            return Divergence(
                type="hidden_bearish",
                strength=_strength(rsi_diff, price_diff, hidden=True),
                description=(
                    f"Hidden bearish: Price lower high (-{price_diff:.1f}%), "
                    f"RSI higher high (+{rsi_diff:.1f}) - downtrend continuation"
                ),
                price_swing1=ph1, price_swing2=ph2, rsi_swing1=rh1, rsi_swing2=rh2,
            )

    if have_lows:
        pl1, pl2 = p_lows[-2:]
        rl1, rl2 = r_lows[-2:]
        if pl2.value > pl1.value and rl2.value < rl1.value:
            price_diff = (pl2.value - pl1.value) / pl1.value * 100.0
            rsi_diff = rl1.value - rl2.value
            return Divergence(
                type="hidden_bullish",
                strength=_strength(rsi_diff, price_diff, hidden=True),
                description=(
                    f"Hidden bullish: Price higher low (+{price_diff:.1f}%), "
                    f"RSI lower low (-{rsi_diff:.1f}) - uptrend continuation"
                ),
                price_swing1=pl1, price_swing2=pl2, rsi_swing1=rl1, rsi_swing2=rl2,
            )

    return None


def rsi_trend(rsi: List[RSIResult], lookback: int = 3) -> str:
    """dropping / rising / flat over the last `lookback` values (1 point dead zone)."""
    if len(rsi) < lookback + 1:
        return "flat"
    recent = rsi[-lookback:]
    dropping = rising = 0
    for i in range(1, len(recent)):
        diff = recent[i].value - recent[i - 1].value
        if diff < -1:
            dropping += 1
        elif diff > 1:
            rising += 1
    if dropping > rising and dropping >= lookback - 1:
        return "dropping"
    if rising > dropping and rising >= lookback - 1:
        return "rising"
    return "flat"


def find_pullback_low(candles: List[Candle], impulse_end_index: int) -> Optional[Tuple[float, int, int]]:
    """Lowest low after the impulse end (structure for long stops)."""
    if impulse_end_index >= len(candles) - 1:
        return None
    price, idx, ts = lowest_low(candles[impulse_end_index + 1:])
    return price, impulse_end_index + 1 + idx, ts


def find_bounce_high(candles: List[Candle], impulse_end_index: int) -> Optional[Tuple[float, int, int]]:
    if impulse_end_index >= len(candles) - 1:
        return None
    price, idx, ts = highest_high(candles[impulse_end_index + 1:])
    return price, impulse_end_index + 1 + idx, ts


def structure_stop(
    direction: str,
    pullback_low: Optional[float],
    bounce_high: Optional[float],
    buffer_pct: float = 0.5,
) -> Optional[float]:
    if direction == "long" and pullback_low is not None:
        return pullback_low * (1 - buffer_pct / 100.0)
    if direction == "short" and bounce_high is not None:
        return bounce_high * (1 + buffer_pct / 100.0)
    return None


def rsi_sma_signal(rsi: List[RSIResult], sma_period: int = 9) -> str:
    """bullish if RSI sits above its own SMA, bearish below, neutral otherwise."""
    vals = [r.value for r in rsi]
    s = sma(vals, sma_period)
    if not s:
        return "neutral"
    cur, cur_sma = vals[-1], s[-1]
    if math.isclose(cur, cur_sma):
        return "neutral"
    return "bullish" if cur > cur_sma else "bearish"


def price_change_pct(candles: List[Candle], bars: int) -> Optional[float]:
    if len(candles) <= bars or bars <= 0:
        return None
    ref = candles[-bars - 1].close
    if ref <= 0:
        return None
    return (candles[-1].close - ref) / ref * 100.0
