from typing import List, Optional

import pytest

import log_utils
from screener_types import LONG, SPOT, Candle, Setup, SetupState

TF_5M = 5 * 60 * 1000
T0 = 1_700_000_000_000 - (1_700_000_000_000 % TF_5M)


def make_candles(closes: List[float], start_ts: int = T0, step_ms: int = TF_5M, volume: float = 1000.0) -> List[Candle]:
    """Open = previous close, high/low = body extremes."""
    out: List[Candle] = []
    prev = closes[0]
    for i, c in enumerate(closes):
        out.append(
            Candle(
                timestamp=start_ts + i * step_ms,
                open=prev,
                high=max(prev, c),
                low=min(prev, c),
                close=c,
                volume=volume,
            )
        )
        prev = c
    return out


def pullback_closes() -> List[float]:
    """
    40 flat bars at 100, a single +6% impulse bar, 16 flat bars at the top,
    then a pullback: 104.2 (RSI ~48.6), 102.4 (~31.3), 101.6 (~26.7).
    """
    return [100.0] * 40 + [106.0] + [106.0] * 16 + [104.2, 102.4, 101.6]


def make_setup(
    symbol: str = "SOLUSDT",
    timeframe: str = "5m",
    direction: str = LONG,
    price: float = 100.0,
    state: str = SetupState.TRIGGERED,
    market_type: str = SPOT,
    rsi: float = 28.0,
    ts: Optional[int] = None,
) -> Setup:
    now = T0 if ts is None else ts
    return Setup(
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        market_type=market_type,
        state=state,
        impulse_high=price * 1.1,
        impulse_low=price * 0.9,
        current_rsi=rsi,
        current_price=price,
        entry_price=price,
        detected_at=now,
        triggered_at=now,
        last_updated=now,
    )


@pytest.fixture(autouse=True)
def _errors_log(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "ERRORS_LOG", str(tmp_path / "errors.log"))
