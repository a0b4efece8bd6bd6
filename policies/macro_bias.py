from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from position_engine import TrailingConfig
from screener_types import LONG, SHORT, Setup

from .base import LONG_BIAS, SHORT_BIAS, STRONG_LONG, STRONG_SHORT, PolicyContext, is_actionable

BULL_BIASES = (LONG_BIAS, STRONG_LONG)
BEAR_BIASES = (SHORT_BIAS, STRONG_SHORT)


@dataclass
class MacroBiasPolicy:
    """
    Trend override: when a single-timeframe setup fights the BTC macro bias,
    trade with the bias instead.

    oversold long  + BTC short/strong_short -> short
    overbought short + BTC long/strong_long -> long
    """

    name: str = "macro_bias"
    trailing: TrailingConfig = field(default_factory=TrailingConfig)
    close_on_played_out: bool = False

    def should_act(self, setup: Setup, context: PolicyContext) -> Optional[str]:
        if not is_actionable(setup):
            return None
        if len(context.timeframes_for(setup.symbol, setup.direction)) > 1:
            return None
        if setup.direction == LONG and context.btc_bias in BEAR_BIASES:
            return SHORT
        if setup.direction == SHORT and context.btc_bias in BULL_BIASES:
            return LONG
        return None
