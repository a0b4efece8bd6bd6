from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from position_engine import TrailingConfig
from screener_types import Setup

from .base import PolicyContext, is_actionable


def _confluence_trailing() -> TrailingConfig:
    return TrailingConfig(position_size_percent=10.0, leverage=20.0, max_open_positions=100, position_key="symbol")


@dataclass
class ConfluencePolicy:
    """
    Multi-timeframe confirmation: the required timeframe (5m) must trigger and
    at least one confirming timeframe (15m or 1h) must have triggered within
    the window. Positions are left to the trailing stop, not closed on played_out.
    """

    name: str = "confluence"
    trailing: TrailingConfig = field(default_factory=_confluence_trailing)
    close_on_played_out: bool = False
    required_timeframe: str = "5m"
    confirming_timeframes: List[str] = field(default_factory=lambda: ["15m", "1h"])
    window_ms: int = 5 * 60 * 1000

    # (symbol, direction) -> timeframe -> trigger time (ms)
    triggers: Dict[Tuple[str, str], Dict[str, int]] = field(default_factory=dict)

    def should_act(self, setup: Setup, context: PolicyContext) -> Optional[str]:
        if not is_actionable(setup):
            return None
        if setup.timeframe != self.required_timeframe and setup.timeframe not in self.confirming_timeframes:
            return None

        now = context.now_ms or setup.last_updated
        self._expire(now)
        k = (setup.symbol, setup.direction)
        self.triggers.setdefault(k, {})[setup.timeframe] = now

        seen = self.triggers[k]
        if self.required_timeframe not in seen:
            return None
        if not any(tf in seen for tf in self.confirming_timeframes):
            return None
        return setup.direction

    def _expire(self, now: int) -> None:
        cutoff = now - self.window_ms
        for k in list(self.triggers.keys()):
            tfs = {tf: ts for tf, ts in self.triggers[k].items() if ts >= cutoff}
            if tfs:
                self.triggers[k] = tfs
            else:
                del self.triggers[k]
