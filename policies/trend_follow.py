from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from position_engine import TrailingConfig
from screener_types import FUTURES, Setup

from .base import PolicyContext, is_actionable


@dataclass
class TrendFollowPolicy:
    """Backburner as designed: enter the setup's own direction on the first extreme."""

    name: str = "trend_follow"
    trailing: TrailingConfig = field(default_factory=TrailingConfig)
    close_on_played_out: bool = True
    require_htf_confirmation: bool = False
    futures_only: bool = False

    def should_act(self, setup: Setup, context: PolicyContext) -> Optional[str]:
        if not is_actionable(setup):
            return None
        if self.futures_only and setup.market_type != FUTURES:
            return None
        if self.require_htf_confirmation and not setup.htf_confirmed:
            return None
        return setup.direction
