from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from position_engine import TrailingConfig
from screener_types import FUTURES, Setup, opposite

from .base import PolicyContext, is_actionable


@dataclass
class FadePolicy:
    """Take the opposite side of every actionable setup (futures only by default)."""

    name: str = "fade"
    trailing: TrailingConfig = field(default_factory=TrailingConfig)
    close_on_played_out: bool = True
    futures_only: bool = True

    def should_act(self, setup: Setup, context: PolicyContext) -> Optional[str]:
        if not is_actionable(setup):
            return None
        if self.futures_only and setup.market_type != FUTURES:
            return None
        return opposite(setup.direction)
