from __future__ import annotations

import os
from typing import Dict, List, Optional

from execution_costs import ExecutionCostsConfig
from position_engine import TrailingConfig

from .base import Bot, Policy, TradeSink
from .confluence import ConfluencePolicy
from .fade import FadePolicy
from .macro_bias import MacroBiasPolicy
from .trend_follow import TrendFollowPolicy

DEFAULT_BOTS = ("trend_1pct", "trend_10pct", "fade", "macro_bias", "confluence")


def default_policies() -> Dict[str, Policy]:
    """Default bot set. Env overrides use BB_BOT_<ID>_* (see TrailingConfig.from_env)."""
    return {
        "trend_1pct": TrendFollowPolicy(
            name="trend_1pct",
            trailing=TrailingConfig.from_env("BB_BOT_TREND_1PCT", TrailingConfig()),
        ),
        "trend_10pct": TrendFollowPolicy(
            name="trend_10pct",
            trailing=TrailingConfig.from_env(
                "BB_BOT_TREND_10PCT", TrailingConfig(position_size_percent=10.0, leverage=20.0)
            ),
        ),
        "fade": FadePolicy(trailing=TrailingConfig.from_env("BB_BOT_FADE", TrailingConfig())),
        "macro_bias": MacroBiasPolicy(trailing=TrailingConfig.from_env("BB_BOT_MACRO_BIAS", TrailingConfig())),
        "confluence": ConfluencePolicy(),
    }


def build_bots(
    costs: Optional[ExecutionCostsConfig] = None,
    enabled: Optional[List[str]] = None,
    sink: Optional[TradeSink] = None,
    verbose: bool = False,
) -> List[Bot]:
    """
    Bots listed in `enabled` (or BB_BOTS, comma separated), default: all.
    Unknown ids raise ValueError.
    """
    policies = default_policies()
    if enabled is None:
        raw = os.getenv("BB_BOTS", "")
        enabled = [x.strip() for x in raw.split(",") if x.strip()] or list(DEFAULT_BOTS)

    unknown = [b for b in enabled if b not in policies]
    if unknown:
        raise ValueError(f"unknown bots: {unknown} (known: {sorted(policies)})")

    return [Bot(bot_id, policies[bot_id], costs=costs, sink=sink, verbose=verbose) for bot_id in enabled]
