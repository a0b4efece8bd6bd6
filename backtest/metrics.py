#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Per-bot replay results: closed trades, equity curve, summary row."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

from screener_types import Position


@dataclass
class Trade:
    bot: str
    symbol: str
    timeframe: str
    side: str  # "long" | "short"
    entry_ts: int
    exit_ts: int
    entry_price: float
    exit_price: float
    margin: float
    pnl: float  # net of all costs
    pnl_pct_margin: float
    costs: float
    trail_level: int
    reason: str  # exit reason


def trade_from_position(bot: str, pos: Position) -> Trade:
    return Trade(
        bot=bot,
        symbol=pos.symbol,
        timeframe=pos.timeframe,
        side=pos.direction,
        entry_ts=pos.entry_time,
        exit_ts=pos.exit_time or pos.last_update,
        entry_price=pos.entry_price,
        exit_price=pos.exit_price if pos.exit_price is not None else pos.current_price,
        margin=pos.margin_used,
        pnl=pos.realized_pnl or 0.0,
        pnl_pct_margin=pos.realized_pnl_percent or 0.0,
        costs=pos.total_costs,
        trail_level=pos.trail_level,
        reason=pos.exit_reason or "",
    )


@dataclass
class Summary:
    bot: str
    trades: int = 0
    wins: int = 0
    losses: int = 0
    net_pnl: float = 0.0
    gross_win: float = 0.0
    gross_loss: float = 0.0  # positive number
    total_costs: float = 0.0
    max_drawdown: float = 0.0  # % of running peak equity
    exit_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def winrate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def winrate_pct(self) -> float:
        return self.winrate * 100.0

    @property
    def avg_pnl(self) -> float:
        return self.net_pnl / self.trades if self.trades else 0.0

    @property
    def profit_factor(self) -> float:
        if self.gross_loss > 0:
            return self.gross_win / self.gross_loss
        return math.inf if self.gross_win > 0 else 0.0


def max_drawdown(curve: List[float]) -> float:
    """Largest drop from a running peak, in percent of that peak."""
    if not curve:
        return 0.0
    eq = np.asarray(curve, dtype=float)
    peaks = np.maximum.accumulate(eq)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peaks > 0, (peaks - eq) / peaks * 100.0, 0.0)
    return float(dd.max())


def equity_curve(start: float, trades: List[Trade]) -> List[float]:
    """Equity after each closed trade, in exit order."""
    pnl = [t.pnl for t in sorted(trades, key=lambda x: x.exit_ts)]
    return [float(start)] + [float(start + x) for x in np.cumsum(pnl)]


def summarize(bot: str, trades: List[Trade], curve: List[float]) -> Summary:
    s = Summary(bot=bot, trades=len(trades), max_drawdown=max_drawdown(curve))
    for t in trades:
        s.net_pnl += t.pnl
        s.total_costs += t.costs
        if t.pnl > 0:
            s.wins += 1
            s.gross_win += t.pnl
        elif t.pnl < 0:
            s.losses += 1
            s.gross_loss -= t.pnl
        s.exit_reasons[t.reason] = s.exit_reasons.get(t.reason, 0) + 1
    return s


def to_row_dict(s: Summary) -> Dict[str, object]:
    pf = s.profit_factor
    return {
        "bot": s.bot,
        "trades": s.trades,
        "wins": s.wins,
        "losses": s.losses,
        "winrate": round(s.winrate, 4),
        "net_pnl": round(s.net_pnl, 4),
        "avg_pnl": round(s.avg_pnl, 6),
        "profit_factor": round(pf, 4) if math.isfinite(pf) else "inf",
        "costs": round(s.total_costs, 4),
        "max_drawdown": round(s.max_drawdown, 4),
        **{f"exit_{k}": v for k, v in sorted(s.exit_reasons.items())},
    }
