#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Paper position engine with a ROI-based trailing stop.

ROI is measured on margin: ROI% = price move% * leverage.
Stops are placed from the effective (post-slippage) entry price.

Trail ratchet: once the peak ROI (high-water mark) reaches trail_trigger_percent,
level = floor((hwm - trigger) / step) + 1 and the stop locks
level1_lock_percent + (level - 1) * step ROI. The stop only ever tightens.

Balance accounting: only the margin leaves the balance at open; at close the
balance gets back margin + realized PnL (realized is net of all costs).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Union

from errors import InvariantViolation
from execution_costs import NEUTRAL, NORMAL, ExecutionCostModel, determine_volatility
from log_utils import log_info
from screener_config import _env_bool, _env_float, _env_int
from screener_types import FUTURES, LONG, BotStats, ExitReason, Position, Setup


@dataclass
class TrailingConfig:
    initial_balance: float = 2000.0
    position_size_percent: float = 1.0  # of balance, used as margin
    leverage: float = 10.0
    initial_stop_loss_percent: float = 20.0  # ROI
    trail_trigger_percent: float = 10.0  # ROI
    trail_step_percent: float = 10.0  # ROI
    level1_lock_percent: float = 0.0  # ROI locked at level 1 (0 = breakeven)
    max_open_positions: int = 10
    long_only: bool = False
    min_margin: float = 1.0
    position_key: str = "symbol_timeframe"  # "symbol_timeframe" | "symbol"
    require_futures: bool = False
    include_funding: bool = True

    @classmethod
    def from_env(cls, prefix: str, base: Optional["TrailingConfig"] = None) -> "TrailingConfig":
        cfg = base or cls()
        p = prefix.rstrip("_").upper()
        cfg.initial_balance = _env_float(f"{p}_INITIAL_BALANCE", cfg.initial_balance)
        cfg.position_size_percent = _env_float(f"{p}_POSITION_SIZE_PCT", cfg.position_size_percent)
        cfg.leverage = _env_float(f"{p}_LEVERAGE", cfg.leverage)
        cfg.initial_stop_loss_percent = _env_float(f"{p}_INITIAL_SL_PCT", cfg.initial_stop_loss_percent)
        cfg.trail_trigger_percent = _env_float(f"{p}_TRAIL_TRIGGER_PCT", cfg.trail_trigger_percent)
        cfg.trail_step_percent = _env_float(f"{p}_TRAIL_STEP_PCT", cfg.trail_step_percent)
        cfg.level1_lock_percent = _env_float(f"{p}_LEVEL1_LOCK_PCT", cfg.level1_lock_percent)
        cfg.max_open_positions = _env_int(f"{p}_MAX_OPEN", cfg.max_open_positions)
        cfg.long_only = _env_bool(f"{p}_LONG_ONLY", cfg.long_only)
        cfg.require_futures = _env_bool(f"{p}_REQUIRE_FUTURES", cfg.require_futures)
        cfg.include_funding = _env_bool(f"{p}_INCLUDE_FUNDING", cfg.include_funding)
        return cfg


def price_ratio(direction: str, entry: float, price: float) -> float:
    """Signed price move as a fraction of entry, positive when in profit."""
    if entry <= 0:
        return 0.0
    if direction == LONG:
        return (price - entry) / entry
    return (entry - price) / entry


class PositionEngine:
    def __init__(
        self,
        cfg: Optional[TrailingConfig] = None,
        costs: Optional[ExecutionCostModel] = None,
        bot_id: str = "bot",
        verbose: bool = False,
    ):
        self.cfg = cfg or TrailingConfig()
        self.costs = costs or ExecutionCostModel()
        self.bot_id = bot_id
        self.verbose = verbose

        self.balance = float(self.cfg.initial_balance)
        self.peak_balance = self.balance
        self.max_drawdown = 0.0
        self.max_drawdown_percent = 0.0

        self.positions: Dict[str, Position] = {}
        self.closed: List[Position] = []

        # market context used for exit fills and funding
        self.regime = NORMAL
        self.market_bias = NEUTRAL

        self._seq = 0

    # ---------------- helpers ----------------

    def key_for(self, symbol: str, timeframe: str) -> str:
        if self.cfg.position_key == "symbol":
            return symbol
        return f"{symbol}-{timeframe}"

    def _resolve(self, key_or_pos: Union[str, Position]) -> Optional[Position]:
        key = key_or_pos if isinstance(key_or_pos, str) else key_or_pos.key
        return self.positions.get(key)

    def _stop_from_roi(self, pos_direction: str, eff_entry: float, roi_pct: float) -> float:
        r = roi_pct / 100.0 / self.cfg.leverage
        if pos_direction == LONG:
            return eff_entry * (1 + r)
        return eff_entry * (1 - r)

    def reserved_margin(self) -> float:
        return sum(p.margin_used for p in self.positions.values())

    def equity(self) -> float:
        return self.balance + self.reserved_margin()

    def _log(self, msg: str) -> None:
        if self.verbose:
            log_info(self.bot_id, msg)

    # ---------------- open ----------------

    def open(
        self,
        setup: Setup,
        direction: Optional[str] = None,
        now_ms: Optional[int] = None,
        regime: Optional[str] = None,
        meta: Optional[Dict[str, str]] = None,
    ) -> Optional[Position]:
        """
        Open a position from a setup. `direction` overrides the setup's own
        direction (fade / bias policies). Returns None when the position is
        rejected; a rejection never changes engine state.
        """
        cfg = self.cfg
        side = direction or setup.direction

        if cfg.long_only and side != LONG:
            return None
        if cfg.require_futures and setup.market_type != FUTURES:
            return None

        key = self.key_for(setup.symbol, setup.timeframe)
        if key in self.positions:
            return None
        if len(self.positions) >= cfg.max_open_positions:
            return None

        if self.balance < 0:
            raise InvariantViolation(f"{self.bot_id}: negative balance {self.balance}")
        margin = self.balance * cfg.position_size_percent / 100.0
        if margin < cfg.min_margin or margin > self.balance:
            return None

        price = setup.current_price
        if price <= 0:
            return None
        notional = margin * cfg.leverage
        ts = now_ms if now_ms is not None else setup.last_updated

        fill = self.costs.entry_cost(price, notional, side, regime or determine_volatility(setup.current_rsi))
        stop = self._stop_from_roi(side, fill.effective_price, -cfg.initial_stop_loss_percent)

        self._seq += 1
        pos = Position(
            id=f"{self.bot_id}-{key}-{ts}-{self._seq}",
            key=key,
            symbol=setup.symbol,
            timeframe=setup.timeframe,
            direction=side,
            market_type=setup.market_type,
            entry_price=price,
            effective_entry_price=fill.effective_price,
            entry_time=ts,
            margin_used=margin,
            notional_size=notional,
            leverage=cfg.leverage,
            initial_stop_loss_price=stop,
            current_stop_loss_price=stop,
            entry_costs=fill.cost,
            current_price=price,
            last_update=ts,
            unrealized_pnl=-fill.cost,
            unrealized_roi=-fill.cost / margin * 100.0,
            meta=dict(meta or {}),
        )

        self.balance -= margin
        self.positions[key] = pos
        self._log(
            f"OPEN {pos.symbol} {side.upper()} {pos.timeframe} @ {fill.effective_price:.6g} "
            f"(mkt {price:.6g}) margin={margin:.2f} sl={stop:.6g}"
        )
        return pos

    # ---------------- update ----------------

    def update(
        self,
        key_or_pos: Union[str, Position],
        price: float,
        timestamp: int,
        high: Optional[float] = None,
        low: Optional[float] = None,
    ) -> Optional[Position]:
        """
        Mark an open position to `price`. With bar data, the adverse extreme
        (low for long, high for short) is checked against the current stop
        first, so a same-bar stop is never skipped by a favourable close.
        Returns the (possibly closed) position, None if it is not open.
        """
        pos = self._resolve(key_or_pos)
        if pos is None or not pos.is_open:
            return None
        if timestamp < pos.last_update:
            return pos

        is_long = pos.direction == LONG
        worst = (low if low is not None else price) if is_long else (high if high is not None else price)
        if self._stop_hit(pos, worst):
            return self.close(pos, pos.current_stop_loss_price, self._stop_reason(pos), timestamp)

        ratio = price_ratio(pos.direction, pos.entry_price, price)
        unrealized = ratio * pos.notional_size - pos.entry_costs
        roi = unrealized / pos.margin_used * 100.0 if pos.margin_used > 0 else 0.0
        hwm = max(pos.high_water_mark, roi)

        level = pos.trail_level
        stop = pos.current_stop_loss_price
        cfg = self.cfg
        if hwm >= cfg.trail_trigger_percent and cfg.trail_step_percent > 0:
            new_level = int(math.floor((hwm - cfg.trail_trigger_percent) / cfg.trail_step_percent)) + 1
            if new_level > level:
                locked = cfg.level1_lock_percent + (new_level - 1) * cfg.trail_step_percent
                candidate = self._stop_from_roi(pos.direction, pos.effective_entry_price, locked)
                stop = max(stop, candidate) if is_long else min(stop, candidate)
                self._log(f"TRAIL {pos.symbol} level {level} -> {new_level} sl={stop:.6g} (lock {locked:.1f}% ROI)")
                level = new_level

        updated = replace(
            pos,
            current_price=price,
            last_update=timestamp,
            unrealized_pnl=unrealized,
            unrealized_roi=roi,
            high_water_mark=hwm,
            trail_level=level,
            current_stop_loss_price=stop,
        )
        self._swap(pos, updated)

        if self._stop_hit(updated, price):
            return self.close(updated, price, self._stop_reason(updated), timestamp)
        return updated

    def _stop_hit(self, pos: Position, price: float) -> bool:
        if pos.direction == LONG:
            return price <= pos.current_stop_loss_price
        return price >= pos.current_stop_loss_price

    def _stop_reason(self, pos: Position) -> str:
        if pos.trail_level <= 0:
            return ExitReason.INITIAL_STOP
        if pos.trail_level == 1 and self.cfg.level1_lock_percent <= 0:
            return ExitReason.BREAKEVEN_STOP
        return ExitReason.TRAILING_STOP

    def _swap(self, old: Position, new: Position) -> None:
        if new.high_water_mark < old.high_water_mark:
            raise InvariantViolation(f"{old.key}: high-water mark decreased")
        if new.trail_level < old.trail_level:
            raise InvariantViolation(f"{old.key}: trail level decreased")
        if old.direction == LONG and new.current_stop_loss_price < old.current_stop_loss_price:
            raise InvariantViolation(f"{old.key}: long stop loosened")
        if old.direction != LONG and new.current_stop_loss_price > old.current_stop_loss_price:
            raise InvariantViolation(f"{old.key}: short stop loosened")
        self.positions[new.key] = new

    # ---------------- close ----------------

    def close(
        self,
        key_or_pos: Union[str, Position],
        exit_price: float,
        reason: str,
        timestamp: int,
        regime: Optional[str] = None,
    ) -> Optional[Position]:
        pos = self._resolve(key_or_pos)
        if pos is None or not pos.is_open:
            return None

        fill = self.costs.exit_cost(
            exit_price, pos.notional_size, pos.direction, regime or self.regime, is_stop=reason in ExitReason.STOPS
        )
        funding = 0.0
        if pos.market_type == FUTURES and self.cfg.include_funding:
            funding = self.costs.funding(
                pos.notional_size, pos.direction, max(0, timestamp - pos.entry_time), self.market_bias
            )

        gross = price_ratio(pos.direction, pos.entry_price, exit_price) * pos.notional_size
        exit_costs = fill.cost + funding
        realized = gross - pos.entry_costs - exit_costs

        closed = replace(
            pos,
            status="closed",
            current_price=exit_price,
            last_update=max(pos.last_update, timestamp),
            unrealized_pnl=0.0,
            unrealized_roi=0.0,
            exit_price=exit_price,
            effective_exit_price=fill.effective_price,
            exit_time=timestamp,
            exit_reason=reason,
            exit_costs=exit_costs,
            funding_paid=funding,
            gross_pnl=gross,
            realized_pnl=realized,
            realized_pnl_percent=realized / pos.margin_used * 100.0,
        )

        del self.positions[pos.key]
        self.closed.append(closed)
        self.balance += pos.margin_used + realized
        self._mark_equity()

        self._log(
            f"CLOSE {closed.symbol} {closed.direction.upper()} {reason} @ {exit_price:.6g} "
            f"gross={gross:.2f} costs={closed.total_costs:.2f} net={realized:.2f} level={closed.trail_level}"
        )
        return closed

    def close_all(self, reason: str = ExitReason.END_OF_DATA, timestamp: Optional[int] = None) -> List[Position]:
        """Close every open position at its last known price."""
        out: List[Position] = []
        for pos in list(self.positions.values()):
            ts = timestamp if timestamp is not None else pos.last_update
            closed = self.close(pos, pos.current_price, reason, ts)
            if closed is not None:
                out.append(closed)
        return out

    def on_setup(self, setup: Setup) -> Optional[Position]:
        """Mark the position that belongs to `setup` and close it once the setup played out."""
        key = self.key_for(setup.symbol, setup.timeframe)
        if key not in self.positions:
            return None
        pos = self.update(key, setup.current_price, setup.last_updated)
        if pos is not None and pos.is_open and setup.is_played_out:
            return self.close(pos, setup.current_price, ExitReason.PLAYED_OUT, setup.last_updated)
        return pos

    def _mark_equity(self) -> None:
        eq = self.equity()
        if eq > self.peak_balance:
            self.peak_balance = eq
        dd = self.peak_balance - eq
        if dd > self.max_drawdown:
            self.max_drawdown = dd
        if self.peak_balance > 0:
            self.max_drawdown_percent = max(self.max_drawdown_percent, dd / self.peak_balance * 100.0)

    # ---------------- queries ----------------

    def open_positions(self) -> List[Position]:
        return list(self.positions.values())

    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    def get_stats(self) -> BotStats:
        trades = self.closed
        wins = [p.realized_pnl or 0.0 for p in trades if (p.realized_pnl or 0.0) > 0]
        losses = [p.realized_pnl or 0.0 for p in trades if (p.realized_pnl or 0.0) < 0]
        gross_win = sum(wins)
        gross_loss = -sum(losses)
        if gross_loss > 0:
            pf = gross_win / gross_loss
        else:
            pf = float("inf") if gross_win > 0 else 0.0

        reasons: Dict[str, int] = {}
        for p in trades:
            r = p.exit_reason or "unknown"
            reasons[r] = reasons.get(r, 0) + 1

        n = len(trades)
        return BotStats(
            total_trades=n,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=(len(wins) / n * 100.0) if n else 0.0,
            total_pnl=sum(p.realized_pnl or 0.0 for p in trades),
            largest_win=max(wins) if wins else 0.0,
            largest_loss=min(losses) if losses else 0.0,
            average_win=(gross_win / len(wins)) if wins else 0.0,
            average_loss=(gross_loss / len(losses)) if losses else 0.0,
            profit_factor=pf,
            total_costs=sum(p.total_costs for p in trades),
            current_balance=self.equity(),
            peak_balance=self.peak_balance,
            max_drawdown=self.max_drawdown,
            max_drawdown_percent=self.max_drawdown_percent,
            open_positions=len(self.positions),
            exit_reasons=reasons,
        )
