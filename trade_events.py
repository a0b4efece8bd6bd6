#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import os
import sqlite3
from typing import Any, Dict, List, Optional

from log_utils import log_error
from screener_types import Position, Setup

TRADE_DB_PATH = os.getenv("TRADE_DB_PATH", "trades.db")

OPEN = "open"
CLOSE = "close"


class TradeEventSink:
    """
    Append-only SQLite log of position open/close events, keyed by
    (bot_id, position_id, event). Writing the same event twice is a no-op.
    Write failures are logged to errors.log and never break the scan.
    """

    def __init__(self, path: str = ""):
        self.path = path or TRADE_DB_PATH
        self._init()

    def _init(self) -> None:
        try:
            with sqlite3.connect(self.path) as con:
                con.execute(
                    """
                    CREATE TABLE IF NOT EXISTS trade_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts INTEGER,
                        event TEXT,
                        bot_id TEXT,
                        position_id TEXT,
                        symbol TEXT,
                        timeframe TEXT,
                        direction TEXT,
                        market_type TEXT,
                        entry_price REAL,
                        effective_entry_price REAL,
                        exit_price REAL,
                        margin REAL,
                        notional REAL,
                        leverage REAL,
                        stop_price REAL,
                        trail_level INTEGER,
                        costs REAL,
                        pnl REAL,
                        pnl_pct REAL,
                        reason TEXT,
                        meta TEXT,
                        UNIQUE (bot_id, position_id, event)
                    )
                    """
                )
                con.commit()
        except sqlite3.Error as e:
            log_error(f"db init fail: {e}")

    def _insert(self, event: str, bot_id: str, pos: Position, ts: int, meta: Dict[str, Any]) -> None:
        try:
            with sqlite3.connect(self.path) as con:
                con.execute(
                    """
                    INSERT OR IGNORE INTO trade_events
                    (ts, event, bot_id, position_id, symbol, timeframe, direction, market_type,
                     entry_price, effective_entry_price, exit_price, margin, notional, leverage,
                     stop_price, trail_level, costs, pnl, pnl_pct, reason, meta)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(ts),
                        event,
                        bot_id,
                        pos.id,
                        pos.symbol,
                        pos.timeframe,
                        pos.direction,
                        pos.market_type,
                        pos.entry_price,
                        pos.effective_entry_price,
                        pos.exit_price,
                        pos.margin_used,
                        pos.notional_size,
                        pos.leverage,
                        pos.current_stop_loss_price,
                        pos.trail_level,
                        pos.entry_costs if event == OPEN else pos.total_costs,
                        pos.realized_pnl,
                        pos.realized_pnl_percent,
                        pos.exit_reason or "",
                        json.dumps(meta, sort_keys=True),
                    ),
                )
                con.commit()
        except sqlite3.Error as e:
            log_error(f"db log fail ({event} {bot_id} {pos.id}): {e}")

    def log_open(self, bot_id: str, pos: Position, setup: Optional[Setup] = None) -> None:
        meta: Dict[str, Any] = dict(pos.meta)
        if setup is not None:
            meta.update(
                state=setup.state,
                rsi=round(setup.current_rsi, 2),
                impulse_pct=round(setup.impulse_percent_move, 2),
                quality_tier=setup.quality_tier,
                htf_confirmed=setup.htf_confirmed,
            )
        self._insert(OPEN, bot_id, pos, pos.entry_time, meta)

    def log_close(self, bot_id: str, pos: Position) -> None:
        meta: Dict[str, Any] = dict(pos.meta)
        meta.update(funding=pos.funding_paid, gross_pnl=pos.gross_pnl, hwm=pos.high_water_mark)
        self._insert(CLOSE, bot_id, pos, pos.exit_time or pos.last_update, meta)

    def events(self, bot_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with sqlite3.connect(self.path) as con:
            con.row_factory = sqlite3.Row
            if bot_id is None:
                rows = con.execute("SELECT * FROM trade_events ORDER BY id").fetchall()
            else:
                rows = con.execute("SELECT * FROM trade_events WHERE bot_id = ? ORDER BY id", (bot_id,)).fetchall()
        return [dict(r) for r in rows]
