#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Replay the paper bots over historical MEXC candles.

Examples:
  python -m backtest.run_replay --symbols SOLUSDT,ADAUSDT --days 14
  python -m backtest.run_replay --symbols ETHUSDT --bots trend_1pct,fade --no_save
"""

from __future__ import annotations

import argparse
import csv
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from dotenv import load_dotenv

from execution_costs import ExecutionCostsConfig, zero_costs
from policies.base import BIAS_TIMEFRAMES
from policies.registry import build_bots
from screener_config import ScreenerConfig
from screener_types import FUTURES, SPOT, Candle

from .engine import ReplayEngine, ReplayParams
from .history import aggregate_candles, fetch_history
from .metrics import Summary, Trade, to_row_dict

BASE_TF = "5m"
BTC_SYMBOL = "BTCUSDT"


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _write_trades_csv(path: str, trades: List[Trade]) -> None:
    fields = [
        "bot", "symbol", "timeframe", "side", "entry_ts", "exit_ts", "entry_price", "exit_price",
        "margin", "pnl", "pnl_pct_margin", "costs", "trail_level", "reason",
    ]
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=fields)
        w.writeheader()
        for t in trades:
            w.writerow({
                "bot": t.bot,
                "symbol": t.symbol,
                "timeframe": t.timeframe,
                "side": t.side,
                "entry_ts": t.entry_ts,
                "exit_ts": t.exit_ts,
                "entry_price": f"{t.entry_price:.10g}",
                "exit_price": f"{t.exit_price:.10g}",
                "margin": f"{t.margin:.10g}",
                "pnl": f"{t.pnl:.10g}",
                "pnl_pct_margin": f"{t.pnl_pct_margin:.6g}",
                "costs": f"{t.costs:.10g}",
                "trail_level": t.trail_level,
                "reason": t.reason,
            })


def _fmt_summary(s: Summary) -> str:
    return (
        f"trades={s.trades}  winrate={s.winrate_pct:.1f}%  "
        f"netPnL={s.net_pnl:.2f}  PF={s.profit_factor:.2f}  "
        f"maxDD={s.max_drawdown:.1f}%"
    )


def _load(symbol: str, timeframes: List[str], start_ms: int, end_ms: int, cache: bool) -> Dict[str, List[Candle]]:
    base = fetch_history(symbol, BASE_TF, start_ms, end_ms, cache=cache)
    out = {BASE_TF: base}
    for tf in timeframes:
        if tf != BASE_TF:
            out[tf] = aggregate_candles(base, BASE_TF, tf)
    return out


def main() -> int:
    load_dotenv()
    ap = argparse.ArgumentParser()
    ap.add_argument("--symbols", type=str, required=True, help="Comma-separated MEXC symbols, e.g. SOLUSDT,ADAUSDT")
    ap.add_argument("--futures", type=str, default="", help="Comma-separated symbols to treat as futures markets")
    ap.add_argument("--days", type=int, default=14)
    ap.add_argument("--end", type=str, default="", help="End time (UTC) YYYY-MM-DD or YYYY-MM-DDTHH:MM. Default: now.")
    ap.add_argument("--bots", type=str, default="", help="Comma-separated bot ids (default: BB_BOTS or all)")
    ap.add_argument("--no_costs", action="store_true", help="Disable fees, slippage and funding")
    ap.add_argument("--no_btc_bias", action="store_true", help="Skip BTC bias (always neutral)")
    ap.add_argument("--window", type=int, default=100, help="Candles visible to the detector per step")
    ap.add_argument("--no_save", action="store_true", help="Print summaries only, do not write CSV files")
    ap.add_argument("--out_dir", type=str, default="backtest_runs")
    ap.add_argument("--no_cache", action="store_true")
    args = ap.parse_args()

    cfg = ScreenerConfig.from_env()
    symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
    futures = {s.strip().upper() for s in args.futures.split(",") if s.strip()}

    end_dt = _utc_now()
    if args.end:
        txt = args.end.strip()
        try:
            if "T" in txt:
                end_dt = datetime.fromisoformat(txt).replace(tzinfo=timezone.utc)
            else:
                end_dt = datetime.strptime(txt, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            raise SystemExit("Bad --end format. Use YYYY-MM-DD or YYYY-MM-DDTHH:MM")
    start_dt = end_dt - timedelta(days=max(1, int(args.days)))
    start_ms, end_ms = _ms(start_dt), _ms(end_dt)

    print(f"Replay window (UTC): {start_dt.isoformat()}  ->  {end_dt.isoformat()}")
    print(f"Symbols: {', '.join(symbols)}  timeframes: {', '.join(cfg.timeframes)}")

    cache = not args.no_cache
    data: Dict[str, Dict[str, List[Candle]]] = {}
    for sym in symbols:
        data[sym] = _load(sym, cfg.timeframes, start_ms, end_ms, cache)
        print(f"  {sym}: {len(data[sym][BASE_TF])} x {BASE_TF} candles")

    btc = None
    if not args.no_btc_bias:
        btc = _load(BTC_SYMBOL, list(BIAS_TIMEFRAMES), start_ms, end_ms, cache)

    costs = zero_costs() if args.no_costs else ExecutionCostsConfig.from_env()
    enabled = [b.strip() for b in args.bots.split(",") if b.strip()] or None
    bots = build_bots(costs=costs, enabled=enabled)

    engine = ReplayEngine(cfg, bots, ReplayParams(window=args.window))
    res = engine.run(data, market_types={s: FUTURES if s in futures else SPOT for s in symbols}, btc=btc)

    print(f"\nsteps={res.steps}  setup events={len(res.events)}")
    for bot_id, s in res.summaries.items():
        print(f"{bot_id:>12}: {_fmt_summary(s)}")

    if args.no_save:
        return 0

    run_dir = os.path.join(args.out_dir, _utc_now().strftime("%Y%m%d_%H%M%S"))
    os.makedirs(run_dir, exist_ok=True)
    with open(os.path.join(run_dir, "params.json"), "w", encoding="utf-8") as pf:
        json.dump(
            {
                "start_utc": start_dt.isoformat(),
                "end_utc": end_dt.isoformat(),
                "symbols": symbols,
                "args": vars(args),
                "env": {k: v for k, v in os.environ.items() if k.startswith("BB_")},
            },
            pf,
            ensure_ascii=False,
            indent=2,
        )
    with open(os.path.join(run_dir, "summary.csv"), "w", newline="", encoding="utf-8") as sf:
        rows = [to_row_dict(s) for s in res.summaries.values()]
        if rows:
            # exit_<reason> columns differ per bot
            fields: List[str] = []
            for r in rows:
                fields.extend(k for k in r if k not in fields)
            w = csv.DictWriter(sf, fieldnames=fields, restval=0)
            w.writeheader()
            w.writerows(rows)
    _write_trades_csv(os.path.join(run_dir, "trades.csv"), [t for ts in res.trades.values() for t in ts])
    print(f"\nSaved to {run_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
