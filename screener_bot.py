#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Live Backburner screener with paper bots.

Loops:
  SCAN     - scan cycle every BB_UPDATE_INTERVAL_SEC (setups -> bots -> trade db)
  UNIVERSE - refresh symbol universe + BTC bias every BB_UNIVERSE_REFRESH_SEC
  pulse    - one status line every BB_PULSE_SEC

Each loop runs under runner(): a crash is logged with traceback and the loop
is restarted after 3s.
"""

from __future__ import annotations

import asyncio
import os
import time
import traceback

from dotenv import load_dotenv

from execution_costs import ExecutionCostsConfig
from log_utils import log_error
from mexc_data import MexcClient
from policies.registry import build_bots
from scanner import ScanContext, Scanner
from screener_config import ScreenerConfig, _env_float
from setup_detector import SetupDetector
from trade_events import TradeEventSink

RESTART_DELAY_SEC = 3


def build_scanner() -> Scanner:
    cfg = ScreenerConfig.from_env()
    sink = TradeEventSink()
    bots = build_bots(costs=ExecutionCostsConfig.from_env(), sink=sink, verbose=True)
    ctx = ScanContext(cfg=cfg, client=MexcClient(cfg), detector=SetupDetector(cfg), bots=bots)
    return Scanner(ctx)


async def runner(coro, title):
    while True:
        try:
            await coro()
        except Exception as e:
            msg = f"{title} crash: {repr(e)}\n{traceback.format_exc()}"
            print(msg)
            log_error(msg)
            await asyncio.sleep(RESTART_DELAY_SEC)


def make_loops(scanner: Scanner):
    cfg = scanner.ctx.cfg
    universe_every = _env_float("BB_UNIVERSE_REFRESH_SEC", 600.0)
    pulse_every = _env_float("BB_PULSE_SEC", 30.0)

    async def scan_loop():
        while True:
            if not scanner.ctx.symbols:
                await asyncio.sleep(1)
                continue
            t0 = time.time()
            res = await scanner.scan_cycle()
            for ev in res.events:
                s = ev.setup
                print(
                    f"[setup] {s.symbol} {s.timeframe} {s.direction} {ev.prev_state or 'new'} -> {s.state} "
                    f"rsi={s.current_rsi:.1f} px={s.current_price:.6g} tier={s.quality_tier}"
                )
            if res.skipped:
                print(f"[scan] skipped {len(res.skipped)} symbols this cycle")
            await asyncio.sleep(max(0.0, cfg.update_interval_sec - (time.time() - t0)))

    async def universe_loop():
        while True:
            await scanner.refresh_universe()
            bias = await scanner.refresh_btc_bias()
            print(f"[universe] symbols={len(scanner.ctx.symbols)} btc_bias={bias}")
            await asyncio.sleep(universe_every)

    async def pulse():
        while True:
            parts = [f"{bot_id}: eq={eq:.2f} open={n_open} closed={n_closed}" for bot_id, eq, n_open, n_closed in scanner.summary()]
            active = len(scanner.ctx.detector.active_setups())
            print(f"[pulse] cycles={scanner.cycles} setups={active} bias={scanner.ctx.btc_bias} | " + " | ".join(parts))
            await asyncio.sleep(pulse_every)

    return scan_loop, universe_loop, pulse


async def main_async():
    scanner = build_scanner()
    scan_loop, universe_loop, pulse = make_loops(scanner)
    tasks = [
        asyncio.create_task(runner(universe_loop, "UNIVERSE")),
        asyncio.create_task(runner(scan_loop, "SCAN")),
        asyncio.create_task(pulse()),
    ]
    await asyncio.gather(*tasks)


def main():
    load_dotenv()
    print("Starting Backburner screener (paper bots)…")
    print(f"Timeframes: {os.getenv('BB_TIMEFRAMES', '5m,15m,1h')}  bots: {os.getenv('BB_BOTS', 'default')}")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        print("Stopped.")
    except Exception as e:
        log_error(f"fatal: {repr(e)}\n{traceback.format_exc()}")
        raise


if __name__ == "__main__":
    main()
