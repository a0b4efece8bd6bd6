import asyncio

import pytest

from conftest import T0, TF_5M, make_candles, pullback_closes
from errors import InvariantViolation, TransientNetworkError
from execution_costs import zero_costs
from policies.base import LONG_BIAS, NEUTRAL_BIAS, STRONG_LONG, Bot
from policies.trend_follow import TrendFollowPolicy
from scanner import BTC_SYMBOL, ScanContext, Scanner
from screener_config import ScreenerConfig
from screener_types import SPOT, Candle, ExitReason, SetupState, SymbolInfo
from setup_detector import SetupDetector

NOW = T0 + len(pullback_closes()) * TF_5M


def _rising():
    return make_candles([200.0 - i for i in range(50)] + [151.0 + 2 * i for i in range(1, 6)])


class FakeClient:
    def __init__(self, fail=None, btc_fail=()):
        self.fail = dict(fail or {})
        self.btc_fail = set(btc_fail)
        self.calls = []
        self.extra = []  # closed 5m candles appended after the pullback

    async def fetch_candles(self, symbol, timeframe, market_type=SPOT, limit=None):
        self.calls.append((symbol, timeframe))
        if symbol == BTC_SYMBOL:
            if timeframe in self.btc_fail:
                raise TransientNetworkError("btc down")
            return _rising()
        if symbol in self.fail:
            raise self.fail[symbol]
        candles = make_candles(pullback_closes())
        if timeframe == "5m":
            candles += self.extra
        return candles

    async def discover_symbols(self):
        return [
            SymbolInfo("SOLUSDT", volume_24h=2e8),
            SymbolInfo("ADAUSDT", volume_24h=5e6),
            SymbolInfo("TINYUSDT", volume_24h=9e8, market_cap=1e6),
        ]


def scanner(client=None, symbols=("SOLUSDT",)):
    cfg = ScreenerConfig(timeframes=["5m"])
    ctx = ScanContext(
        cfg=cfg,
        client=client or FakeClient(),
        detector=SetupDetector(cfg),
        bots=[Bot("trend", TrendFollowPolicy(), costs=zero_costs())],
        symbols=[SymbolInfo(s) for s in symbols],
    )
    return Scanner(ctx)


class TestScanCycle:
    def test_setup_opens_position(self):
        sc = scanner()
        res = asyncio.run(sc.scan_cycle(NOW))
        assert [e.state for e in res.events] == [SetupState.TRIGGERED]
        assert len(res.opened) == 1
        assert res.opened[0].symbol == "SOLUSDT"
        assert res.skipped == []
        assert sc.cycles == 1

    def test_forming_candle_ignored(self):
        sc = scanner()
        # last candle still open: the cycle sees the 102.4 bar as latest, RSI above 30
        res = asyncio.run(sc.scan_cycle(NOW - 1))
        assert [e.state for e in res.events] == [SetupState.WATCHING]
        assert res.opened == []

    def test_network_error_skips_symbol(self):
        client = FakeClient(fail={"ADAUSDT": TransientNetworkError("reset")})
        sc = scanner(client, symbols=("ADAUSDT", "SOLUSDT"))
        res = asyncio.run(sc.scan_cycle(NOW))
        assert res.skipped == ["ADAUSDT"]
        assert [p.symbol for p in res.opened] == ["SOLUSDT"]

    def test_unexpected_error_skips_symbol(self):
        client = FakeClient(fail={"ADAUSDT": RuntimeError("decode")})
        sc = scanner(client, symbols=("ADAUSDT", "SOLUSDT"))
        res = asyncio.run(sc.scan_cycle(NOW))
        assert res.skipped == ["ADAUSDT"]
        assert [p.symbol for p in res.opened] == ["SOLUSDT"]

    def test_invariant_violation_propagates(self):
        client = FakeClient(fail={"ADAUSDT": InvariantViolation("broken")})
        sc = scanner(client, symbols=("ADAUSDT", "SOLUSDT"))
        with pytest.raises(InvariantViolation):
            asyncio.run(sc.scan_cycle(NOW))

    def test_htf_candles_cached(self):
        client = FakeClient()
        sc = scanner(client)
        asyncio.run(sc.scan_cycle(NOW))
        asyncio.run(sc.scan_cycle(NOW))
        assert client.calls.count(("SOLUSDT", "1h")) == 1
        assert client.calls.count(("SOLUSDT", "5m")) == 2

    def test_summary(self):
        sc = scanner()
        asyncio.run(sc.scan_cycle(NOW))
        ((bot_id, equity, open_n, closed_n),) = sc.summary()
        assert bot_id == "trend"
        assert equity == pytest.approx(2000.0)
        assert open_n == 1
        assert closed_n == 0


class TestRefresh:
    def test_universe_updates_tiers(self):
        sc = scanner()
        syms = asyncio.run(sc.refresh_universe())
        assert [s.symbol for s in syms] == ["SOLUSDT", "ADAUSDT"]
        assert sc.ctx.detector.tiers.classify_tier("SOLUSDT") == "midcap"

    def test_btc_bias(self):
        sc = scanner()
        assert asyncio.run(sc.refresh_btc_bias()) == STRONG_LONG

    def test_btc_bias_partial_data(self):
        sc = scanner(FakeClient(btc_fail={"5m"}))
        assert asyncio.run(sc.refresh_btc_bias()) == LONG_BIAS

    def test_btc_bias_unchanged_when_all_fail(self):
        sc = scanner(FakeClient(btc_fail={"4h", "1h", "15m", "5m"}))
        assert asyncio.run(sc.refresh_btc_bias()) == NEUTRAL_BIAS


class TestLiveStops:
    """Cycles run on wall-clock time, a few seconds after each candle close."""

    def test_next_candle_wick_hits_stop(self):
        client = FakeClient()
        sc = scanner(client)
        first = asyncio.run(sc.scan_cycle(NOW + 30_000))
        (pos,) = first.opened
        assert pos.entry_time == NOW
        assert pos.current_stop_loss_price == pytest.approx(101.6 * 0.98)

        client.extra = [Candle(timestamp=NOW, open=101.6, high=101.6, low=95.0, close=101.0, volume=1000.0)]
        second = asyncio.run(sc.scan_cycle(NOW + TF_5M + 30_000))
        assert [p.exit_reason for p in second.closed] == [ExitReason.INITIAL_STOP]
        assert second.closed[0].exit_price == pytest.approx(101.6 * 0.98)
        assert second.closed[0].exit_time == NOW

    def test_same_candle_seen_twice_keeps_position(self):
        sc = scanner()
        asyncio.run(sc.scan_cycle(NOW + 10_000))
        res = asyncio.run(sc.scan_cycle(NOW + 20_000))
        assert res.closed == []
        assert list(sc.ctx.bots[0].engine.positions) == ["SOLUSDT-5m"]
