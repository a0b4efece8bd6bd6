import pytest

from conftest import T0, make_candles, make_setup
from execution_costs import zero_costs
from policies.base import (
    LONG_BIAS,
    NEUTRAL_BIAS,
    SHORT_BIAS,
    STRONG_LONG,
    STRONG_SHORT,
    Bot,
    PolicyContext,
    compute_btc_bias,
)
from policies.confluence import ConfluencePolicy
from policies.fade import FadePolicy
from policies.macro_bias import MacroBiasPolicy
from policies.registry import DEFAULT_BOTS, build_bots
from policies.trend_follow import TrendFollowPolicy
from screener_types import FUTURES, LONG, SHORT, Candle, ExitReason, SetupEvent, SetupState

MIN = 60 * 1000


class RecordingSink:
    def __init__(self):
        self.opens = []
        self.closes = []

    def log_open(self, bot_id, pos, setup=None):
        self.opens.append((bot_id, pos.id))

    def log_close(self, bot_id, pos):
        self.closes.append((bot_id, pos.id, pos.exit_reason))


def event(setup, prev=SetupState.WATCHING):
    return SetupEvent(setup=setup, prev_state=prev)


def played_out(**kw):
    kw.setdefault("ts", T0 + 5 * MIN)
    return make_setup(state=SetupState.PLAYED_OUT, **kw)


def ctx(setups=(), bias=NEUTRAL_BIAS, now=T0):
    return PolicyContext.from_setups(list(setups), bias, now)


class TestContext:
    def test_only_actionable_setups_count(self):
        c = ctx([
            make_setup(timeframe="5m"),
            make_setup(timeframe="15m", state=SetupState.DEEP_EXTREME),
            make_setup(timeframe="1h", state=SetupState.WATCHING),
        ])
        assert c.timeframes_for("SOLUSDT", LONG) == ["5m", "15m"]
        assert c.timeframes_for("SOLUSDT", SHORT) == []


class TestTrendFollow:
    def test_enters_setup_direction(self):
        p = TrendFollowPolicy()
        assert p.should_act(make_setup(), ctx()) == LONG
        assert p.should_act(make_setup(state=SetupState.WATCHING), ctx()) is None
        assert p.should_act(make_setup(state=SetupState.REVERSING), ctx()) is None

    def test_htf_and_futures_filters(self):
        s = make_setup()
        s.htf_confirmed = False
        assert TrendFollowPolicy(require_htf_confirmation=True).should_act(s, ctx()) is None
        assert TrendFollowPolicy(futures_only=True).should_act(make_setup(), ctx()) is None
        assert TrendFollowPolicy(futures_only=True).should_act(make_setup(market_type=FUTURES), ctx()) == LONG


class TestFade:
    def test_opposite_direction_futures_only(self):
        p = FadePolicy()
        assert p.should_act(make_setup(), ctx()) is None
        assert p.should_act(make_setup(market_type=FUTURES), ctx()) == SHORT
        assert p.should_act(make_setup(market_type=FUTURES, direction=SHORT), ctx()) == LONG


class TestMacroBias:
    def test_trades_with_btc_against_setup(self):
        p = MacroBiasPolicy()
        assert p.should_act(make_setup(direction=LONG), ctx(bias=SHORT_BIAS)) == SHORT
        assert p.should_act(make_setup(direction=LONG), ctx(bias=STRONG_SHORT)) == SHORT
        assert p.should_act(make_setup(direction=SHORT), ctx(bias=STRONG_LONG)) == LONG
        assert p.should_act(make_setup(direction=LONG), ctx(bias=LONG_BIAS)) is None
        assert p.should_act(make_setup(direction=LONG), ctx(bias=NEUTRAL_BIAS)) is None

    def test_skips_multi_timeframe_setups(self):
        p = MacroBiasPolicy()
        c = ctx([make_setup(timeframe="5m"), make_setup(timeframe="15m")], bias=SHORT_BIAS)
        assert p.should_act(make_setup(timeframe="5m"), c) is None


class TestConfluence:
    def test_needs_required_and_confirming(self):
        p = ConfluencePolicy()
        assert p.should_act(make_setup(timeframe="5m"), ctx(now=T0)) is None
        assert p.should_act(make_setup(timeframe="15m"), ctx(now=T0 + 2 * MIN)) == LONG

    def test_confirming_first_then_required(self):
        p = ConfluencePolicy()
        assert p.should_act(make_setup(timeframe="1h"), ctx(now=T0)) is None
        assert p.should_act(make_setup(timeframe="5m"), ctx(now=T0 + MIN)) == LONG

    def test_window_expires(self):
        p = ConfluencePolicy()
        assert p.should_act(make_setup(timeframe="5m"), ctx(now=T0)) is None
        assert p.should_act(make_setup(timeframe="15m"), ctx(now=T0 + 10 * MIN)) is None
        assert p.triggers[("SOLUSDT", LONG)] == {"15m": T0 + 10 * MIN}

    def test_other_timeframes_ignored(self):
        p = ConfluencePolicy()
        assert p.should_act(make_setup(timeframe="4h"), ctx()) is None
        assert p.triggers == {}

    def test_one_position_per_symbol(self):
        bot = Bot("confluence", ConfluencePolicy(), costs=zero_costs())
        assert bot.on_event(event(make_setup(timeframe="5m")), ctx(now=T0)) is None
        pos = bot.on_event(event(make_setup(timeframe="15m")), ctx(now=T0 + MIN))
        assert pos is not None
        assert pos.key == "SOLUSDT"
        assert pos.leverage == 20.0
        assert bot.on_event(event(make_setup(timeframe="1h")), ctx(now=T0 + 2 * MIN)) is None


class TestBot:
    def test_open_logs_and_tags(self):
        sink = RecordingSink()
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs(), sink=sink)
        pos = bot.on_event(event(make_setup()), ctx(bias=LONG_BIAS))
        assert pos.meta["signal_direction"] == LONG
        assert pos.meta["btc_bias"] == LONG_BIAS
        assert sink.opens == [("trend", pos.id)]

    def test_entry_time_is_trigger_candle_close(self):
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs())
        # wall-clock context time, a few seconds after the close
        pos = bot.on_event(event(make_setup(timeframe="15m")), ctx(now=T0 + 15 * MIN + 7_000))
        assert pos.entry_time == T0 + 15 * MIN
        assert pos.last_update == T0 + 15 * MIN

    def test_duplicate_signal_no_second_position(self):
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs())
        assert bot.on_event(event(make_setup()), ctx()) is not None
        assert bot.on_event(event(make_setup(state=SetupState.DEEP_EXTREME), SetupState.TRIGGERED), ctx()) is None
        assert len(bot.engine.positions) == 1

    def test_played_out_closes(self):
        sink = RecordingSink()
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs(), sink=sink)
        bot.on_event(event(make_setup(price=100.0)), ctx())
        closed = bot.on_event(event(played_out(price=101.0), SetupState.REVERSING), ctx())
        assert closed.exit_reason == ExitReason.PLAYED_OUT
        assert closed.exit_price == pytest.approx(101.0)
        assert sink.closes[-1][2] == ExitReason.PLAYED_OUT

    def test_played_out_other_direction_keeps_position(self):
        bot = Bot("fade", FadePolicy(), costs=zero_costs())
        pos = bot.on_event(event(make_setup(market_type=FUTURES)), ctx())
        assert pos.direction == SHORT
        assert bot.on_event(event(played_out(direction=SHORT, market_type=FUTURES)), ctx()) is None
        closed = bot.on_event(event(played_out(direction=LONG, market_type=FUTURES)), ctx())
        assert closed.exit_reason == ExitReason.PLAYED_OUT

    def test_macro_bias_ignores_played_out(self):
        bot = Bot("macro", MacroBiasPolicy(), costs=zero_costs())
        assert bot.on_event(event(make_setup()), ctx(bias=SHORT_BIAS)) is not None
        assert bot.on_event(event(played_out()), ctx()) is None
        assert len(bot.engine.positions) == 1

    def test_candle_hits_stop(self):
        sink = RecordingSink()
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs(), sink=sink)
        bot.on_event(event(make_setup(price=100.0)), ctx())
        c = Candle(timestamp=T0 + 5 * MIN, open=100.0, high=100.2, low=97.0, close=99.0)
        closed = bot.on_candle("SOLUSDT", "5m", c)
        assert closed.exit_reason == ExitReason.INITIAL_STOP
        assert sink.closes == [("trend", closed.id, ExitReason.INITIAL_STOP)]

    def test_candle_for_other_key(self):
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs())
        bot.on_event(event(make_setup()), ctx())
        c = Candle(timestamp=T0 + 5 * MIN, open=1.0, high=1.0, low=1.0, close=1.0)
        assert bot.on_candle("SOLUSDT", "15m", c) is None
        assert bot.on_candle("ADAUSDT", "5m", c) is None

    def test_finish(self):
        bot = Bot("trend", TrendFollowPolicy(), costs=zero_costs())
        bot.on_event(event(make_setup(symbol="A")), ctx())
        bot.on_event(event(make_setup(symbol="B")), ctx())
        out = bot.finish(ExitReason.END_OF_DATA, T0 + 10 * MIN)
        assert {p.symbol for p in out} == {"A", "B"}
        assert bot.engine.positions == {}


def _rising(n=55):
    return make_candles([200.0 - i for i in range(n - 5)] + [151.0 + 2 * i for i in range(1, 6)])


def _falling(n=55):
    return make_candles([100.0] * (n - 5) + [100.0 - i for i in range(1, 6)])


class TestBtcBias:
    def test_all_bullish(self):
        tfs = {tf: _rising() for tf in ("4h", "1h", "15m", "5m")}
        assert compute_btc_bias(tfs) == STRONG_LONG

    def test_all_bearish(self):
        tfs = {tf: _falling() for tf in ("4h", "1h", "15m", "5m")}
        assert compute_btc_bias(tfs) == STRONG_SHORT

    def test_higher_timeframes_only(self):
        assert compute_btc_bias({"4h": _rising(), "1h": _rising(), "5m": _falling()}) == LONG_BIAS

    def test_weighted_vote(self):
        tfs = {"4h": _rising(), "1h": _falling(), "15m": _rising(), "5m": _rising()}
        assert compute_btc_bias(tfs) == LONG_BIAS
        tfs = {"4h": _falling(), "1h": _rising(), "15m": _falling(), "5m": _falling()}
        assert compute_btc_bias(tfs) == SHORT_BIAS

    def test_short_history_ignored(self):
        assert compute_btc_bias({"4h": _rising(20)}) == NEUTRAL_BIAS
        assert compute_btc_bias({}) == NEUTRAL_BIAS


class TestRegistry:
    def test_default_bots(self, monkeypatch):
        monkeypatch.delenv("BB_BOTS", raising=False)
        bots = build_bots(costs=zero_costs())
        assert [b.bot_id for b in bots] == list(DEFAULT_BOTS)

    def test_env_selection(self, monkeypatch):
        monkeypatch.setenv("BB_BOTS", "fade, confluence")
        assert [b.bot_id for b in build_bots()] == ["fade", "confluence"]

    def test_unknown_bot(self):
        with pytest.raises(ValueError):
            build_bots(enabled=["trend_1pct", "moonshot"])

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("BB_BOT_TREND_1PCT_LEVERAGE", "5")
        bot = build_bots(enabled=["trend_1pct"])[0]
        assert bot.engine.cfg.leverage == 5.0

    def test_bots_are_independent(self):
        a, b = build_bots(costs=zero_costs(), enabled=["trend_1pct", "trend_10pct"])
        a.on_event(event(make_setup()), ctx())
        assert len(a.engine.positions) == 1
        assert b.engine.positions == {}
        assert b.engine.cfg.position_size_percent == 10.0
