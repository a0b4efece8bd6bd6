import pytest

import indicators as ind
from conftest import T0, TF_5M, make_candles


class TestRSI:
    def test_too_few_candles(self):
        assert ind.compute_rsi(make_candles([1.0] * 14), 14) == []
        assert len(ind.compute_rsi(make_candles([1.0] * 15), 14)) == 1

    def test_one_value_per_candle_from_period(self):
        candles = make_candles([100 + (i % 3) for i in range(40)])
        rsi = ind.compute_rsi(candles, 14)
        assert len(rsi) == 40 - 14
        assert [r.timestamp for r in rsi] == [c.timestamp for c in candles[14:]]

    def test_wilder_smoothing(self):
        rsi = ind.compute_rsi(make_candles([1.0, 2.0, 1.0, 2.0]), 2)
        assert [round(r.value, 6) for r in rsi] == [50.0, 75.0]

    def test_zero_loss_is_capped_not_100(self):
        rsi = ind.compute_rsi(make_candles([100.0 + i for i in range(30)]), 14)
        assert rsi[-1].value == pytest.approx(100.0 - 100.0 / 101.0)
        assert rsi[-1].value < 100.0

    def test_flat_series_uses_cap_too(self):
        rsi = ind.compute_rsi(make_candles([5.0] * 20), 14)
        assert all(r.value == pytest.approx(99.0099, abs=1e-4) for r in rsi)

    def test_zero_gain_is_zero(self):
        rsi = ind.compute_rsi(make_candles([100.0 - i for i in range(30)]), 14)
        assert rsi[-1].value == 0.0

    def test_values_in_range(self):
        closes = [100 + ((i * 7) % 11) - 5 for i in range(120)]
        for r in ind.compute_rsi(make_candles(closes), 14):
            assert 0.0 <= r.value <= 100.0

    def test_current_rsi(self):
        assert ind.current_rsi(make_candles([1.0] * 5)) is None
        assert ind.current_rsi(make_candles([1.0, 2.0, 1.0, 2.0]), 2) == pytest.approx(75.0)


class TestAverages:
    def test_sma(self):
        assert ind.sma([1, 2, 3, 4], 2) == [1.5, 2.5, 3.5]
        assert ind.sma([1, 2], 3) == []

    def test_avg_volume_window(self):
        candles = make_candles([1.0] * 4)
        assert ind.avg_volume(candles) == pytest.approx(1000.0)
        assert ind.avg_volume([]) == 0.0


class TestImpulse:
    def test_up_impulse(self):
        candles = make_candles([100.0] * 45 + [106.0] * 5)
        imp = ind.detect_impulse(candles, 5.0, 50)
        assert imp is not None
        assert imp.direction == "up"
        assert imp.percent_move == pytest.approx(6.0)
        assert imp.start_index < imp.end_index == 45

    def test_down_impulse_measured_from_high(self):
        candles = make_candles([100.0] * 45 + [90.0] * 5)
        imp = ind.detect_impulse(candles, 5.0, 50)
        assert imp is not None
        assert imp.direction == "down"
        assert imp.percent_move == pytest.approx(10.0)

    def test_small_move_ignored(self):
        candles = make_candles([100.0] * 45 + [103.0] * 5)
        assert ind.detect_impulse(candles, 5.0, 50) is None

    def test_needs_full_lookback(self):
        assert ind.detect_impulse(make_candles([100.0, 110.0]), 5.0, 50) is None

    def test_indices_are_absolute(self):
        candles = make_candles([100.0] * 70 + [106.0] * 10)
        imp = ind.detect_impulse(candles, 5.0, 50)
        assert imp is not None
        assert candles[imp.end_index].high == pytest.approx(106.0)
        assert imp.end_index == 70

    def test_first_extreme_wins_on_ties(self):
        candles = make_candles([1.0, 3.0, 2.0, 3.0])
        price, idx, ts = ind.highest_high(candles)
        assert (price, idx, ts) == (3.0, 1, T0 + TF_5M)


class TestStructure:
    def test_swings_are_strict(self):
        vals = [1, 2, 5, 2, 1, 2, 5, 5, 2, 1]
        ts = list(range(len(vals)))
        highs = ind.find_swing_highs(vals, ts, 2)
        assert [p.index for p in highs] == [2]

    def test_swing_lows(self):
        vals = [5, 4, 1, 4, 5, 4, 2, 4, 5]
        lows = ind.find_swing_lows(vals, list(range(len(vals))), 2)
        assert [p.value for p in lows] == [1, 2]

    def test_pullback_low_after_impulse(self):
        candles = make_candles([100.0, 106.0, 104.0, 103.0, 105.0])
        found = ind.find_pullback_low(candles, 1)
        assert found is not None
        price, idx, _ = found
        assert price == pytest.approx(103.0)
        assert idx == 3

    def test_no_pullback_at_last_candle(self):
        candles = make_candles([100.0, 106.0])
        assert ind.find_pullback_low(candles, 1) is None

    def test_structure_stop_buffer(self):
        assert ind.structure_stop("long", 100.0, None) == pytest.approx(99.5)
        assert ind.structure_stop("short", None, 100.0) == pytest.approx(100.5)
        assert ind.structure_stop("long", None, 100.0) is None


class TestSignals:
    def test_higher_tf_bullish(self):
        assert ind.is_higher_tf_bullish(make_candles([100.0] * 19 + [110.0]), 20)
        assert not ind.is_higher_tf_bullish(make_candles([100.0] * 19 + [90.0]), 20)
        assert not ind.is_higher_tf_bullish(make_candles([100.0] * 5), 20)

    def test_rsi_sma_signal(self):
        falling = ind.compute_rsi(make_candles([100.0] * 30 + [100.0 - i for i in range(1, 6)]), 14)
        rising = ind.compute_rsi(make_candles([100.0 - i for i in range(30)] + [71.0 + 2 * i for i in range(1, 6)]), 14)
        assert ind.rsi_sma_signal(falling, 9) == "bearish"
        assert ind.rsi_sma_signal(rising, 9) == "bullish"
        assert ind.rsi_sma_signal(rising[:3], 9) == "neutral"

    def test_rsi_trend(self):
        candles = make_candles([100.0, 101.0] * 10 + [99.0, 97.0, 94.0, 90.0])
        assert ind.rsi_trend(ind.compute_rsi(candles, 14), 3) == "dropping"

    def test_volume_contracting(self):
        hi = make_candles([1.0] * 3, volume=1000.0)
        lo = make_candles([1.0] * 3, volume=500.0)
        assert ind.is_volume_contracting(hi, lo)
        assert not ind.is_volume_contracting(lo, hi)
        assert not ind.is_volume_contracting([], lo)

    def test_price_change_pct(self):
        candles = make_candles([100.0, 101.0, 110.0])
        assert ind.price_change_pct(candles, 2) == pytest.approx(10.0)
        assert ind.price_change_pct(candles, 5) is None
