import math

import numpy as np
import pandas as pd
import polars as pl
import pytest

from barflow.backtester import Bar
from barflow.data import bars_from_frame, estimate_bar_ms, parse_period_ms, sanitize_bars
from barflow.exceptions import InvalidPeriod
from barflow.indicators import atr, true_range

from conftest import BASE_TIME, MINUTE, flat_bars, make_bar

DAY_MS = 24 * 60 * MINUTE


class TestParsePeriod:

    @pytest.mark.parametrize("period, expected", [
        ("30m", 30 * MINUTE),
        ("2h", 2 * 60 * MINUTE),
        ("5d", 5 * DAY_MS),
        ("60D", 60 * DAY_MS),
        ("1w", 7 * DAY_MS),
        ("1y", round(365.25 * DAY_MS)),
    ])
    def test_units(self, period, expected):
        assert parse_period_ms(period) == expected

    @pytest.mark.parametrize("period", ["", "d5", "5", "1.5d", "5s"])
    def test_invalid(self, period):
        with pytest.raises(InvalidPeriod):
            parse_period_ms(period)


class TestSanitize:

    def test_drops_non_finite_dedupes_and_sorts(self):
        bars = [
            make_bar(2, 1, 1, 1, 1),
            make_bar(0, 1, 1, 1, 1),
            make_bar(1, 1, 1, 1, 1),
            make_bar(1, 2, 2, 2, 2),
            Bar(time=BASE_TIME + 3 * MINUTE, open=1, high=math.nan, low=1, close=1),
        ]
        clean = sanitize_bars(bars)
        assert [b.time for b in clean] == [BASE_TIME, BASE_TIME + MINUTE, BASE_TIME + 2 * MINUTE]
        assert clean[1].close == 2


class TestFrames:

    def test_pandas_case_insensitive_columns(self):
        df = pd.DataFrame({
            "Time": [BASE_TIME + MINUTE, BASE_TIME],
            "Open": [1.0, 2.0],
            "High": [1.5, 2.5],
            "Low": [0.5, 1.5],
            "Close": [1.2, 2.2],
            "Volume": [10.0, None],
        })
        bars = bars_from_frame(df)
        assert [b.time for b in bars] == [BASE_TIME, BASE_TIME + MINUTE]
        assert bars[0].close == 2.2
        assert bars[0].volume == 0.0
        assert bars[1].volume == 10.0

    def test_datetime_time_column(self):
        df = pd.DataFrame({
            "time": pd.date_range("2024-01-02 14:30", periods=3, freq="min"),
            "open": [1.0] * 3, "high": [1.0] * 3, "low": [1.0] * 3, "close": [1.0] * 3,
        })
        assert [b.time for b in bars_from_frame(df)] == [BASE_TIME + i * MINUTE for i in range(3)]

    def test_polars_frame(self):
        df = pl.DataFrame({
            "time": [BASE_TIME, BASE_TIME + MINUTE],
            "open": [1.0, 2.0], "high": [1.0, 2.0], "low": [1.0, 2.0], "close": [1.0, 2.0],
        })
        assert len(bars_from_frame(df)) == 2

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing required columns"):
            bars_from_frame(pd.DataFrame({"time": [0], "open": [1.0]}))

    def test_rejects_non_frames(self):
        with pytest.raises(ValueError):
            bars_from_frame([{"time": 0}])


class TestEstimateBarMs:

    def test_short_series_falls_back_to_five_minutes(self):
        assert estimate_bar_ms(flat_bars(10)) == 5 * MINUTE

    def test_median_delta(self):
        assert estimate_bar_ms(flat_bars(100)) == MINUTE

    def test_clamped(self):
        seconds = [make_bar(i, 1, 1, 1, 1, step=1000) for i in range(100)]
        hours = [make_bar(i, 1, 1, 1, 1, step=2 * 60 * MINUTE) for i in range(100)]
        assert estimate_bar_ms(seconds) == MINUTE
        assert estimate_bar_ms(hours) == 60 * MINUTE


class TestATR:

    def test_true_range_uses_previous_close(self):
        bars = [make_bar(0, 10, 11, 9, 10), make_bar(1, 13, 14, 12, 13)]
        assert list(true_range(bars)) == [2.0, 4.0]

    def test_wilder_smoothing(self):
        bars = [make_bar(i, 10, 11, 9, 10) for i in range(4)]
        bars.append(make_bar(4, 10, 12, 8, 10))
        out = atr(bars, period=3)
        assert np.isnan(out[:2]).all()
        assert out[2] == pytest.approx(2.0)
        assert out[3] == pytest.approx(2.0)
        assert out[4] == pytest.approx((2.0 * 2 + 4.0) / 3)

    def test_short_series_all_nan(self):
        assert np.isnan(atr(flat_bars(5), period=14)).all()
