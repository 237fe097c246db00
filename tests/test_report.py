import os

import pandas as pd
import pytest

from barflow.backtester import ClosedLeg, ExitReason, RunContext, Side, export_trades_csv, legs_to_dataframe
from barflow.backtester.report import TRADE_LOG_COLUMNS
from barflow.timeutils import eastern_day_keys, eod_mask, is_eod_bar, iso_utc

from conftest import BASE_TIME, MINUTE


def sample_leg(**overrides):
    fields = dict(
        side=Side.LONG,
        entry=100.0,
        entry_fill=100.0125,
        stop=98.0,
        take_profit=104.0,
        size=25.0,
        open_time=BASE_TIME,
        exit_price=101.987254321,
        exit_time=BASE_TIME + 3 * MINUTE,
        reason=ExitReason.SCALE,
        pnl=44.318123,
        init_risk=2.0,
        mfe_r=1.2504,
        mae_r=-0.10004,
        entry_atr=0.4567891234,
    )
    fields.update(overrides)
    return ClosedLeg(**fields)


class TestTradeLog:

    def test_columns_and_values(self):
        df = legs_to_dataframe([sample_leg()])
        assert list(df.columns) == TRADE_LOG_COLUMNS
        row = df.iloc[0]
        assert row["time_open"] == "2024-01-02T14:30:00.000Z"
        assert row["time_close"] == "2024-01-02T14:33:00.000Z"
        assert row["side"] == "long"
        assert row["reason"] == "SCALE"
        assert row["r"] == pytest.approx((101.987254321 - 100.0125) / 2.0)
        assert pd.isna(row["exit_atr"])

    def test_empty(self):
        df = legs_to_dataframe([])
        assert df.empty
        assert list(df.columns) == TRADE_LOG_COLUMNS

    def test_export_rounds_and_names_file(self, tmp_path):
        out_dir = tmp_path / "out"
        path = export_trades_csv([sample_leg()], str(out_dir), "SPY", "5m", "60d")
        assert os.path.basename(path) == "trades-SPY-5m-60d.csv"
        df = pd.read_csv(path)
        assert df.loc[0, "exit"] == pytest.approx(101.987254)
        assert df.loc[0, "pnl"] == pytest.approx(44.32)
        assert df.loc[0, "mfe_r"] == pytest.approx(1.25)
        assert df.loc[0, "entry_atr"] == pytest.approx(0.456789)


class TestCalendar:

    def test_iso_utc(self):
        assert iso_utc(BASE_TIME + 123) == "2024-01-02T14:30:00.123Z"

    def test_eod_in_winter_and_summer(self):
        winter_close = 1704229200000  # 2024-01-02 21:00 UTC == 16:00 EST
        summer_close = 1719950400000  # 2024-07-02 20:00 UTC == 16:00 EDT
        assert is_eod_bar(winter_close)
        assert not is_eod_bar(winter_close - MINUTE)
        assert is_eod_bar(summer_close)
        assert not is_eod_bar(summer_close - MINUTE)
        assert list(eod_mask([winter_close - MINUTE, winter_close])) == [False, True]

    def test_eastern_day_keys_split_at_local_midnight(self):
        # 2024-01-03 04:30 UTC is still 2024-01-02 in New York
        keys = eastern_day_keys([BASE_TIME, BASE_TIME + 14 * 60 * MINUTE, BASE_TIME + 15 * 60 * MINUTE])
        assert keys[0] == keys[1]
        assert keys[1] != keys[2]


class TestRunContext:

    def test_counts_and_logger_name(self):
        ctx = RunContext(symbol="ES")
        ctx.note("no_sweep")
        ctx.note("no_sweep", 2)
        ctx.note("late")
        assert ctx.snapshot() == {"no_sweep": 3, "late": 1}
        assert ctx.logger.name == "barflow.run.ES"
        assert RunContext().logger.name == "barflow.run"
