import math

import pytest

from barflow.backtester import ClosedLeg, EquitySample, ExitReason, Side, compute_metrics
from barflow.backtester.metrics import daily_returns, equity_from_legs

from conftest import BASE_TIME, MINUTE

DAY = 24 * 60 * MINUTE


def leg(pnl, i=0, reason=ExitReason.TAKE_PROFIT, side=Side.LONG, hold=5 * MINUTE,
        exit_price=104.0, init_risk=2.0):
    exit_time = BASE_TIME + (i + 1) * 10 * MINUTE
    return ClosedLeg(
        side=side,
        entry=100.0,
        entry_fill=100.0,
        stop=98.0,
        take_profit=104.0,
        size=1.0,
        open_time=exit_time - hold,
        exit_price=exit_price,
        exit_time=exit_time,
        reason=reason,
        pnl=pnl,
        init_risk=init_risk,
    )


def metrics(legs, start=10_000.0, final=None, n_bars=100, bar_ms=MINUTE, **kw):
    if final is None:
        final = start + sum(l.pnl for l in legs)
    return compute_metrics(legs, start, final, n_bars, bar_ms, **kw)


class TestZeroDivision:

    def test_no_trades(self):
        m = metrics([], n_bars=0)
        assert m.trades == 0
        assert m.win_rate == 0.0
        assert m.profit_factor == 0.0
        assert m.sharpe_per_trade == 0.0
        assert m.sortino_per_trade == 0.0
        assert m.calmar == 0.0
        assert m.exposure_pct == 0.0
        assert m.sharpe_daily == 0.0

    def test_only_winners(self):
        m = metrics([leg(100.0, 0), leg(200.0, 1)])
        assert m.profit_factor == math.inf
        assert m.sortino_per_trade == math.inf
        assert m.calmar == math.inf
        assert m.max_drawdown_pct == 0.0
        # returns 0.01 and 0.02: mean 0.015, population std 0.005
        assert m.sharpe_per_trade == pytest.approx(3.0)

    def test_single_loser(self):
        m = metrics([leg(-50.0, 0, reason=ExitReason.STOP_LOSS)])
        assert m.profit_factor == 0.0
        assert m.sharpe_per_trade == 0.0
        assert m.sortino_per_trade == 0.0
        assert m.calmar < 0


class TestDrawdown:

    def test_drawdown_and_calmar(self):
        legs = [leg(500.0, 0), leg(-700.0, 1, reason=ExitReason.STOP_LOSS), leg(1200.0, 2)]
        m = metrics(legs)
        assert m.max_drawdown_pct == pytest.approx(700 / 10_500)
        assert m.return_pct == pytest.approx(0.1)
        assert m.calmar == pytest.approx(0.1 / (700 / 10_500))
        assert m.profit_factor == pytest.approx(1700 / 700)
        assert m.win_rate == pytest.approx(2 / 3)

    def test_drawdown_uses_exit_order_and_scale_legs(self):
        legs = [
            leg(-300.0, 2, reason=ExitReason.STOP_LOSS),
            leg(300.0, 0, reason=ExitReason.SCALE),
        ]
        m = metrics(legs)
        # sorted: +300 then -300 from a 10300 peak
        assert m.max_drawdown_pct == pytest.approx(300 / 10_300)
        assert m.trades == 1


class TestPopulations:

    def test_scale_legs_only_count_at_leg_level(self):
        legs = [leg(50.0, 0, reason=ExitReason.SCALE), leg(-100.0, 1, reason=ExitReason.STOP_LOSS)]
        m = metrics(legs)
        assert m.trades == 1
        assert m.win_rate == 0.0
        assert m.profit_factor == 0.0
        assert m.profit_factor_leg == pytest.approx(0.5)
        assert m.win_rate_leg == pytest.approx(0.5)
        assert m.total_pnl == pytest.approx(-50.0)
        assert m.exit_reason_counts == {"SCALE": 1, "SL": 1}

    def test_streaks_reset_on_flat(self):
        pnls = [1, 1, 0, -1, -1, -1, 1]
        m = metrics([leg(float(p), i) for i, p in enumerate(pnls)])
        assert m.max_consec_wins == 2
        assert m.max_consec_losses == 3

    def test_r_multiples(self):
        legs = [
            leg(4.0, 0, exit_price=104.0),
            leg(-2.0, 1, exit_price=98.0, reason=ExitReason.STOP_LOSS),
            leg(0.0, 2, init_risk=0.0),
            leg(3.0, 3, side=Side.SHORT, exit_price=97.0),
        ]
        m = metrics(legs)
        assert m.total_r == pytest.approx(2.0 - 1.0 + 0.0 + 1.5)
        assert m.avg_r == pytest.approx(2.5 / 4)
        assert m.long_trades == 3
        assert m.short_trades == 1


class TestExposure:

    def test_exposure_and_hold_time(self):
        m = metrics([leg(1.0, 0, hold=5 * MINUTE)], n_bars=10)
        assert m.exposure_pct == pytest.approx(0.5)
        assert m.avg_hold_min == pytest.approx(5.0)

    def test_bar_count_rounds_half_up(self):
        m = metrics([leg(1.0, 0, hold=150_000)], n_bars=10)
        assert m.exposure_pct == pytest.approx(0.3)


class TestDailyReturns:

    def test_first_and_last_sample_per_utc_day(self):
        series = [
            EquitySample(BASE_TIME, 10_000.0),
            EquitySample(BASE_TIME + MINUTE, 10_050.0),
            EquitySample(BASE_TIME + 2 * MINUTE, 10_100.0),
            EquitySample(BASE_TIME + DAY, 10_100.0),
            EquitySample(BASE_TIME + DAY + MINUTE, 9_999.0),
        ]
        rets = daily_returns(series)
        assert list(rets) == pytest.approx([0.01, -0.01])

    def test_skips_non_positive_open(self):
        series = [EquitySample(BASE_TIME, 0.0), EquitySample(BASE_TIME + MINUTE, 10.0)]
        assert len(daily_returns(series)) == 0

    def test_daily_ratios_from_series(self):
        series = [
            EquitySample(BASE_TIME, 10_000.0),
            EquitySample(BASE_TIME + MINUTE, 10_100.0),
            EquitySample(BASE_TIME + DAY, 10_100.0),
            EquitySample(BASE_TIME + DAY + MINUTE, 9_898.0),
        ]
        m = metrics([], equity_series=series)
        # returns 0.01 and -0.02: mean -0.005, population std 0.015
        assert m.sharpe_daily == pytest.approx(-1 / 3)
        assert m.sortino_daily == 0.0

    def test_series_rebuilt_from_legs(self):
        legs = [leg(100.0, 0), leg(-50.0, 1, reason=ExitReason.STOP_LOSS)]
        series = equity_from_legs(legs, 10_000.0)
        assert [s.equity for s in series] == pytest.approx([10_000.0, 10_100.0, 10_050.0])
        assert series[0].time == legs[0].exit_time

    def test_inputs_untouched(self):
        legs = [leg(-300.0, 2, reason=ExitReason.STOP_LOSS), leg(300.0, 0)]
        snapshot = list(legs)
        metrics(legs)
        assert legs == snapshot


class TestExport:

    def test_to_dataframe_flattens_exit_counts(self):
        df = metrics([leg(100.0, 0), leg(-50.0, 1, reason=ExitReason.STOP_LOSS)]).to_dataframe()
        assert len(df) == 1
        assert df.loc[0, "exit_TP"] == 1
        assert df.loc[0, "exit_SL"] == 1
        assert "exit_reason_counts" not in df.columns
