import pytest

from barflow.backtester import FillKind, FillModel, Side, apply_fill


class TestApplyFill:

    def test_limit_fill_uses_quarter_slippage(self):
        fill = apply_fill(100.0, "long", slippage_bps=2.0, fee_bps=1.0, kind="limit")
        assert fill.price == pytest.approx(100.005)
        assert fill.fee == pytest.approx(1e-4 * 100.005)

    def test_market_sell_fills_lower(self):
        fill = apply_fill(100.0, Side.SHORT, slippage_bps=10.0, kind=FillKind.MARKET)
        assert fill.price == pytest.approx(99.9)
        assert fill.fee == 0.0

    def test_stop_fill_uses_extra_slippage(self):
        fill = apply_fill(100.0, Side.LONG, slippage_bps=10.0, kind=FillKind.STOP)
        assert fill.price == pytest.approx(100.125)

    def test_zero_costs_fill_at_price(self):
        fill = apply_fill(123.45, Side.SHORT)
        assert fill.price == 123.45
        assert fill.fee == 0.0

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            apply_fill(100.0, Side.LONG, kind="iceberg")


class TestFillModel:

    def test_entry_and_exit_slip_against_trader(self):
        fm = FillModel(slippage_bps=10.0, fee_bps=0.0)
        assert fm.entry(100.0, Side.LONG, FillKind.MARKET).price == pytest.approx(100.1)
        assert fm.exit(100.0, Side.LONG, FillKind.MARKET).price == pytest.approx(99.9)
        assert fm.entry(100.0, Side.SHORT, FillKind.MARKET).price == pytest.approx(99.9)
        assert fm.exit(100.0, Side.SHORT, FillKind.MARKET).price == pytest.approx(100.1)

    def test_fee_is_per_unit_on_filled_price(self):
        fm = FillModel(slippage_bps=0.0, fee_bps=10.0)
        assert fm.exit(250.0, Side.SHORT, FillKind.LIMIT).fee == pytest.approx(0.25)
