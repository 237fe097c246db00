import numpy as np
import pytest

from barflow.backtester import position_size, round_step


class TestRoundStep:

    def test_rounds_down(self):
        assert round_step(1.23456, 0.01) == pytest.approx(1.23)
        assert round_step(0.0199, 0.01) == pytest.approx(0.01)

    def test_exact_multiple_is_kept(self):
        assert round_step(50.0, 0.001) == pytest.approx(50.0)


class TestPositionSize:

    def test_risk_based_quantity(self):
        assert position_size(10_000, 100.0, 98.0, risk_fraction=0.01) == pytest.approx(50.0)

    def test_short_uses_absolute_distance(self):
        assert position_size(10_000, 100.0, 102.0, risk_fraction=0.01) == pytest.approx(50.0)

    def test_leverage_cap(self):
        # 100 risk / 0.1 distance = 1000 units, but 2x leverage allows 200
        assert position_size(10_000, 100.0, 99.9, risk_fraction=0.01) == pytest.approx(200.0)

    def test_below_min_qty_returns_zero(self):
        assert position_size(1.0, 100.0, 50.0, risk_fraction=0.01, min_qty=0.001) == 0.0

    def test_degenerate_stop_returns_zero(self):
        assert position_size(10_000, 100.0, 100.0) == 0.0
        assert position_size(10_000, 100.0, float("nan")) == 0.0

    def test_realised_risk_never_exceeds_budget(self):
        equity, entry, stop = 10_000.0, 101.37, 99.91
        qty = position_size(equity, entry, stop, risk_fraction=0.01, qty_step=0.01)
        assert qty > 0
        assert qty * abs(entry - stop) <= equity * 0.01 + 1e-9

    @pytest.mark.parametrize("qty_step", [0.001, 0.01, 1.0])
    def test_monotone_in_stop_distance_and_on_lot_grid(self, qty_step):
        distances = np.linspace(0.01, 20.0, 400)
        sizes = [position_size(10_000, 100.0, 100.0 - d, risk_fraction=0.01, qty_step=qty_step)
                 for d in distances]
        for wider, tighter in zip(sizes[1:], sizes[:-1]):
            assert wider <= tighter
        for q in sizes:
            lots = q / qty_step
            assert lots == pytest.approx(round(lots), abs=1e-6)
