"""Shared bar builders and configuration fixtures."""

import pytest

from barflow.backtester import BacktestConfig, Bar, EntryChaseConfig, Signal

# 2024-01-02 14:30 UTC == 09:30 New York (EST)
BASE_TIME = 1704205800000
MINUTE = 60_000


def make_bar(i, o, h, l, c, step=MINUTE):
    return Bar(time=BASE_TIME + i * step, open=o, high=h, low=l, close=c)


def flat_bars(n, price=100.0, half_range=0.5, start=0):
    """``n`` one-minute bars with open == close == ``price``."""
    return [
        make_bar(start + i, price, price + half_range, price - half_range, price)
        for i in range(n)
    ]


def once_at(length, **fields):
    """
    Signal callable that proposes ``Signal(**fields)`` only when the history
    reaches ``length`` bars, and records every history length it sees.
    """
    seen = []

    def signal(history, context):
        seen.append(len(history))
        if len(history) == length:
            return Signal(**fields)
        return None

    signal.seen = seen
    return signal


def always(**fields):
    """Signal callable that proposes the same setup on every request."""
    seen = []

    def signal(history, context):
        seen.append(len(history))
        return Signal(**fields)

    signal.seen = seen
    return signal


@pytest.fixture
def quiet_config():
    """No costs, no scale-out, no chase, no end-of-day flatten."""
    return BacktestConfig(
        slippage_bps=0.0,
        fee_bps=0.0,
        scale_out_at_r=0.0,
        flatten_at_close=False,
        entry_chase=EntryChaseConfig(enabled=False),
    )


@pytest.fixture
def long_setup():
    return dict(side="long", entry=100.0, stop=98.0, take_profit=104.0)
