"""
Bar-level exit rules.

The engine never sees the path price takes inside a bar, so whether a stop
or a target was touched is decided from the bar's OHLC alone:

* ``intrabar`` mode tests ``high``/``low``.  When a single bar spans both
  the stop and the target ("double touch") the ``tie_break`` knob decides:
  ``pessimistic`` assumes the stop came first, ``optimistic`` the target.
* ``close`` mode tests the close only.

Example
-------
>>> bar = Bar(time=0, open=100, high=105, low=97, close=101)
>>> oco_exit_check(Side.LONG, stop=98, tp=104, bar=bar).hit
<ExitReason.STOP_LOSS: 'SL'>
>>> oco_exit_check(Side.LONG, stop=98, tp=104, bar=bar, tie_break="optimistic").hit
<ExitReason.TAKE_PROFIT: 'TP'>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from barflow.backtester.models import Bar, ExitReason, Side


@dataclass(frozen=True, slots=True)
class ExitCheck:
    """
    Result of ``oco_exit_check``.

    ``hit`` is ``None`` when neither level was touched; otherwise ``px`` is
    the level (stop or target) to fill at, before slippage.
    """
    hit: Optional[ExitReason] = None
    px: Optional[float] = None


_NO_EXIT = ExitCheck()


def oco_exit_check(
    side: Side,
    stop: float,
    tp: float,
    bar: Bar,
    mode: str = "intrabar",
    tie_break: str = "pessimistic",
) -> ExitCheck:
    """Decide whether ``bar`` hit the stop or the target of a position on ``side``."""
    if mode == "close":
        px = bar.close
        if side is Side.LONG:
            if px <= stop:
                return ExitCheck(ExitReason.STOP_LOSS, stop)
            if px >= tp:
                return ExitCheck(ExitReason.TAKE_PROFIT, tp)
        else:
            if px >= stop:
                return ExitCheck(ExitReason.STOP_LOSS, stop)
            if px <= tp:
                return ExitCheck(ExitReason.TAKE_PROFIT, tp)
        return _NO_EXIT

    if side is Side.LONG:
        hit_sl = bar.low <= stop
        hit_tp = bar.high >= tp
    else:
        hit_sl = bar.high >= stop
        hit_tp = bar.low <= tp

    if hit_sl and hit_tp:
        if tie_break == "optimistic":
            return ExitCheck(ExitReason.TAKE_PROFIT, tp)
        return ExitCheck(ExitReason.STOP_LOSS, stop)
    if hit_sl:
        return ExitCheck(ExitReason.STOP_LOSS, stop)
    if hit_tp:
        return ExitCheck(ExitReason.TAKE_PROFIT, tp)
    return _NO_EXIT


def touched_limit(side: Side, limit_px: float, bar: Bar, mode: str = "intrabar") -> bool:
    """Would a resting entry limit at ``limit_px`` have filled during ``bar``?"""
    if mode == "close":
        return bar.close <= limit_px if side is Side.LONG else bar.close >= limit_px
    return bar.low <= limit_px if side is Side.LONG else bar.high >= limit_px


def touched_level(side: Side, level: float, bar: Bar, mode: str = "intrabar") -> bool:
    """Did price trade through a favourable ``level`` (scale-out / add trigger)?"""
    if side is Side.LONG:
        return (bar.high if mode == "intrabar" else bar.close) >= level
    return (bar.low if mode == "intrabar" else bar.close) <= level


def clamp_stop(market_price: float, proposed_stop: float, side: Side, eps_bps: float = 0.25) -> float:
    """
    Keep a stop at least ``eps_bps`` basis points on the losing side of
    ``market_price``, so a stop move can never land on or through the market.
    """
    eps = market_price * eps_bps / 10_000
    if side is Side.LONG:
        return min(proposed_stop, market_price - eps)
    return max(proposed_stop, market_price + eps)
