"""
Post-trade performance analytics.

Computes performance statistics from the closed legs produced by the
backtesting engine.

Two populations are used:

* **completed positions**: every leg whose reason is not ``SCALE``, i.e.
  the final leg of each trade.  Win rate, profit factor, expectancy,
  R-multiples, per-trade Sharpe/Sortino, streaks, hold time and exposure
  are computed over these.
* **all legs**: partial exits included, sorted by exit time.  The leg
  profit factor, drawdown and Calmar are computed over these so that they
  reconcile with the realised equity curve.

Ratios that divide by zero return ``inf`` when the numerator is positive
and ``0.0`` otherwise.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import polars as pl

from barflow.backtester.models import ClosedLeg, EquitySample, Side
from barflow.configuration import DIV_FLOOR, MS_PER_MINUTE


# ---------------------------------------------------------------------------
# Metrics data class
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PerformanceMetrics:
    """
    Aggregate performance report of one backtest run.

    Attributes
    ----------
    trades : int
        Number of completed positions.
    win_rate : float
        ``winning / trades`` (0–1 scale) over completed positions.
    profit_factor : float
        ``gross_profit / gross_loss`` over completed positions.
    expectancy : float
        Mean PnL per completed position.
    total_r, avg_r : float
        Sum / mean of the R-multiples of completed positions.
    sharpe_per_trade, sortino_per_trade : float
        Mean over (population) standard deviation of ``pnl / start_equity``
        per completed position; Sortino uses the negative returns only.
    max_drawdown_pct : float
        Largest peak-to-trough decline of leg-level realised equity, as a
        fraction of the peak.
    calmar : float
        ``return_pct / max_drawdown_pct``.
    max_consec_wins, max_consec_losses : int
        Longest runs of winners / losers; a flat trade breaks both.
    avg_hold_min : float
        Mean holding time of completed positions, in minutes.
    exposure_pct : float
        Bars spent in completed positions over total bars (fraction).
    total_pnl : float
        Realised PnL over all legs.
    return_pct : float
        ``(final_equity - start_equity) / start_equity`` (fraction).
    final_equity, start_equity : float
    profit_factor_leg, win_rate_leg : float
        Profit factor / win rate over all legs, partial exits included.
    sharpe_daily, sortino_daily : float
        Computed on UTC daily returns of the equity series.
    exit_reason_counts : Dict[str, int]
        Leg count per exit reason code.
    long_trades, short_trades : int
        Completed positions by side.
    avg_mfe_r, avg_mae_r : float
        Mean MFE-R / MAE-R of completed positions.
    """
    trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    total_r: float = 0.0
    avg_r: float = 0.0
    sharpe_per_trade: float = 0.0
    sortino_per_trade: float = 0.0
    max_drawdown_pct: float = 0.0
    calmar: float = 0.0
    max_consec_wins: int = 0
    max_consec_losses: int = 0
    avg_hold_min: float = 0.0
    exposure_pct: float = 0.0
    total_pnl: float = 0.0
    return_pct: float = 0.0
    final_equity: float = 0.0
    start_equity: float = 0.0
    profit_factor_leg: float = 0.0
    win_rate_leg: float = 0.0
    sharpe_daily: float = 0.0
    sortino_daily: float = 0.0
    exit_reason_counts: Dict[str, int] = field(default_factory=dict)
    long_trades: int = 0
    short_trades: int = 0
    avg_mfe_r: float = 0.0
    avg_mae_r: float = 0.0

    def to_dataframe(self) -> pd.DataFrame:
        """Single-row DataFrame for easy export / concatenation."""
        d = asdict(self)
        counts = d.pop("exit_reason_counts")
        d.update({f"exit_{k}": v for k, v in counts.items()})
        return pd.DataFrame([d])


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def _ratio(num: float, den: float) -> float:
    if den == 0:
        return math.inf if num > 0 else 0.0
    return num / den


def _mean(values: np.ndarray) -> float:
    return float(values.mean()) if len(values) else 0.0


def _std(values: np.ndarray) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    return float(values.std()) if len(values) > 1 else 0.0


def _sharpe(returns: np.ndarray) -> float:
    return _ratio(_mean(returns), _std(returns))


def _sortino(returns: np.ndarray) -> float:
    negative = returns[returns < 0]
    downside = _std(negative) if len(negative) else 0.0
    return _ratio(_mean(returns), downside)


def _profit_factor(pnls: np.ndarray) -> float:
    gross_profit = float(pnls[pnls > 0].sum())
    gross_loss = float(np.abs(pnls[pnls < 0]).sum())
    return _ratio(gross_profit, gross_loss)


def _streaks(pnls: np.ndarray) -> tuple:
    wins = losses = max_wins = max_losses = 0
    for pnl in pnls:
        if pnl > 0:
            wins, losses = wins + 1, 0
            max_wins = max(max_wins, wins)
        elif pnl < 0:
            wins, losses = 0, losses + 1
            max_losses = max(max_losses, losses)
        else:
            wins = losses = 0
    return max_wins, max_losses


def _max_drawdown_pct(pnls: np.ndarray, equity_start: float) -> float:
    if not len(pnls):
        return 0.0
    equity = equity_start + np.cumsum(pnls)
    peak = np.maximum.accumulate(np.maximum(equity, equity_start))
    drawdown = (peak - equity) / np.maximum(DIV_FLOOR, peak)
    return max(0.0, float(drawdown.max()))


# ---------------------------------------------------------------------------
# Daily returns
# ---------------------------------------------------------------------------

def equity_from_legs(legs: Sequence[ClosedLeg], equity_start: float) -> List[EquitySample]:
    """
    Rebuild a realised equity series from legs sorted by exit time,
    starting with ``equity_start`` at the first exit.
    """
    if not legs:
        return []
    series = [EquitySample(legs[0].exit_time, equity_start)]
    equity = equity_start
    for leg in legs:
        equity += leg.pnl
        series.append(EquitySample(leg.exit_time, equity))
    return series


def daily_returns(equity_series: Sequence[EquitySample]) -> np.ndarray:
    """
    ``(close - open) / open`` per UTC calendar day.

    A day's open is its earliest sample and its close the latest one (the
    last recorded on ties).  Days with a non-positive or non-finite open,
    or a non-finite close, are skipped.
    """
    if not equity_series:
        return np.array([], dtype=np.float64)

    df = pl.DataFrame(
        {
            "time": [s.time for s in equity_series],
            "equity": [s.equity for s in equity_series],
        },
        schema={"time": pl.Int64, "equity": pl.Float64},
    )
    daily = (
        df.sort("time", maintain_order=True)
        .with_columns(pl.from_epoch("time", time_unit="ms").dt.date().alias("day"))
        .group_by("day", maintain_order=True)
        .agg(
            pl.col("equity").first().alias("open"),
            pl.col("equity").last().alias("close"),
        )
        .filter(
            pl.col("open").is_finite()
            & pl.col("close").is_finite()
            & (pl.col("open") > 0)
        )
    )
    opens = daily["open"].to_numpy()
    closes = daily["close"].to_numpy()
    return (closes - opens) / opens


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------

def compute_metrics(
    legs: Sequence[ClosedLeg],
    equity_start: float,
    equity_final: float,
    n_bars: int,
    bar_ms: float,
    equity_series: Optional[Sequence[EquitySample]] = None,
) -> PerformanceMetrics:
    """
    Compute ``PerformanceMetrics`` from the closed legs of a run.

    Parameters
    ----------
    legs : sequence of ClosedLeg
        Every leg of the run, partial exits included, in close order.
    equity_start, equity_final : float
        Realised equity before the first and after the last bar.
    n_bars : int
        Total number of bars in the run (exposure denominator).
    bar_ms : float
        Estimated bar duration in milliseconds.
    equity_series : sequence of EquitySample, optional
        Realised equity over time for the daily ratios.  Rebuilt from the
        legs when missing or empty.

    Returns
    -------
    PerformanceMetrics

    Notes
    -----
    Pure function: neither ``legs`` nor ``equity_series`` is modified.
    """
    completed = [leg for leg in legs if not leg.is_scale]
    by_exit = sorted(legs, key=lambda leg: leg.exit_time)

    pnls = np.array([leg.pnl for leg in completed], dtype=np.float64)
    r_multiples = np.array([leg.r_multiple for leg in completed], dtype=np.float64)
    trade_returns = pnls / max(DIV_FLOOR, equity_start)
    leg_pnls = np.array([leg.pnl for leg in by_exit], dtype=np.float64)

    max_wins, max_losses = _streaks(pnls)

    max_dd = _max_drawdown_pct(leg_pnls, equity_start)
    return_pct = (equity_final - equity_start) / max(DIV_FLOOR, equity_start)

    hold_ms = np.array([leg.exit_time - leg.open_time for leg in completed], dtype=np.float64)
    bars_held = np.floor(hold_ms / bar_ms + 0.5) if len(hold_ms) else hold_ms
    exposure = float(bars_held.sum()) / max(1, n_bars)

    series = equity_series if equity_series else equity_from_legs(by_exit, equity_start)
    day_rets = daily_returns(series)

    exit_counts: Dict[str, int] = {}
    for leg in legs:
        key = leg.reason.value
        exit_counts[key] = exit_counts.get(key, 0) + 1

    return PerformanceMetrics(
        trades=len(completed),
        win_rate=_ratio(int((pnls > 0).sum()), len(completed)),
        profit_factor=_profit_factor(pnls),
        expectancy=_mean(pnls),
        total_r=float(r_multiples.sum()),
        avg_r=_mean(r_multiples),
        sharpe_per_trade=_sharpe(trade_returns),
        sortino_per_trade=_sortino(trade_returns),
        max_drawdown_pct=max_dd,
        calmar=_ratio(return_pct, max_dd),
        max_consec_wins=max_wins,
        max_consec_losses=max_losses,
        avg_hold_min=_mean(hold_ms / MS_PER_MINUTE),
        exposure_pct=exposure,
        total_pnl=float(leg_pnls.sum()),
        return_pct=return_pct,
        final_equity=equity_final,
        start_equity=equity_start,
        profit_factor_leg=_profit_factor(leg_pnls),
        win_rate_leg=_ratio(int((leg_pnls > 0).sum()), len(by_exit)),
        sharpe_daily=_sharpe(day_rets),
        sortino_daily=_sortino(day_rets),
        exit_reason_counts=exit_counts,
        long_trades=sum(1 for leg in completed if leg.side is Side.LONG),
        short_trades=sum(1 for leg in completed if leg.side is Side.SHORT),
        avg_mfe_r=_mean(np.array([leg.mfe_r for leg in completed], dtype=np.float64)),
        avg_mae_r=_mean(np.array([leg.mae_r for leg in completed], dtype=np.float64)),
    )
