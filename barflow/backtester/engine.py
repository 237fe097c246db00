"""
Core backtesting engine: the bar-by-bar execution loop.

Architecture
~~~~~~~~~~~~
The engine orchestrates signal requests, order staging, fills, position
management and exits for a single instrument with at most one pending
entry order and one open position at any time.  Each concern lives in its
own module (fills in ``execution``, sizing in ``sizing``, stop/target
tests in ``exits``, stop and size management in ``risk``, statistics in
``metrics``); the engine only sequences them and keeps the books.

Per-bar precedence
~~~~~~~~~~~~~~~~~~
1. Roll the US/Eastern day bucket (resets daily PnL and entry count).
2. Time exits (max bars in trade, max hold minutes).
3. End-of-day flatten.
4. Pending order: expiry / daily-budget cancel (optionally converting to a
   market fill), limit touch fill, or entry chase.
5. Open position: excursions, stop rules, vol cut, pyramiding, scale-out,
   then the OCO stop/target check.
6. Cooldown or open position: record equity and move on.
7. Daily loss / trade cap: drop any pending order and move on.
8. Request a signal and stage a pending order (filling it at once if this
   bar already touches its limit).
9. Record realised equity for the bar.

Only realised PnL moves equity; an open position is never marked to market.

Usage
-----
>>> from barflow.backtester import BacktestEngine, BacktestConfig
>>> engine = BacktestEngine(BacktestConfig(slippage_bps=2.0, fee_bps=1.0))
>>> result = engine.run(bars, my_signal, symbol="ES")
>>> result.metrics.profit_factor
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import polars as pl
from tqdm import tqdm

from barflow.backtester.config import BacktestConfig
from barflow.backtester.context import RunContext
from barflow.backtester.execution import FillModel
from barflow.backtester.exits import oco_exit_check, touched_limit
from barflow.backtester.metrics import PerformanceMetrics, compute_metrics
from barflow.backtester.models import (
    Bar,
    ClosedLeg,
    EquitySample,
    ExitReason,
    Fill,
    FillKind,
    OpenPosition,
    PendingOrder,
    Signal,
)
from barflow.backtester.report import legs_to_dataframe
from barflow.backtester.risk import RiskManager
from barflow.backtester.sizing import position_size
from barflow.configuration import MS_PER_MINUTE, R_FLOOR
from barflow.data import bars_from_frame, estimate_bar_ms
from barflow.exceptions import SignalError
from barflow.indicators import atr
from barflow.timeutils import eastern_day_keys, eod_mask

logger = logging.getLogger(__name__)

SignalFn = Callable[[List[Bar], RunContext], Union[Signal, Mapping[str, Any], None]]
BarsLike = Union[Sequence[Bar], pd.DataFrame, pl.DataFrame]


def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


# ======================================================================== #
#  Result container                                                        #
# ======================================================================== #

@dataclass
class BacktestResult:
    """
    Container returned by ``BacktestEngine.run()``.

    Attributes
    ----------
    legs : list[ClosedLeg]
        Every realised exit, partial (``SCALE``) legs included, in the order
        they happened.
    metrics : PerformanceMetrics
        Aggregated performance statistics.
    equity_series : list[EquitySample]
        Realised equity: one sample per bar plus one per closed leg.
    config : BacktestConfig
        The configuration used for this run.
    symbol : str
    diagnostics : dict[str, int]
        Counters recorded on the run's ``RunContext`` by the engine and the
        signal callable.
    """
    legs: List[ClosedLeg] = field(default_factory=list)
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    equity_series: List[EquitySample] = field(default_factory=list)
    config: BacktestConfig = field(default_factory=BacktestConfig)
    symbol: str = ""
    diagnostics: Dict[str, int] = field(default_factory=dict)

    @property
    def trades(self) -> List[ClosedLeg]:
        """Final leg of each completed position (``SCALE`` legs excluded)."""
        return [leg for leg in self.legs if not leg.is_scale]

    @property
    def legs_df(self) -> pd.DataFrame:
        """Legs in tabular form for analysis / export."""
        return legs_to_dataframe(self.legs)

    @property
    def equity_df(self) -> pd.DataFrame:
        """Equity series as a DataFrame with ``time`` (UTC datetime) and ``equity``."""
        return pd.DataFrame({
            "time": pd.to_datetime([s.time for s in self.equity_series], unit="ms", utc=True),
            "equity": [s.equity for s in self.equity_series],
        })


# ======================================================================== #
#  Engine                                                                  #
# ======================================================================== #

class BacktestEngine:
    """
    Bar-by-bar single-position backtesting engine.

    Parameters
    ----------
    config : BacktestConfig | None
        Run configuration; defaults to ``BacktestConfig()``.
    progress_bar : bool
        Show a ``tqdm`` progress bar during the loop.

    Notes
    -----
    The engine holds configuration only.  Every ``run()`` builds a fresh,
    private run state, so one engine can serve many independent runs
    (parameter sweeps, several symbols) without any shared mutable state.
    """

    def __init__(self, config: Optional[BacktestConfig] = None, progress_bar: bool = True) -> None:
        self.config = config or BacktestConfig()
        self.progress_bar = progress_bar

    @staticmethod
    def _prepare_bars(bars: BarsLike) -> List[Bar]:
        if isinstance(bars, (pd.DataFrame, pl.DataFrame)):
            return bars_from_frame(bars)
        bars = list(bars)
        for prev, cur in zip(bars, bars[1:]):
            if cur.time <= prev.time:
                raise ValueError(
                    f"Bars must be strictly ascending by time; got {cur.time} after {prev.time}."
                )
        return bars

    def run(
        self,
        bars: BarsLike,
        signal: SignalFn,
        symbol: str = "",
        context: Optional[RunContext] = None,
    ) -> BacktestResult:
        """
        Execute the backtest.

        Parameters
        ----------
        bars : sequence of Bar | pd.DataFrame | pl.DataFrame
            Bars ascending by time.  DataFrames need ``time``, ``open``,
            ``high``, ``low``, ``close`` (and optionally ``volume``) columns.
        signal : callable
            ``signal(history, context)`` is called at most once per bar while
            the engine is flat with no pending order.  ``history`` holds every
            bar seen so far, the current one included.  It returns a
            ``Signal``, a mapping of ``Signal`` fields, or ``None``.  Any
            exception it raises aborts the run.
        symbol : str
            Instrument name copied onto every leg.
        context : RunContext | None
            Diagnostics sink shared with the signal callable; a new one is
            created when omitted.

        Returns
        -------
        BacktestResult
        """
        bars = self._prepare_bars(bars)
        context = context or RunContext(symbol=symbol)
        logger.info("Backtest start: symbol=%s bars=%d", symbol or "-", len(bars))

        run = _BacktestRun(self.config, bars, signal, symbol, context)
        result = run.execute(self.progress_bar)

        logger.info(
            "Backtest done: symbol=%s legs=%d final_equity=%.2f",
            symbol or "-", len(result.legs), result.metrics.final_equity,
        )
        return result


def run_backtest(
    bars: BarsLike,
    signal: SignalFn,
    symbol: str = "",
    context: Optional[RunContext] = None,
    progress_bar: bool = False,
    **overrides: Any,
) -> BacktestResult:
    """
    One-call convenience: ``BacktestEngine(BacktestConfig(**overrides)).run(...)``.

    Nested groups may be given as dicts, e.g. ``oco={"tie_break": "optimistic"}``.
    """
    config = BacktestConfig().with_overrides(**overrides) if overrides else BacktestConfig()
    return BacktestEngine(config, progress_bar=progress_bar).run(bars, signal, symbol, context)


# ======================================================================== #
#  Per-run state machine                                                   #
# ======================================================================== #

class _BacktestRun:
    """
    Mutable state of exactly one backtest run.

    Owns the open position, the pending order, the cooldown counter, the
    daily budget counters and the realised equity for the duration of one
    ``BacktestEngine.run()`` call.
    """

    def __init__(
        self,
        config: BacktestConfig,
        bars: List[Bar],
        signal: SignalFn,
        symbol: str,
        context: RunContext,
    ) -> None:
        self.cfg = config
        self.bars = bars
        self.signal = signal
        self.symbol = symbol
        self.context = context
        self.log = context.logger

        self.fills = FillModel(config.slippage_bps, config.fee_bps)
        self.risk = RiskManager.from_config(config)
        self.max_slip_r = math.inf if config.max_slip_r_on_fill is None else config.max_slip_r_on_fill

        times = [b.time for b in bars]
        self.day_keys = eastern_day_keys(times)
        self.eod = eod_mask(times)
        self.bar_ms = estimate_bar_ms(bars)
        self.atr = atr(bars, config.atr_period) if config.needs_atr else None

        self.equity = config.starting_equity
        self.open: Optional[OpenPosition] = None
        self.pending: Optional[PendingOrder] = None
        self.cooldown = 0
        self.cooldown_armed_at = -1
        self.day_key = None
        self.day_pnl = 0.0
        self.day_trades = 0

        self.legs: List[ClosedLeg] = []
        self.equity_series: List[EquitySample] = []
        self.history: List[Bar] = []

    # ------------------------------------------------------------------ #
    #  Main loop                                                          #
    # ------------------------------------------------------------------ #

    def execute(self, progress_bar: bool) -> BacktestResult:
        bars = self.bars
        if bars:
            self.equity_series.append(EquitySample(bars[0].time, self.equity))

        start = min(self.cfg.warmup_bars, len(bars))
        self.history.extend(bars[:start])

        iterator = tqdm(range(start, len(bars)), desc="Backtesting", disable=not progress_bar)
        for i in iterator:
            self._step(i, bars[i])

        metrics = compute_metrics(
            self.legs,
            equity_start=self.cfg.starting_equity,
            equity_final=self.equity,
            n_bars=len(bars),
            bar_ms=self.bar_ms,
            equity_series=self.equity_series,
        )
        return BacktestResult(
            legs=list(self.legs),
            metrics=metrics,
            equity_series=list(self.equity_series),
            config=self.cfg,
            symbol=self.symbol,
            diagnostics=self.context.snapshot(),
        )

    def _step(self, i: int, bar: Bar) -> None:
        self.history.append(bar)
        self._roll_day(i)

        if self.open is not None:
            self._check_time_exits(i, bar)
        if self.open is not None and self.cfg.flatten_at_close and self.eod[i]:
            self._exit_position(i, bar, ExitReason.END_OF_DAY, bar.close, FillKind.MARKET)

        if self.open is None and self.pending is not None:
            self._manage_pending(i, bar)

        if self.open is not None:
            self._manage_open(i, bar)

        if self.open is not None or self.cooldown > 0:
            if self.cooldown > 0:
                if self.open is None:
                    self.context.note("blocked_cooldown")
                if self.cooldown_armed_at != i:
                    self.cooldown -= 1
            self._snapshot(bar.time)
            return

        loss_hit = self._daily_loss_hit()
        if loss_hit or self._trade_cap_hit():
            self.context.note("blocked_daily_loss" if loss_hit else "blocked_trade_cap")
            self.pending = None
            self._snapshot(bar.time)
            return

        if self.pending is None:
            self._request_signal(i, bar)

        self._snapshot(bar.time)

    # ------------------------------------------------------------------ #
    #  Bookkeeping                                                        #
    # ------------------------------------------------------------------ #

    def _snapshot(self, time: int) -> None:
        self.equity_series.append(EquitySample(time, self.equity))

    def _roll_day(self, i: int) -> None:
        key = self.day_keys[i]
        if key != self.day_key:
            self.day_key = key
            self.day_pnl = 0.0
            self.day_trades = 0

    def _daily_loss_hit(self) -> bool:
        pct = self.cfg.max_daily_loss_pct
        if pct <= 0:
            return False
        return self.day_pnl <= -abs(pct / 100.0 * self.equity)

    def _trade_cap_hit(self) -> bool:
        cap = self.cfg.daily_max_trades
        return cap > 0 and self.day_trades >= cap

    def _atr_at(self, i: int) -> Optional[float]:
        if self.atr is None:
            return None
        value = float(self.atr[i])
        return value if np.isfinite(value) else None

    def _arm_cooldown(self, i: int, reason: ExitReason, pos: OpenPosition) -> None:
        n = self.cfg.post_loss_cooldown_bars if reason is ExitReason.STOP_LOSS else 0
        n = n or pos.cooldown_bars
        if n > 0:
            self.cooldown = max(self.cooldown, n)
            self.cooldown_armed_at = i

    # ------------------------------------------------------------------ #
    #  Legs                                                               #
    # ------------------------------------------------------------------ #

    def _close_leg(self, qty: float, fill: Fill, time: int, reason: ExitReason) -> ClosedLeg:
        """
        Realise ``qty`` of the open position at ``fill``.

        The leg is charged its pro-rata share of the still-unallocated entry
        fee, so the entry fees of all legs of a position sum to its total
        entry fee.
        """
        pos = self.open
        d = pos.side.direction

        gross = (fill.price - pos.entry_fill) * d * qty
        if qty >= pos.size:
            entry_fee = pos.entry_fee_open
        else:
            entry_fee = pos.entry_fee_open * (qty / pos.size)
        exit_fee = fill.fee * qty
        pnl = gross - entry_fee - exit_fee

        self.equity += pnl
        self.day_pnl += pnl
        self.equity_series.append(EquitySample(time, self.equity))

        leg = ClosedLeg(
            side=pos.side,
            entry=pos.entry,
            entry_fill=pos.entry_fill,
            stop=pos.stop,
            take_profit=pos.take_profit,
            size=qty,
            open_time=pos.open_time,
            exit_price=fill.price,
            exit_time=time,
            reason=reason,
            pnl=pnl,
            init_risk=pos.init_risk,
            symbol=pos.symbol,
            entry_fee=entry_fee,
            exit_fee=exit_fee,
            mfe_r=pos.mfe_r,
            mae_r=pos.mae_r,
            adds=pos.adds,
            entry_atr=pos.entry_atr,
            exit_atr=pos.last_atr,
            signal=pos.signal,
        )
        self.legs.append(leg)

        pos.size -= qty
        pos.entry_fee_open -= entry_fee
        pos.realized += pnl
        self.log.debug("Leg %s %s qty=%.6g px=%.6f pnl=%.2f", reason.value, pos.side.value, qty, fill.price, pnl)
        return leg

    def _exit_position(self, i: int, bar: Bar, reason: ExitReason, px: float, kind: FillKind) -> None:
        pos = self.open
        fill = self.fills.exit(px, pos.side, kind)
        self._close_leg(pos.size, fill, bar.time, reason)
        self._arm_cooldown(i, reason, pos)
        self.open = None

    # ------------------------------------------------------------------ #
    #  Open position                                                      #
    # ------------------------------------------------------------------ #

    def _check_time_exits(self, i: int, bar: Bar) -> None:
        pos = self.open
        if pos.max_bars_in_trade > 0:
            held = max(1, _round_half_up((bar.time - pos.open_time) / self.bar_ms))
            if held >= pos.max_bars_in_trade:
                self._exit_position(i, bar, ExitReason.TIME_EXIT, bar.close, FillKind.MARKET)
                return
        if pos.max_hold_min > 0:
            held_min = (bar.time - pos.open_time) / MS_PER_MINUTE
            if held_min >= pos.max_hold_min:
                self._exit_position(i, bar, ExitReason.TIME_EXIT, bar.close, FillKind.MARKET)

    def _manage_open(self, i: int, bar: Bar) -> None:
        pos = self.open
        rm = self.risk

        atr_now = self._atr_at(i)
        if atr_now is not None:
            pos.last_atr = atr_now

        high_r, r_now = rm.update_excursions(pos, bar)
        rm.update_stops(pos, bar, high_r, atr_now)

        cut = rm.vol_cut_qty(pos, atr_now, r_now)
        if cut > 0:
            fill = self.fills.exit(bar.close, pos.side, FillKind.MARKET)
            self._close_leg(cut, fill, bar.time, ExitReason.SCALE)
            rm.tighten_to_net_breakeven(pos, bar.close)
            pos.vol_cut_done = True

        if rm.pyramid(pos, bar, self.fills):
            self.log.debug("Pyramid add #%d size=%.6g entry_fill=%.6f", pos.adds, pos.size, pos.entry_fill)
        else:
            plan = rm.scale_out_plan(pos, bar)
            if plan is not None:
                qty, trigger_px = plan
                fill = self.fills.exit(trigger_px, pos.side, FillKind.LIMIT)
                self._close_leg(qty, fill, bar.time, ExitReason.SCALE)
                rm.after_scale_out(pos, bar.close)

        check = oco_exit_check(
            pos.side, pos.stop, pos.take_profit, bar,
            mode=self.cfg.oco.mode, tie_break=self.cfg.oco.tie_break,
        )
        if check.hit is not None:
            kind = FillKind.LIMIT if check.hit is ExitReason.TAKE_PROFIT else FillKind.STOP
            self._exit_position(i, bar, check.hit, check.px, kind)

    # ------------------------------------------------------------------ #
    #  Pending order                                                      #
    # ------------------------------------------------------------------ #

    def _adverse_slip_r(self, pending: PendingOrder, price: float) -> float:
        moved = (price - pending.entry) * pending.side.direction
        return max(0.0, moved) / max(R_FLOOR, pending.planned_risk_abs)

    def _cancel_pending(self, reason: str) -> None:
        self.context.note(reason)
        self.pending = None

    def _manage_pending(self, i: int, bar: Bar) -> None:
        p = self.pending
        chase = self.cfg.entry_chase

        if i > p.expires_at or self._daily_loss_hit() or self._trade_cap_hit():
            if chase.enabled and chase.convert_on_expiry:
                if self._adverse_slip_r(p, bar.close) > self.max_slip_r:
                    self._cancel_pending("pending_expired")
                elif self._open_from_pending(i, bar, bar.close, FillKind.MARKET):
                    self.context.note("pending_converted")
                else:
                    self.pending = None
            else:
                self._cancel_pending("pending_expired")
            return

        if touched_limit(p.side, p.entry, bar, "intrabar"):
            if not self._open_from_pending(i, bar, p.entry, FillKind.LIMIT):
                self.pending = None
            return

        if not chase.enabled:
            return

        mid = p.signal.fair_value_mid
        if not p.chased and mid is not None and i - p.staged_at >= max(1, chase.after_bars):
            p.entry = mid
            p.chased = True
            self.context.note("pending_chased")

        if p.chased:
            slipped = self._adverse_slip_r(p, bar.close)
            if slipped > self.max_slip_r:
                self._cancel_pending("fill_slip_guard")
            elif 0 < slipped <= chase.max_slip_r:
                if not self._open_from_pending(i, bar, bar.close, FillKind.MARKET):
                    self.pending = None

    def _open_from_pending(self, i: int, bar: Bar, entry_px: float, kind: FillKind) -> bool:
        """
        Fill the pending order at ``entry_px``.

        Returns ``False`` (leaving the caller to drop the order) when the
        fill slipped too far from the planned entry or the size rounds below
        the minimum quantity.
        """
        p = self.pending
        cfg = self.cfg
        planned = max(R_FLOOR, p.planned_risk_abs)

        if abs(entry_px - p.entry) / planned > self.max_slip_r:
            self.context.note("fill_slip_guard")
            return False

        stop_px = p.stop
        if cfg.reanchor_stop_on_fill:
            stop_px = entry_px - p.side.direction * planned

        size = position_size(
            equity=self.equity,
            entry=entry_px,
            stop=stop_px,
            risk_fraction=p.risk_fraction,
            qty_step=cfg.qty_step,
            min_qty=cfg.min_qty,
            max_leverage=cfg.max_leverage,
        )
        if size <= 0 or size < cfg.min_qty:
            self.context.note("fill_size_below_min")
            return False

        fill = self.fills.entry(entry_px, p.side, kind)
        fee_total = fill.fee * size
        pos = OpenPosition(
            side=p.side,
            entry=entry_px,
            entry_fill=fill.price,
            stop=stop_px,
            take_profit=p.take_profit,
            size=size,
            open_time=bar.time,
            init_risk=abs(entry_px - stop_px) or R_FLOOR,
            entry_fee_total=fee_total,
            init_size=size,
            base_size=size,
            symbol=self.symbol,
            signal=p.signal,
            entry_fee_open=fee_total,
        )
        atr_now = self._atr_at(i)
        if atr_now is not None:
            pos.entry_atr = atr_now
            pos.last_atr = atr_now

        self.open = pos
        self.pending = None
        self.day_trades += 1
        self.log.debug(
            "Open %s size=%.6g entry=%.6f fill=%.6f stop=%.6f tp=%.6f",
            pos.side.value, size, entry_px, fill.price, stop_px, pos.take_profit,
        )
        return True

    # ------------------------------------------------------------------ #
    #  Signal                                                             #
    # ------------------------------------------------------------------ #

    def _request_signal(self, i: int, bar: Bar) -> None:
        raw = self.signal(self.history, self.context)
        if not raw:
            self.context.note("signal_none")
            return

        if isinstance(raw, Signal):
            sig = raw
        elif isinstance(raw, Mapping):
            sig = Signal.from_mapping(raw)
        else:
            raise SignalError(f"Signal callable returned {type(raw).__name__}; expected Signal, mapping or None")

        expiry = sig.entry_expiry_bars if sig.entry_expiry_bars is not None else self.cfg.default_entry_expiry_bars
        self.pending = PendingOrder(
            side=sig.side,
            entry=sig.entry,
            stop=sig.stop,
            take_profit=sig.take_profit,
            risk_fraction=self.cfg.risk_fraction,
            expires_at=i + max(1, expiry),
            staged_at=i,
            signal=sig,
            planned_risk_abs=sig.planned_risk,
        )
        self.context.note("pending_staged")

        if touched_limit(sig.side, sig.entry, bar, "intrabar"):
            if not self._open_from_pending(i, bar, sig.entry, FillKind.LIMIT):
                self.pending = None
