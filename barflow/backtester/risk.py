"""
Position-level risk management.

The ``RiskManager`` is called on every bar while a position is open.  It
updates the mutable ``OpenPosition`` in place (excursions, stop level,
take-profit, size on a pyramiding add) and tells the engine how much to
close on a volatility cut or a scale-out; the engine owns the books and
performs the actual leg close.

Stop rules
~~~~~~~~~~
Evaluated in this order each bar, each one only ever *tightening* the stop:

1. break-even move (once, when the bar's favourable excursion reaches the
   signal's ``breakeven_at_r``)
2. hard 1R trail behind the close (once MFE-R has reached ``trail_after_r``)
3. MFE give-back trail
4. ATR-multiple trail

Every candidate is clamped away from the close when ``oco.clamp_stops`` is
set.  A candidate that ends up looser than the current stop is discarded,
so the stored stop is monotonic over the life of the trade.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from barflow.backtester.config import (
    BacktestConfig,
    MFETrailConfig,
    OCOConfig,
    PyramidingConfig,
    VolScaleConfig,
)
from barflow.backtester.execution import FillModel
from barflow.backtester.exits import clamp_stop, touched_level
from barflow.backtester.models import Bar, FillKind, OpenPosition, Side
from barflow.backtester.sizing import round_step
from barflow.configuration import DIV_FLOOR, R_FLOOR


@dataclass(slots=True)
class RiskManager:
    """
    Mechanical management overlay applied every bar while a position is live.

    Parameters
    ----------
    oco : OCOConfig
        Clamp settings for stop moves.
    mfe_trail, pyramiding, vol_scale : config groups
        See ``barflow.backtester.config``.
    atr_trail_mult : float
        ATR multiple for the ATR trail (0 disables).
    scale_out_at_r, scale_out_frac, final_tp_r : float
        Single scale-out rule (``scale_out_at_r == 0`` disables).
    qty_step, min_qty : float
        Lot stepping for partial closes and adds.
    trigger_mode : str
        ``"intrabar"`` or ``"close"`` touch test for scale-out/add triggers.

    Notes
    -----
    * All distances are in R, the frozen ``init_risk`` of the position.
    * The manager mutates ``OpenPosition`` in place.
    """
    oco: OCOConfig = field(default_factory=OCOConfig)
    mfe_trail: MFETrailConfig = field(default_factory=MFETrailConfig)
    pyramiding: PyramidingConfig = field(default_factory=PyramidingConfig)
    vol_scale: VolScaleConfig = field(default_factory=VolScaleConfig)
    atr_trail_mult: float = 0.0
    scale_out_at_r: float = 1.0
    scale_out_frac: float = 0.5
    final_tp_r: float = 3.0
    qty_step: float = 0.001
    min_qty: float = 0.001
    trigger_mode: str = "intrabar"

    @classmethod
    def from_config(cls, config: BacktestConfig) -> "RiskManager":
        return cls(
            oco=config.oco,
            mfe_trail=config.mfe_trail,
            pyramiding=config.pyramiding,
            vol_scale=config.vol_scale,
            atr_trail_mult=config.atr_trail_mult,
            scale_out_at_r=config.scale_out_at_r,
            scale_out_frac=config.scale_out_frac,
            final_tp_r=config.final_tp_r,
            qty_step=config.qty_step,
            min_qty=config.min_qty,
            trigger_mode=config.effective_trigger_mode,
        )

    # ------------------------------------------------------------------ #
    #  Excursions                                                         #
    # ------------------------------------------------------------------ #

    def update_excursions(self, pos: OpenPosition, bar: Bar) -> Tuple[float, float]:
        """
        Update running MFE-R / MAE-R from the bar's extremes.

        Returns
        -------
        (high_r, r_now) : tuple
            Favourable excursion of this bar and the close, both in R.
        """
        risk = pos.init_risk or R_FLOOR
        if pos.side is Side.LONG:
            high_r = (bar.high - pos.entry) / risk
            low_r = (bar.low - pos.entry) / risk
        else:
            high_r = (pos.entry - bar.low) / risk
            low_r = (pos.entry - bar.high) / risk
        r_now = (bar.close - pos.entry) * pos.side.direction / risk

        pos.mfe_r = max(pos.mfe_r, high_r)
        pos.mae_r = min(pos.mae_r, low_r)
        return high_r, r_now

    # ------------------------------------------------------------------ #
    #  Stop updates                                                       #
    # ------------------------------------------------------------------ #

    def tighten_stop(self, pos: OpenPosition, candidate: float, market_px: float) -> bool:
        """Move the stop to ``candidate`` if that tightens it; returns whether it moved."""
        if pos.side is Side.LONG:
            tightened = max(pos.stop, candidate)
        else:
            tightened = min(pos.stop, candidate)
        if self.oco.clamp_stops:
            tightened = clamp_stop(market_px, tightened, pos.side, self.oco.clamp_eps_bps)

        looser = tightened < pos.stop if pos.side is Side.LONG else tightened > pos.stop
        if looser or tightened == pos.stop:
            return False
        pos.stop = tightened
        return True

    def update_stops(self, pos: OpenPosition, bar: Bar, high_r: float, atr_now: Optional[float]) -> None:
        """Apply break-even, R trail, MFE trail and ATR trail, in that order."""
        risk = pos.init_risk or R_FLOOR
        d = pos.side.direction
        close = bar.close

        be_at = pos.breakeven_at_r
        if be_at > 0 and high_r >= be_at and not pos.breakeven_armed:
            self.tighten_stop(pos, pos.entry, close)
            pos.breakeven_armed = True

        trail_after = pos.trail_after_r
        if trail_after > 0 and pos.mfe_r >= trail_after:
            self.tighten_stop(pos, close - d * risk, close)

        if self.mfe_trail.enabled and pos.mfe_r >= self.mfe_trail.arm_r:
            give = max(0.0, self.mfe_trail.giveback_r)
            target_r = max(0.0, pos.mfe_r - give)
            self.tighten_stop(pos, pos.entry + d * target_r * risk, close)

        if self.atr_trail_mult > 0 and atr_now is not None:
            self.tighten_stop(pos, close - d * atr_now * self.atr_trail_mult, close)

    def tighten_to_net_breakeven(self, pos: OpenPosition, market_px: float) -> None:
        """
        After a profitable partial close, move the stop to the price at which
        the remaining size would give back exactly the realised profit.
        """
        if pos.size <= 0 or pos.realized <= 0:
            return
        be_delta = abs(pos.realized / pos.size)
        self.tighten_stop(pos, pos.entry_fill - pos.side.direction * be_delta, market_px)

    # ------------------------------------------------------------------ #
    #  Size changes                                                       #
    # ------------------------------------------------------------------ #

    def vol_cut_qty(self, pos: OpenPosition, atr_now: Optional[float], r_now: float) -> float:
        """
        Quantity to close because volatility expanded since entry (0 for none).

        Fires at most once per position and never once the trade is beyond
        ``vol_scale.no_cut_above_r``.
        """
        vs = self.vol_scale
        if not vs.enabled or pos.vol_cut_done or atr_now is None or not pos.entry_atr:
            return 0.0
        if pos.size <= self.min_qty:
            return 0.0
        ratio = atr_now / max(DIV_FLOOR, pos.entry_atr)
        if ratio < vs.cut_if_atr_x or r_now >= vs.no_cut_above_r:
            return 0.0
        qty = round_step(pos.size * vs.cut_frac, self.qty_step)
        return qty if self.min_qty <= qty < pos.size else 0.0

    def pyramid(self, pos: OpenPosition, bar: Bar, fills: FillModel) -> bool:
        """
        Add ``add_frac`` of the base size when the next R milestone trades.

        The add fills as a limit at the trigger price; the entry fill becomes
        the volume-weighted average and the entry fee grows by the add's fee.
        """
        pc = self.pyramiding
        if not pc.enabled or pos.adds >= pc.max_adds:
            return False
        if pc.only_after_break_even and not pos.stop_at_or_past_entry():
            return False

        risk = pos.init_risk or R_FLOOR
        next_idx = pos.adds + 1
        trigger_px = pos.entry + pos.side.direction * pc.add_at_r * next_idx * risk
        if not touched_level(pos.side, trigger_px, bar, self.trigger_mode):
            return False

        base = pos.base_size or pos.init_size
        add_qty = round_step(base * pc.add_frac, self.qty_step)
        if add_qty < self.min_qty or add_qty <= 0:
            return False

        fill = fills.entry(trigger_px, pos.side, FillKind.LIMIT)
        new_size = pos.size + add_qty
        add_fee = fill.fee * add_qty
        pos.entry_fee_total += add_fee
        pos.entry_fee_open += add_fee
        pos.entry_fill = (pos.entry_fill * pos.size + fill.price * add_qty) / new_size
        pos.size = new_size
        pos.init_size += add_qty
        if not pos.base_size:
            pos.base_size = base
        pos.adds = next_idx
        return True

    def scale_out_plan(self, pos: OpenPosition, bar: Bar) -> Optional[Tuple[float, float]]:
        """
        ``(qty, trigger_px)`` of the one-time scale-out if it triggers this bar.
        """
        if pos.scaled_out or self.scale_out_at_r <= 0:
            return None
        risk = pos.init_risk or R_FLOOR
        trigger_px = pos.entry + pos.side.direction * self.scale_out_at_r * risk
        if not touched_level(pos.side, trigger_px, bar, self.trigger_mode):
            return None
        qty = round_step(pos.size * self.scale_out_frac, self.qty_step)
        if not (self.min_qty <= qty < pos.size) or qty <= 0:
            return None
        return qty, trigger_px

    def after_scale_out(self, pos: OpenPosition, market_px: float) -> None:
        """Extend the runner's target to ``final_tp_r`` and lock in net break-even."""
        risk = pos.init_risk or R_FLOOR
        pos.scaled_out = True
        pos.take_profit = pos.entry + pos.side.direction * self.final_tp_r * risk
        self.tighten_to_net_breakeven(pos, market_px)
        pos.breakeven_armed = True

