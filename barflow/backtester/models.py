"""
Data models, enums, and type definitions for the bar-by-bar simulator.

Value objects (``Bar``, ``Signal``, ``ClosedLeg``, ``EquitySample``, ``Fill``)
are frozen dataclasses so nothing downstream can rewrite history.
``PendingOrder`` and ``OpenPosition`` are the only mutable structures: they
track the *live* order/position of one run and are updated in-place by the
engine and the risk manager.
"""

from __future__ import annotations

import enum
import math
import numbers
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from barflow.exceptions import SignalError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Side(str, enum.Enum):
    """Trade direction."""
    LONG  = "long"
    SHORT = "short"

    @property
    def direction(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is Side.LONG else -1

    @property
    def opposite(self) -> "Side":
        """The side of the order that closes a position of this side."""
        return Side.SHORT if self is Side.LONG else Side.LONG


class ExitReason(str, enum.Enum):
    """Why a leg was closed."""
    STOP_LOSS   = "SL"
    TAKE_PROFIT = "TP"
    TIME_EXIT   = "TIME"
    END_OF_DAY  = "EOD"
    SCALE       = "SCALE"


class FillKind(str, enum.Enum):
    """Order type used to scale slippage."""
    MARKET = "market"
    LIMIT  = "limit"
    STOP   = "stop"


# ---------------------------------------------------------------------------
# Immutable value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Bar:
    """
    One OHLC bar.

    Attributes
    ----------
    time : int
        Bar timestamp in epoch milliseconds (UTC).
    open, high, low, close : float
        Prices.
    volume : float
        Traded volume (0 when unknown).
    """
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.open, self.high, self.low, self.close))


@dataclass(frozen=True, slots=True)
class Fill:
    """Executed price and **per-unit** fee returned by the fill model."""
    price: float
    fee: float


@dataclass(frozen=True, slots=True)
class Signal:
    """
    Trade setup proposed by an external signal callable.

    The engine copies its fields onto the pending order and, on fill, onto
    the position.  Optional management fields are per-trade overrides; a
    ``None`` value means "not used".

    Attributes
    ----------
    side : Side
    entry : float
        Limit price of the entry order.
    stop : float
    take_profit : float
    init_risk : float | None
        Planned absolute risk distance; defaults to ``|entry - stop|``.
    entry_expiry_bars : int | None
        Bars the entry order may rest before it expires.
    breakeven_at_r : float | None
        Move the stop to entry once the bar's favourable excursion reaches this R.
    trail_after_r : float | None
        Activate a 1R hard trail behind the close once MFE-R reaches this R.
    cooldown_bars : int | None
        Bars to stay flat after this trade closes.
    max_bars_in_trade : int | None
    max_hold_min : float | None
    fair_value_mid : float | None
        Fair-value midpoint the entry-chase logic reprices the order to.
    """
    side: Side
    entry: float
    stop: float
    take_profit: float
    init_risk: Optional[float] = None
    entry_expiry_bars: Optional[int] = None
    breakeven_at_r: Optional[float] = None
    trail_after_r: Optional[float] = None
    cooldown_bars: Optional[int] = None
    max_bars_in_trade: Optional[int] = None
    max_hold_min: Optional[float] = None
    fair_value_mid: Optional[float] = None

    def __post_init__(self) -> None:
        try:
            side = Side(self.side)
        except ValueError:
            raise SignalError(f"Signal side must be 'long' or 'short', got {self.side!r}") from None
        object.__setattr__(self, "side", side)
        for name in ("entry", "stop", "take_profit"):
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or not math.isfinite(value):
                raise SignalError(f"Signal {name} must be a finite number, got {value!r}")
            object.__setattr__(self, name, float(value))

    @property
    def planned_risk(self) -> float:
        """Absolute planned risk distance (``init_risk`` or ``|entry - stop|``)."""
        return abs(self.init_risk if self.init_risk is not None else self.entry - self.stop)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Signal":
        """Build a ``Signal`` from a plain mapping, rejecting unknown keys."""
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise SignalError(f"Unknown signal fields: {sorted(unknown)}")
        return cls(**data)


@dataclass(frozen=True, slots=True)
class EquitySample:
    """Realised equity at a point in time."""
    time: int
    equity: float


@dataclass(frozen=True, slots=True)
class ClosedLeg:
    """
    Immutable record of one realised exit: a full close or a partial
    (``SCALE``) close of a position.

    Open-side attributes are a snapshot of the position at close time;
    ``size`` is the quantity closed by *this* leg.
    """
    side: Side
    entry: float
    entry_fill: float
    stop: float
    take_profit: float
    size: float
    open_time: int
    exit_price: float
    exit_time: int
    reason: ExitReason
    pnl: float
    init_risk: float = 0.0
    symbol: str = ""
    entry_fee: float = 0.0
    exit_fee: float = 0.0
    mfe_r: float = 0.0
    mae_r: float = 0.0
    adds: int = 0
    entry_atr: Optional[float] = None
    exit_atr: Optional[float] = None
    signal: Optional[Signal] = field(default=None, repr=False, compare=False)

    @property
    def r_multiple(self) -> float:
        """Exit distance from the entry fill, in units of initial risk (0 if risk <= 0)."""
        if self.init_risk <= 0:
            return 0.0
        return (self.exit_price - self.entry_fill) * self.side.direction / self.init_risk

    @property
    def is_scale(self) -> bool:
        return self.reason is ExitReason.SCALE


# ---------------------------------------------------------------------------
# Mutable run state
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class PendingOrder:
    """
    Entry order staged but not yet filled.

    ``planned_risk_abs`` is frozen at staging time; every slippage check in
    R units references it, even after the entry-chase reprices ``entry``.
    """
    side: Side
    entry: float
    stop: float
    take_profit: float
    risk_fraction: float
    expires_at: int
    staged_at: int
    signal: Signal
    planned_risk_abs: float
    chased: bool = False


@dataclass(slots=True)
class OpenPosition:
    """
    The live trade.

    ``size`` only decreases as legs are closed, except for a pyramiding add
    which also re-averages ``entry_fill``.  ``init_risk`` is the frozen unit
    "R" of this trade.
    """
    side: Side
    entry: float
    entry_fill: float
    stop: float
    take_profit: float
    size: float
    open_time: int
    init_risk: float
    entry_fee_total: float = 0.0
    init_size: float = 0.0
    base_size: float = 0.0
    symbol: str = ""
    signal: Optional[Signal] = None
    entry_fee_open: float = 0.0  # entry fee not yet allocated to a closed leg
    realized: float = 0.0
    mfe_r: float = 0.0
    mae_r: float = 0.0
    adds: int = 0
    breakeven_armed: bool = False
    scaled_out: bool = False
    vol_cut_done: bool = False
    entry_atr: Optional[float] = None
    last_atr: Optional[float] = None

    @property
    def breakeven_at_r(self) -> float:
        s = self.signal
        return (s.breakeven_at_r or 0.0) if s is not None else 0.0

    @property
    def trail_after_r(self) -> float:
        s = self.signal
        return (s.trail_after_r or 0.0) if s is not None else 0.0

    @property
    def cooldown_bars(self) -> int:
        s = self.signal
        return int(s.cooldown_bars or 0) if s is not None else 0

    @property
    def max_bars_in_trade(self) -> int:
        s = self.signal
        return int(s.max_bars_in_trade or 0) if s is not None else 0

    @property
    def max_hold_min(self) -> float:
        s = self.signal
        if s is None or s.max_hold_min is None or not math.isfinite(s.max_hold_min):
            return 0.0
        return s.max_hold_min

    def stop_at_or_past_entry(self) -> bool:
        if self.side is Side.LONG:
            return self.stop >= self.entry
        return self.stop <= self.entry
