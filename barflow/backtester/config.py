"""
Run configuration.

Every option the engine recognises is enumerated here with its default.
Nested groups (OCO handling, MFE trail, pyramiding, volatility scaling,
entry chase) are separate frozen dataclasses so a run configuration is a
single immutable value, validated once when it is built rather than
re-defaulted on every access.

``BacktestConfig.from_dict()`` turns a plain nested mapping (for instance a
JSON or YAML document loaded by the caller) into a validated configuration.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from barflow.configuration import DEFAULT_EXPIRY_BARS, DEFAULT_WARMUP_BARS
from barflow.exceptions import ConfigurationError


_MODES = ("intrabar", "close")
_TIE_BREAKS = ("pessimistic", "optimistic")


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def _fraction(value: float, name: str) -> None:
    _require(0.0 < value <= 1.0, f"{name} must be in (0, 1], got {value}")


@dataclass(frozen=True, slots=True)
class OCOConfig:
    """
    Stop/target evaluation.

    Attributes
    ----------
    mode : str
        ``"intrabar"`` tests high/low against stop and target; ``"close"``
        tests the close only.
    tie_break : str
        When both stop and target are touched in one bar, ``"pessimistic"``
        takes the stop and ``"optimistic"`` the target.
    clamp_stops : bool
        Clamp every stop move to sit at least ``clamp_eps_bps`` away from the
        current close.
    clamp_eps_bps : float
        Clamp distance in basis points of the close.
    """
    mode: str = "intrabar"
    tie_break: str = "pessimistic"
    clamp_stops: bool = True
    clamp_eps_bps: float = 0.25

    def __post_init__(self) -> None:
        _require(self.mode in _MODES, f"oco.mode must be one of {_MODES}, got {self.mode!r}")
        _require(self.tie_break in _TIE_BREAKS,
                 f"oco.tie_break must be one of {_TIE_BREAKS}, got {self.tie_break!r}")
        _require(self.clamp_eps_bps >= 0, "oco.clamp_eps_bps must be >= 0")


@dataclass(frozen=True, slots=True)
class MFETrailConfig:
    """
    Trail the stop behind the maximum favourable excursion.

    Once MFE-R reaches ``arm_r`` the stop ratchets to
    ``entry + (MFE-R - giveback_r) * R`` (mirrored for shorts).
    """
    enabled: bool = False
    arm_r: float = 1.0
    giveback_r: float = 0.5

    def __post_init__(self) -> None:
        _require(self.arm_r >= 0, "mfe_trail.arm_r must be >= 0")
        _require(self.giveback_r >= 0, "mfe_trail.giveback_r must be >= 0")


@dataclass(frozen=True, slots=True)
class PyramidingConfig:
    """
    Add to winners.

    Attributes
    ----------
    enabled : bool
    add_at_r : float
        The n-th add triggers at ``n * add_at_r`` R from entry.
    add_frac : float
        Each add is this fraction of the base size.
    max_adds : int
    only_after_break_even : bool
        Only add once the stop sits at or beyond the entry price.
    """
    enabled: bool = False
    add_at_r: float = 1.0
    add_frac: float = 0.25
    max_adds: int = 1
    only_after_break_even: bool = True

    def __post_init__(self) -> None:
        _require(self.add_at_r > 0, "pyramiding.add_at_r must be > 0")
        _fraction(self.add_frac, "pyramiding.add_frac")
        _require(self.max_adds >= 0, "pyramiding.max_adds must be >= 0")


@dataclass(frozen=True, slots=True)
class VolScaleConfig:
    """
    Cut size once when volatility expands.

    Closes ``cut_frac`` of the position when ATR has grown to at least
    ``cut_if_atr_x`` times the ATR at entry, unless the trade is already
    beyond ``no_cut_above_r``.
    """
    enabled: bool = False
    atr_period: int = 14
    cut_if_atr_x: float = 1.30
    cut_frac: float = 0.33
    no_cut_above_r: float = 1.5

    def __post_init__(self) -> None:
        _require(self.atr_period > 0, "vol_scale.atr_period must be > 0")
        _fraction(self.cut_frac, "vol_scale.cut_frac")


@dataclass(frozen=True, slots=True)
class EntryChaseConfig:
    """
    Reprice or convert a resting entry order.

    Attributes
    ----------
    enabled : bool
    after_bars : int
        Bars to wait before repricing to the signal's fair-value midpoint.
    max_slip_r : float
        Largest adverse move (in planned R) at which a chased order converts
        to a market fill.
    convert_on_expiry : bool
        Convert an expiring order to a market fill instead of cancelling it.
    """
    enabled: bool = True
    after_bars: int = 2
    max_slip_r: float = 0.20
    convert_on_expiry: bool = False

    def __post_init__(self) -> None:
        _require(self.after_bars >= 0, "entry_chase.after_bars must be >= 0")
        _require(self.max_slip_r >= 0, "entry_chase.max_slip_r must be >= 0")


@dataclass(frozen=True, slots=True)
class BacktestConfig:
    """
    Immutable run configuration.

    Attributes
    ----------
    starting_equity : float
    risk_pct : float
        Equity risked per trade, in percent.
    slippage_bps, fee_bps : float
        Market-order slippage and per-unit fee, in basis points.
    scale_out_at_r : float
        R-multiple of the single scale-out (0 disables).
    scale_out_frac : float
        Fraction of the remaining size closed by the scale-out.
    final_tp_r : float
        Take-profit, in R, of the runner after the scale-out.
    max_daily_loss_pct : float
        Daily realised-loss budget in percent of equity (<= 0 disables).
    atr_trail_mult : float
        ATR multiple of the ATR trailing stop (0 disables).
    atr_trail_period : int
    trigger_mode : str | None
        Touch mode for scale-out and pyramiding triggers; ``None`` uses
        ``oco.mode``.
    flatten_at_close : bool
        Market-exit open positions on the US/Eastern 16:00 bar.
    daily_max_trades : int
        Entries allowed per day (0 = unlimited).
    post_loss_cooldown_bars : int
        Bars to stay flat after a stop-loss.
    qty_step, min_qty, max_leverage : float
        Sizing limits.
    reanchor_stop_on_fill : bool
        Rebuild the stop from the actual fill so the planned risk distance
        is preserved.
    max_slip_r_on_fill : float | None
        Refuse fills slipped further than this from the planned entry (in
        planned R); ``None`` disables the guard.
    warmup_bars : int
        Bars used only as history before the first signal request.
    default_entry_expiry_bars : int
        Expiry of a pending order when the signal does not set one.
    """
    starting_equity: float = 10_000.0
    risk_pct: float = 1.0
    slippage_bps: float = 1.0
    fee_bps: float = 0.0
    scale_out_at_r: float = 1.0
    scale_out_frac: float = 0.5
    final_tp_r: float = 3.0
    max_daily_loss_pct: float = 2.0
    atr_trail_mult: float = 0.0
    atr_trail_period: int = 14
    oco: OCOConfig = field(default_factory=OCOConfig)
    trigger_mode: Optional[str] = None
    flatten_at_close: bool = True
    daily_max_trades: int = 0
    post_loss_cooldown_bars: int = 0
    mfe_trail: MFETrailConfig = field(default_factory=MFETrailConfig)
    pyramiding: PyramidingConfig = field(default_factory=PyramidingConfig)
    vol_scale: VolScaleConfig = field(default_factory=VolScaleConfig)
    qty_step: float = 0.001
    min_qty: float = 0.001
    max_leverage: float = 2.0
    entry_chase: EntryChaseConfig = field(default_factory=EntryChaseConfig)
    reanchor_stop_on_fill: bool = True
    max_slip_r_on_fill: Optional[float] = 0.40
    warmup_bars: int = DEFAULT_WARMUP_BARS
    default_entry_expiry_bars: int = DEFAULT_EXPIRY_BARS

    def __post_init__(self) -> None:
        _require(self.starting_equity > 0, "starting_equity must be > 0")
        _require(self.risk_pct > 0, "risk_pct must be > 0")
        _require(self.slippage_bps >= 0, "slippage_bps must be >= 0")
        _require(self.fee_bps >= 0, "fee_bps must be >= 0")
        _require(self.scale_out_at_r >= 0, "scale_out_at_r must be >= 0")
        _fraction(self.scale_out_frac, "scale_out_frac")
        _require(self.atr_trail_mult >= 0, "atr_trail_mult must be >= 0")
        _require(self.atr_trail_period > 0, "atr_trail_period must be > 0")
        _require(self.trigger_mode is None or self.trigger_mode in _MODES,
                 f"trigger_mode must be None or one of {_MODES}, got {self.trigger_mode!r}")
        _require(self.daily_max_trades >= 0, "daily_max_trades must be >= 0")
        _require(self.post_loss_cooldown_bars >= 0, "post_loss_cooldown_bars must be >= 0")
        _require(self.qty_step > 0, "qty_step must be > 0")
        _require(self.min_qty >= 0, "min_qty must be >= 0")
        _require(self.max_leverage > 0, "max_leverage must be > 0")
        _require(self.max_slip_r_on_fill is None or self.max_slip_r_on_fill >= 0,
                 "max_slip_r_on_fill must be None or >= 0")
        _require(self.warmup_bars >= 0, "warmup_bars must be >= 0")
        _require(self.default_entry_expiry_bars >= 1, "default_entry_expiry_bars must be >= 1")

    # ------------------------------------------------------------------ #
    #  Derived values                                                     #
    # ------------------------------------------------------------------ #

    @property
    def risk_fraction(self) -> float:
        return self.risk_pct / 100.0

    @property
    def effective_trigger_mode(self) -> str:
        return self.trigger_mode or self.oco.mode

    @property
    def needs_atr(self) -> bool:
        return self.atr_trail_mult > 0 or self.vol_scale.enabled

    @property
    def atr_period(self) -> int:
        return self.vol_scale.atr_period if self.vol_scale.enabled else self.atr_trail_period

    # ------------------------------------------------------------------ #
    #  Construction helpers                                               #
    # ------------------------------------------------------------------ #

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BacktestConfig":
        """
        Build a configuration from a nested mapping.

        Missing keys take their defaults; unknown keys (top level or nested)
        raise ``ConfigurationError``.
        """
        nested = {f.name: f.default_factory for f in dataclasses.fields(cls)
                  if f.default_factory is not dataclasses.MISSING}
        kwargs: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in cls.__dataclass_fields__:
                raise ConfigurationError(f"Unknown configuration key: {key!r}")
            if key in nested and isinstance(value, Mapping):
                kwargs[key] = _build_nested(nested[key], key, value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def with_overrides(self, **changes: Any) -> "BacktestConfig":
        """Return a copy with top-level fields replaced (nested groups may be dicts)."""
        merged = dataclasses.asdict(self)
        for key, value in changes.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, Mapping):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return BacktestConfig.from_dict(merged)


def _build_nested(factory: Any, name: str, value: Mapping[str, Any]) -> Any:
    allowed = {f.name for f in dataclasses.fields(factory)}
    unknown = set(value) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown keys in {name!r}: {sorted(unknown)}")
    return factory(**value)
