"""
backtester: bar-by-bar OHLC trading simulator.

Architecture
~~~~~~~~~~~~
- **models**:       Data classes and enums (Bar, Signal, OpenPosition, ClosedLeg, …)
- **config**:       Frozen run configuration with nested option groups
- **execution**:    Slippage / fee fill model
- **sizing**:       Risk-based position sizing with lot stepping and leverage cap
- **exits**:        OCO stop/target evaluation and stop clamping
- **risk**:         Per-bar management of an open position (trails, scale-out, adds, vol cut)
- **engine**:       Core backtester loop
- **metrics**:      Post-trade performance analytics (Sharpe, Sortino, drawdown, …)
- **report**:       Trade-log DataFrame and CSV export
- **context**:      Run-scoped logger and diagnostic counters

Quick start
~~~~~~~~~~~
>>> from barflow.backtester import BacktestEngine, BacktestConfig
>>> engine = BacktestEngine(BacktestConfig(risk_pct=0.5, fee_bps=1.0))
>>> result = engine.run(bars, my_signal, symbol="SPY")
>>> result.metrics.sharpe_daily
"""

from barflow.backtester.models import (
    Side,
    ExitReason,
    FillKind,
    Bar,
    Fill,
    Signal,
    PendingOrder,
    OpenPosition,
    ClosedLeg,
    EquitySample,
)
from barflow.backtester.config import (
    OCOConfig,
    MFETrailConfig,
    PyramidingConfig,
    VolScaleConfig,
    EntryChaseConfig,
    BacktestConfig,
)
from barflow.backtester.execution import apply_fill, FillModel
from barflow.backtester.sizing import round_step, position_size
from barflow.backtester.exits import ExitCheck, oco_exit_check, touched_limit, clamp_stop
from barflow.backtester.risk import RiskManager
from barflow.backtester.context import RunContext
from barflow.backtester.metrics import PerformanceMetrics, compute_metrics
from barflow.backtester.report import legs_to_dataframe, export_trades_csv
from barflow.backtester.engine import BacktestEngine, BacktestResult, run_backtest

__all__ = [
    # Models
    "Side",
    "ExitReason",
    "FillKind",
    "Bar",
    "Fill",
    "Signal",
    "PendingOrder",
    "OpenPosition",
    "ClosedLeg",
    "EquitySample",
    # Config
    "OCOConfig",
    "MFETrailConfig",
    "PyramidingConfig",
    "VolScaleConfig",
    "EntryChaseConfig",
    "BacktestConfig",
    # Execution
    "apply_fill",
    "FillModel",
    # Sizing
    "round_step",
    "position_size",
    # Exits
    "ExitCheck",
    "oco_exit_check",
    "touched_limit",
    "clamp_stop",
    # Risk
    "RiskManager",
    # Context
    "RunContext",
    # Metrics
    "PerformanceMetrics",
    "compute_metrics",
    # Report
    "legs_to_dataframe",
    "export_trades_csv",
    # Engine
    "BacktestEngine",
    "BacktestResult",
    "run_backtest",
]
