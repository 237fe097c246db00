from barflow.backtester import (
    BacktestEngine,
    BacktestConfig,
    BacktestResult,
    Bar,
    Signal,
    Side,
    ExitReason,
    RunContext,
    run_backtest
)

from barflow.data import (
    sanitize_bars,
    bars_from_frame,
    parse_period_ms,
    estimate_bar_ms
)

from barflow.indicators import (
    true_range,
    atr
)

from barflow.exceptions import (
    BarflowError,
    ConfigurationError,
    InvalidPeriod,
    SignalError
)
