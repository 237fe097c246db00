"""
Tabular trade log and CSV export.

One row per closed leg (partial exits included) with ISO-8601 UTC open and
close times.  Prices are written with 6 decimals, PnL with 2 and R values
with 3.
"""

from __future__ import annotations

import logging
import os
from typing import Sequence

import pandas as pd

from barflow.backtester.models import ClosedLeg
from barflow.timeutils import iso_utc

logger = logging.getLogger(__name__)

TRADE_LOG_COLUMNS = [
    "time_open", "time_close", "side", "entry", "stop", "take_profit", "exit",
    "reason", "size", "pnl", "r", "mfe_r", "mae_r", "adds", "entry_atr", "exit_atr",
]

_DECIMALS = {
    "entry": 6, "stop": 6, "take_profit": 6, "exit": 6, "size": 6,
    "entry_atr": 6, "exit_atr": 6,
    "pnl": 2,
    "r": 3, "mfe_r": 3, "mae_r": 3,
}


def legs_to_dataframe(legs: Sequence[ClosedLeg]) -> pd.DataFrame:
    """Trade log as a DataFrame with ``TRADE_LOG_COLUMNS``; missing ATR values are NaN."""
    rows = [
        {
            "time_open": iso_utc(leg.open_time),
            "time_close": iso_utc(leg.exit_time),
            "side": leg.side.value,
            "entry": leg.entry,
            "stop": leg.stop,
            "take_profit": leg.take_profit,
            "exit": leg.exit_price,
            "reason": leg.reason.value,
            "size": leg.size,
            "pnl": leg.pnl,
            "r": leg.r_multiple,
            "mfe_r": leg.mfe_r,
            "mae_r": leg.mae_r,
            "adds": leg.adds,
            "entry_atr": leg.entry_atr,
            "exit_atr": leg.exit_atr,
        }
        for leg in legs
    ]
    df = pd.DataFrame(rows, columns=TRADE_LOG_COLUMNS)
    return df.astype({"entry_atr": "float64", "exit_atr": "float64"})


def export_trades_csv(
    legs: Sequence[ClosedLeg],
    out_dir: str,
    symbol: str,
    interval: str = "tf",
    range_: str = "range",
) -> str:
    """
    Write the trade log to ``<out_dir>/trades-<symbol>-<interval>-<range>.csv``.

    The directory is created if needed.  Returns the path written.
    """
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, f"trades-{symbol}-{interval}-{range_}.csv")

    df = legs_to_dataframe(legs).round(_DECIMALS)
    df.to_csv(path, index=False)
    logger.info("Wrote %d legs to %s", len(df), path)
    return path
