'''
Bar ingestion: turn provider output into the clean, ascending bar series the engine expects.
'''

import re
from typing import Iterable, List, Sequence, Union

import numpy as np
import pandas as pd
import polars as pl

from barflow.backtester.models import Bar
from barflow.configuration import (
    BAR_MS_MAX_SAMPLES,
    BAR_MS_MIN_SAMPLES,
    DEFAULT_BAR_MS,
    MAX_BAR_MS,
    MIN_BAR_MS,
)
from barflow.exceptions import InvalidPeriod


REQUIRED_COLUMNS = ("time", "open", "high", "low", "close")
DAY_MS           = 24 * 60 * 60 * 1000
_PERIOD_UNITS_MS = {
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": DAY_MS,
    "w": 7 * DAY_MS,
    "y": 365.25 * DAY_MS,
}
_PERIOD_RE       = re.compile(r"^(\d+)([mhdwy])$", re.IGNORECASE)


def parse_period_ms(period: str) -> int:

    """
    Convert a look-back period such as ``"5d"``, ``"60d"`` or ``"1y"`` into milliseconds.
    Units: m (minutes), h, d, w, y (365.25 days).
    """

    match = _PERIOD_RE.match(str(period).strip())
    if not match:
        raise InvalidPeriod(f"Invalid period: {period!r} (use like '5d', '60d', '1y')")

    n, unit = int(match.group(1)), match.group(2).lower()

    return int(round(n * _PERIOD_UNITS_MS[unit]))

def sanitize_bars(bars: Iterable[Bar]) -> List[Bar]:

    """
    Drop bars with a non-finite OHLC value, de-duplicate by timestamp (the last bar wins)
    and sort ascending by time.
    """

    by_time = {}
    for bar in bars:
        if not bar.is_finite:
            continue
        by_time[bar.time] = bar

    return sorted(by_time.values(), key=lambda b: b.time)

def _time_column_to_ms(values: pd.Series) -> np.ndarray:

    if pd.api.types.is_datetime64_any_dtype(values):
        stamps = pd.to_datetime(values, utc=True)
        return (stamps - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)

    return values.astype(np.int64).to_numpy()

def bars_from_frame(df: Union[pd.DataFrame, pl.DataFrame]) -> List[Bar]:

    """
    Build a sanitized bar list from a pandas or polars DataFrame.

    Required columns: ``time`` (epoch milliseconds or datetimes), ``open``, ``high``, ``low``,
    ``close``.  Optional: ``volume``.  Column names are matched case-insensitively.
    """

    if isinstance(df, pl.DataFrame):
        df = df.to_pandas()

    if not isinstance(df, pd.DataFrame):
        raise ValueError("Parameter named df, must be a DataFrame from the Pandas or Polars package.")

    df      = df.rename(columns={c: str(c).strip().lower() for c in df.columns})
    missing = set(REQUIRED_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(
            f"Input data is missing required columns: {missing}. "
            f"Expected columns: {sorted(REQUIRED_COLUMNS)}"
        )

    times  = np.asarray(_time_column_to_ms(df["time"]), dtype=np.int64)
    volume = df["volume"].fillna(0.0).to_numpy(dtype=np.float64) if "volume" in df.columns else np.zeros(len(df))
    ohlc   = df[["open", "high", "low", "close"]].to_numpy(dtype=np.float64)

    bars = (
        Bar(time=int(t), open=float(o), high=float(h), low=float(l), close=float(c), volume=float(v))
        for t, (o, h, l, c), v in zip(times, ohlc, volume)
    )

    return sanitize_bars(bars)

def estimate_bar_ms(bars: Sequence[Bar]) -> float:

    """
    Nominal bar duration: median of the positive time deltas over the first 500 bars,
    clamped to [1 min, 60 min].  Falls back to 5 minutes with fewer than 50 bars.
    """

    if len(bars) >= BAR_MS_MIN_SAMPLES:
        times  = np.array([b.time for b in bars[:BAR_MS_MAX_SAMPLES]], dtype=np.float64)
        deltas = np.diff(times)
        deltas = deltas[np.isfinite(deltas) & (deltas > 0)]
        if len(deltas):
            median = float(np.median(deltas))
            return max(float(MIN_BAR_MS), min(median, float(MAX_BAR_MS)))

    return float(DEFAULT_BAR_MS)
