"""
Calendar helpers.

Bar timestamps are epoch milliseconds in UTC.  The daily risk budget and
end-of-day flattening follow the US/Eastern calendar (daylight saving
included), while daily performance statistics bucket on UTC days.  The
vectorised helpers convert a whole bar series once so the per-bar loop
only does array look-ups.
"""

from __future__ import annotations

import datetime
from typing import Sequence

import numpy as np
import pandas as pd

from barflow.configuration import MARKET_TIMEZONE, SESSION_CLOSE_TIME


def _to_market_time(times_ms: Sequence[int], tz: str) -> pd.DatetimeIndex:
    return pd.to_datetime(np.asarray(times_ms, dtype=np.int64), unit="ms", utc=True).tz_convert(tz)


def eastern_day_keys(times_ms: Sequence[int], tz: str = MARKET_TIMEZONE) -> np.ndarray:
    """Local calendar date (``datetime.date``) of each timestamp in ``tz``."""
    if len(times_ms) == 0:
        return np.empty(0, dtype=object)
    return np.asarray(_to_market_time(times_ms, tz).date, dtype=object)


def eod_mask(
    times_ms: Sequence[int],
    close_time: datetime.time = SESSION_CLOSE_TIME,
    tz: str = MARKET_TIMEZONE,
) -> np.ndarray:
    """True where the local wall-clock time in ``tz`` is at or after ``close_time``."""
    if len(times_ms) == 0:
        return np.empty(0, dtype=bool)
    local = _to_market_time(times_ms, tz)
    minutes = np.asarray(local.hour * 60 + local.minute)
    return minutes >= close_time.hour * 60 + close_time.minute


def is_eod_bar(time_ms: int, close_time: datetime.time = SESSION_CLOSE_TIME, tz: str = MARKET_TIMEZONE) -> bool:
    """Scalar form of ``eod_mask``."""
    return bool(eod_mask([time_ms], close_time, tz)[0])


def iso_utc(time_ms: int) -> str:
    """ISO-8601 UTC string with millisecond precision, e.g. ``2024-01-02T14:30:00.000Z``."""
    ts = pd.Timestamp(time_ms, unit="ms", tz="UTC")
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"
