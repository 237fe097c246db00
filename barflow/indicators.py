'''
Indicators computed over a bar series.
'''

from typing import Sequence

import numpy as np

from barflow.backtester.models import Bar


def true_range(bars: Sequence[Bar]) -> np.ndarray:

    """
    True range of each bar; the first bar uses its own high-low range.
    """

    if not bars:
        return np.empty(0, dtype=np.float64)

    high  = np.fromiter((b.high for b in bars), dtype=np.float64, count=len(bars))
    low   = np.fromiter((b.low for b in bars), dtype=np.float64, count=len(bars))
    close = np.fromiter((b.close for b in bars), dtype=np.float64, count=len(bars))

    prev_close = np.roll(close, 1)
    tr = np.maximum(high - low, np.maximum(np.abs(high - prev_close), np.abs(low - prev_close)))
    tr[0] = high[0] - low[0]

    return tr

def atr(bars: Sequence[Bar], period: int = 14) -> np.ndarray:

    """
    Wilder's Average True Range.

    The first value (index ``period - 1``) is the simple mean of the first
    ``period`` true ranges; earlier entries are NaN.  Subsequent values use
    Wilder smoothing: ``(prev * (period - 1) + tr) / period``.
    """

    if period <= 0:
        raise ValueError("Parameter named period must be a positive integer.")

    tr  = true_range(bars)
    out = np.full(len(tr), np.nan, dtype=np.float64)

    if len(tr) < period:
        return out

    prev = float(tr[:period].mean())
    out[period - 1] = prev
    for i in range(period, len(tr)):
        prev = (prev * (period - 1) + tr[i]) / period
        out[i] = prev

    return out
