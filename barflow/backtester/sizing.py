"""
Risk-based position sizing.
"""

from __future__ import annotations

import math

from barflow.configuration import DIV_FLOOR


def round_step(x: float, step: float = 0.001) -> float:
    """Round ``x`` **down** to a multiple of ``step`` (never to nearest)."""
    return math.floor(x / step) * step


def position_size(
    equity: float,
    entry: float,
    stop: float,
    risk_fraction: float = 0.01,
    qty_step: float = 0.001,
    min_qty: float = 0.001,
    max_leverage: float = 2.0,
) -> float:
    """
    Quantity that risks ``equity * risk_fraction`` between ``entry`` and ``stop``.

    The raw quantity is capped so notional never exceeds
    ``equity * max_leverage`` and then floored to ``qty_step``, so the
    realised risk never exceeds the requested fraction.

    Returns
    -------
    float
        The quantity, or ``0.0`` when the stop distance is degenerate
        (zero, negative or non-finite) or the floored quantity is below
        ``min_qty``.  Callers treat ``0.0`` as "cannot trade".
    """
    per_unit_risk = abs(entry - stop)
    if not math.isfinite(per_unit_risk) or per_unit_risk <= 0:
        return 0.0

    dollar_risk = max(0.0, equity * risk_fraction)
    qty = dollar_risk / per_unit_risk

    # leverage guard
    max_qty = equity * max_leverage / max(DIV_FLOOR, entry)
    qty = min(qty, max_qty)

    qty = round_step(qty, qty_step)
    return qty if qty >= min_qty else 0.0
