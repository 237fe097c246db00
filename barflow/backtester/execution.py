"""
Slippage and fee model.

The execution layer turns an *ideal* price into a *realistic* fill by
accounting for:

* Slippage in basis points, scaled by the order kind
  (``limit`` x0.25, ``market`` x1.0, ``stop`` x1.25)
* A per-unit fee in basis points of the filled price

Slippage always works **against** the trader:

- buying (long entry, short exit)  -> price goes UP
- selling (short entry, long exit) -> price goes DOWN
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from barflow.backtester.models import Fill, FillKind, Side


_KIND_MULTIPLIER = {
    FillKind.MARKET: 1.0,
    FillKind.LIMIT: 0.25,
    FillKind.STOP: 1.25,
}


def apply_fill(
    price: float,
    side: Union[Side, str],
    slippage_bps: float = 0.0,
    fee_bps: float = 0.0,
    kind: Union[FillKind, str] = FillKind.MARKET,
) -> Fill:
    """
    Fill ``price`` for an order on ``side``.

    Returns
    -------
    Fill
        ``price`` after slippage, and ``fee`` **per unit** (multiply by the
        quantity for the total fee).
    """
    eff_bps = slippage_bps * _KIND_MULTIPLIER[FillKind(kind)]
    slip = price * eff_bps / 10_000
    filled = price + slip if Side(side) is Side.LONG else price - slip
    fee = fee_bps / 10_000 * abs(filled)
    return Fill(price=filled, fee=fee)


@dataclass(frozen=True, slots=True)
class FillModel:
    """
    ``apply_fill`` bound to one run's cost parameters.

    Parameters
    ----------
    slippage_bps : float
        Market-order slippage in basis points.
    fee_bps : float
        Fee in basis points of the filled price.

    Examples
    --------
    >>> fm = FillModel(slippage_bps=2.0, fee_bps=1.0)
    >>> fm.entry(100.0, Side.LONG, FillKind.LIMIT).price
    100.005
    """
    slippage_bps: float = 0.0
    fee_bps: float = 0.0

    def entry(self, price: float, side: Side, kind: FillKind) -> Fill:
        """Fill an order that opens (or adds to) a position on ``side``."""
        return apply_fill(price, side, self.slippage_bps, self.fee_bps, kind)

    def exit(self, price: float, side: Side, kind: FillKind) -> Fill:
        """Fill an order that closes (part of) a position on ``side``."""
        return apply_fill(price, side.opposite, self.slippage_bps, self.fee_bps, kind)
