"""
Run-scoped diagnostics.

A ``RunContext`` is created for (or handed to) each backtest run and passed
to the signal callable on every request.  Engine and strategy both record
why things did or did not happen (``context.note("no_sweep")``); the counts
are returned on the result instead of being kept in process-wide state.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class RunContext:
    """
    Logger and diagnostic counters owned by one backtest run.

    Parameters
    ----------
    symbol : str
        Instrument being simulated; used to name the logger.
    logger : logging.Logger | None
        Defaults to ``barflow.run.<symbol>``.
    """
    symbol: str = ""
    logger: Optional[logging.Logger] = None
    counts: Counter = field(default_factory=Counter)

    def __post_init__(self) -> None:
        if self.logger is None:
            name = f"barflow.run.{self.symbol}" if self.symbol else "barflow.run"
            self.logger = logging.getLogger(name)

    def note(self, reason: str, n: int = 1) -> None:
        """Increment the counter for ``reason``."""
        self.counts[reason] += n

    def snapshot(self) -> Dict[str, int]:
        """Plain-dict copy of the counters, most common first."""
        return dict(self.counts.most_common())
