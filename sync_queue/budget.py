"""Cooperative processing budget.

The queue processor runs inside a bounded host invocation (a Temporal
activity with a start-to-close timeout). The budget is checked between
entries, never in the middle of one.
"""

import time
from typing import Callable, Optional


class Budget:
    """Time and unit budget for one drain.

    Args:
        time_limit_seconds: Wall-clock allowance (None for unlimited)
        max_units: Maximum number of charged units (None for unlimited)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        time_limit_seconds: Optional[float] = None,
        max_units: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.time_limit_seconds = time_limit_seconds
        self.max_units = max_units
        self._clock = clock
        self._started = clock()
        self.units_used = 0

    @classmethod
    def unlimited(cls) -> "Budget":
        return cls()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    def charge(self, units: int = 1) -> None:
        self.units_used += units

    def exhausted(self) -> bool:
        if self.max_units is not None and self.units_used >= self.max_units:
            return True
        if self.time_limit_seconds is not None and self.elapsed_seconds >= self.time_limit_seconds:
            return True
        return False
