"""Time budget shared by every long-running loop of a sync run."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class Deadline:
    """An absolute point in time, measured on a monotonic clock.

    Loops call ``should_stop()`` after each unit of work (one row chunk, one
    file) and stop starting new work once less than ``safety_margin`` seconds
    remain.
    """

    expires_at: float
    safety_margin: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def after(
        cls,
        seconds: float,
        safety_margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> Deadline:
        """Create a deadline ``seconds`` from now."""
        return cls(expires_at=clock() + seconds, safety_margin=safety_margin, clock=clock)

    def remaining(self) -> float:
        """Seconds left until the deadline (negative once passed)."""
        return self.expires_at - self.clock()

    def should_stop(self) -> bool:
        """True once the remaining time has dropped below the safety margin."""
        return self.remaining() < self.safety_margin
