"""
Run-scoped deadline (monotonic clock).
"""

from __future__ import annotations

import time

from kustoprobe.errors import DeadlineExceeded


class Deadline:
    """
    A single cancellation budget shared by every network wait in a run.

    `timeout_s <= 0` means unbounded.
    """

    def __init__(self, timeout_s: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self.timeout_s = float(timeout_s)
        self._started = float(clock())

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(0.0)

    @property
    def bounded(self) -> bool:
        return self.timeout_s > 0

    def elapsed(self) -> float:
        return max(0.0, float(self._clock()) - self._started)

    def remaining(self) -> float | None:
        if not self.bounded:
            return None
        return max(0.0, self.timeout_s - self.elapsed())

    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0.0

    def check(self, stage: str) -> None:
        if self.expired():
            raise DeadlineExceeded(f"run deadline of {self.timeout_s:.1f}s exceeded", stage=stage)

    def cap(self, timeout_s: float) -> float:
        """Clamp a per-operation timeout to what is left of the run."""
        rem = self.remaining()
        t = max(0.0, float(timeout_s))
        if rem is None:
            return t
        return min(t, rem)
