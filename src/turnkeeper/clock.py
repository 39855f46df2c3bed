"""Clock abstraction so segmentation timing can be driven by synthetic time."""

import time
from typing import Protocol


class Clock(Protocol):
    """Source of monotonic time in seconds."""

    def now(self) -> float:
        """Return the current monotonic time in seconds."""
        ...


class MonotonicClock:
    """Wall-clock implementation backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to.

    Example:
        ```python
        clock = ManualClock()
        segmenter.push_frame(frame, clock.now(), voiced=True)
        clock.advance_ms(900)
        segmenter.tick(clock.now())
        ```
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        """Move time forward by a number of seconds."""
        if seconds < 0:
            raise ValueError(f"Cannot move clock backwards: {seconds}")
        self._now += seconds

    def advance_ms(self, ms: float) -> None:
        """Move time forward by a number of milliseconds."""
        self.advance(ms / 1000.0)
