"""Per-participant fixed-window rate limiting.

Each participant has one window shared by both request kinds
(transcription and synthesis) with a separate counter and ceiling per kind.
A refused request is a policy decision, not an error: callers simply skip
the operation.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from turnkeeper.clock import Clock, MonotonicClock
from turnkeeper.config import RateLimitConfig
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    """Kinds of rate-limited operations."""

    TRANSCRIPTION = "stt"
    SYNTHESIS = "tts"


@dataclass
class RateWindow:
    """Counters for one participant within the current window."""

    window_start: float
    counts: dict[RequestKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in RequestKind}
    )

    def reset(self, now: float) -> None:
        """Start a new window at ``now`` with zeroed counters."""
        self.window_start = now
        for kind in self.counts:
            self.counts[kind] = 0


class RateLimiter:
    """Fixed-window request counter per (participant, kind).

    Thread-safety: NOT thread-safe. Use from the event loop only.

    Example:
        ```python
        limiter = RateLimiter(RateLimitConfig(window_ms=60000, stt_max=10))
        if not limiter.allow(participant_id, RequestKind.TRANSCRIPTION):
            return  # silently skip
        ```
    """

    def __init__(self, config: RateLimitConfig, clock: Clock | None = None) -> None:
        self._config = config
        self._clock = clock or MonotonicClock()
        self._window_s = config.window_ms / 1000.0
        self._ceilings = {
            RequestKind.TRANSCRIPTION: config.stt_max,
            RequestKind.SYNTHESIS: config.tts_max,
        }
        self._windows: dict[str, RateWindow] = {}

    def allow(self, participant_id: str, kind: RequestKind, now: float | None = None) -> bool:
        """Count a request and report whether it may proceed.

        Args:
            participant_id: Requesting participant
            kind: Request kind
            now: Monotonic time in seconds (defaults to the limiter clock)

        Returns:
            True if the request is within the ceiling (and was counted),
            False if refused (not counted)
        """
        if now is None:
            now = self._clock.now()

        window = self._windows.get(participant_id)
        if window is None:
            window = RateWindow(window_start=now)
            self._windows[participant_id] = window

        if now - window.window_start >= self._window_s:
            window.reset(now)

        if window.counts[kind] >= self._ceilings[kind]:
            log_event(f"rate_limited_{kind.value}", {"participant_id": participant_id})
            return False

        window.counts[kind] += 1
        return True

    def count(self, participant_id: str, kind: RequestKind) -> int:
        """Requests counted for a participant in its current window."""
        window = self._windows.get(participant_id)
        return window.counts[kind] if window is not None else 0

    def prune(self, now: float | None = None) -> int:
        """Drop windows that have expired.

        An expired window would be reset on the next request anyway, so
        dropping it never changes a decision.

        Returns:
            Number of windows dropped
        """
        if now is None:
            now = self._clock.now()

        expired = [
            participant_id
            for participant_id, window in self._windows.items()
            if now - window.window_start >= self._window_s
        ]
        for participant_id in expired:
            del self._windows[participant_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
