"""Barge-in detection during synthesized playback.

While a destination is playing synthesized speech, incoming frames are not
fed to the segmenter (so playback bleed is never taken for an utterance).
Instead each frame is checked against a barge-in threshold; a couple of
closely spaced hits interrupt playback and the triggering frame falls through
to normal segmentation, so the interrupting speech starts a new utterance.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from turnkeeper.audio.energy import compute_rms
from turnkeeper.config import BargeInConfig

logger = logging.getLogger(__name__)


class BargeInDecision(Enum):
    """What the caller should do with a frame."""

    PASS = "pass"  # Playback inactive: segment normally
    DISCARD = "discard"  # Playback active, no interruption: drop the frame
    TRIGGER = "trigger"  # Interrupt playback, then segment the frame


@dataclass
class BargeInTracker:
    """Per-participant hit counter."""

    hits: int = 0
    last_hit_at: float | None = None

    def reset(self) -> None:
        self.hits = 0
        self.last_hit_at = None


class BargeInMonitor:
    """Debounced barge-in detector.

    Thread-safety: Stateless apart from the tracker passed in; call from the
    task that owns the tracker.

    Example:
        ```python
        monitor = BargeInMonitor(BargeInConfig(threshold=0.02))
        decision = monitor.observe(segmenter.barge, frame, now, playback.is_active)
        if decision is BargeInDecision.TRIGGER:
            playback.interrupt()
        ```
    """

    def __init__(self, config: BargeInConfig) -> None:
        self._config = config
        self._window_s = config.coalesce_window_ms / 1000.0

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def observe(
        self,
        tracker: BargeInTracker,
        frame: bytes,
        now: float,
        playback_active: bool,
    ) -> BargeInDecision:
        """Classify a frame against the barge-in policy.

        Args:
            tracker: Hit state of the participant who sent the frame
            frame: Raw PCM frame
            now: Monotonic time in seconds
            playback_active: Whether the destination is currently playing

        Returns:
            Decision for the frame
        """
        if not playback_active:
            return BargeInDecision.PASS

        if not self._config.enabled or not frame:
            return BargeInDecision.DISCARD

        rms = compute_rms(frame)
        if rms < self._config.threshold:
            return BargeInDecision.DISCARD

        if tracker.last_hit_at is not None and now - tracker.last_hit_at < self._window_s:
            tracker.hits += 1
        else:
            tracker.hits = 1
        tracker.last_hit_at = now

        if tracker.hits < self._config.required_hits:
            logger.debug(f"Barge-in hit {tracker.hits}/{self._config.required_hits} (rms={rms:.4f})")
            return BargeInDecision.DISCARD

        tracker.hits = 0
        return BargeInDecision.TRIGGER
