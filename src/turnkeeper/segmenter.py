"""Per-participant utterance segmentation state machine.

Buffers a participant's frames, detects utterance boundaries from silence
timing and emits finalized utterances. The segmenter is synchronous and
clock-free: every input carries ``now`` (monotonic seconds), so the same
logic runs under the capture loop in production and under synthetic time
in tests.

State Transitions:
- IDLE → ACTIVE (on first voiced frame; buffer seeded with pre-roll)
- ACTIVE → FINALIZING (on tick: max duration, or silence after min duration)
- FINALIZING → IDLE (same call; utterance emitted if long enough)
- ACTIVE → IDLE (on tick: stuck-utterance guard, or on discard)
"""

import itertools
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from turnkeeper.audio.buffer import PreRollBuffer, UtteranceBuffer
from turnkeeper.barge_in import BargeInTracker
from turnkeeper.config import AudioFormatConfig, SegmenterConfig
from turnkeeper.metrics import MetricsCollector
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


class SegmenterState(Enum):
    """Segmenter states.

    FINALIZING is only observable during the synchronous finalize call; no
    frame can arrive while in it.
    """

    IDLE = "idle"
    ACTIVE = "active"
    FINALIZING = "finalizing"


VALID_TRANSITIONS: dict[SegmenterState, set[SegmenterState]] = {
    SegmenterState.IDLE: {SegmenterState.ACTIVE},
    SegmenterState.ACTIVE: {SegmenterState.FINALIZING, SegmenterState.IDLE},
    SegmenterState.FINALIZING: {SegmenterState.IDLE},
}


class FinalizeReason(str, Enum):
    """Why an utterance was finalized."""

    SILENCE_TIMEOUT = "silence timeout"
    MAX_DURATION = "max duration"


@dataclass(frozen=True)
class Utterance:
    """A finalized utterance ready for transcription."""

    audio: bytes  # Interleaved 16-bit PCM, frames in arrival order
    participant_id: str
    destination_id: str
    group_id: str
    reason: FinalizeReason
    duration_ms: int
    started_at: float
    sequence: int  # Monotonic per participant

    def __repr__(self) -> str:
        return (
            f"Utterance(participant_id={self.participant_id!r}, "
            f"destination_id={self.destination_id!r}, "
            f"reason={self.reason.value!r}, duration_ms={self.duration_ms}, "
            f"sequence={self.sequence}, bytes={len(self.audio)})"
        )


class UtteranceSegmenter:
    """Utterance segmenter for one participant.

    Thread-safety: NOT thread-safe. Frames and ticks must be delivered from a
    single task (see ParticipantCapture).

    Example:
        ```python
        segmenter = UtteranceSegmenter("user-1", "channel-1", "guild-1", config)

        segmenter.push_frame(frame, now=clock.now(), voiced=True)
        utterance = segmenter.tick(now=clock.now())
        if utterance is not None:
            pipeline.submit(utterance)
        ```
    """

    def __init__(
        self,
        participant_id: str,
        destination_id: str,
        group_id: str,
        config: SegmenterConfig,
        audio_format: AudioFormatConfig | None = None,
        sequence: Iterator[int] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize segmenter in IDLE state.

        Args:
            participant_id: Participant whose audio is segmented
            destination_id: Destination (voice channel) of the session
            group_id: Parent group of the destination
            config: Segmentation thresholds
            audio_format: Format of incoming frames (default 48kHz stereo)
            sequence: Shared per-participant utterance counter
            metrics: Optional metrics collector
        """
        self.participant_id = participant_id
        self.destination_id = destination_id
        self.group_id = group_id

        self._config = config
        audio_format = audio_format or AudioFormatConfig()
        self._sequence = sequence if sequence is not None else itertools.count(1)
        self._metrics = metrics

        self.pre_roll = PreRollBuffer(
            config.pre_roll_ms,
            sample_rate=audio_format.sample_rate,
            channels=audio_format.channels,
        )
        self.buffer = UtteranceBuffer(
            sample_rate=audio_format.sample_rate,
            channels=audio_format.channels,
        )
        self.barge = BargeInTracker()

        self._state = SegmenterState.IDLE
        self.started_at: float | None = None
        self.last_voiced_at: float | None = None
        self._too_long_logged = False

    @property
    def state(self) -> SegmenterState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SegmenterState.ACTIVE

    def _transition(self, new_state: SegmenterState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise ValueError(
                f"Invalid segmenter transition: {self._state.value} → {new_state.value}"
            )
        self._state = new_state

    def _event_data(self, **data: object) -> dict[str, object]:
        return {
            "participant_id": self.participant_id,
            "destination_id": self.destination_id,
            **data,
        }

    def push_frame(self, frame: bytes, now: float, voiced: bool) -> None:
        """Feed one frame.

        Args:
            frame: Raw PCM frame
            now: Monotonic time of arrival in seconds
            voiced: Energy classification of the frame
        """
        if self._state == SegmenterState.IDLE:
            self.pre_roll.append(frame)
            if not voiced:
                return

            # The triggering frame is the newest pre-roll entry
            self._transition(SegmenterState.ACTIVE)
            self.buffer.clear()
            self.buffer.extend(self.pre_roll.drain())
            self.started_at = now
            self.last_voiced_at = now
            self._too_long_logged = False

            log_event(
                "utterance_start",
                self._event_data(pre_roll_ms=self.buffer.duration_ms()),
            )
            return

        if voiced:
            self.last_voiced_at = now
        self.buffer.append(frame)

        if not self._too_long_logged:
            duration_ms = self.buffer.duration_ms()
            if duration_ms >= self._config.max_utterance_ms:
                # Finalized on the next tick
                self._too_long_logged = True
                log_event("utterance_too_long", self._event_data(duration_ms=duration_ms))

    def tick(self, now: float) -> Utterance | None:
        """Evaluate silence and duration limits.

        Args:
            now: Current monotonic time in seconds

        Returns:
            The finalized utterance, or None
        """
        if self._state != SegmenterState.ACTIVE or self.last_voiced_at is None:
            return None

        silence_ms = (now - self.last_voiced_at) * 1000.0
        duration_ms = self.buffer.duration_ms()

        if duration_ms >= self._config.max_utterance_ms:
            return self._finalize(FinalizeReason.MAX_DURATION)

        if silence_ms >= self._config.silence_ms and duration_ms >= self._config.min_utterance_ms:
            return self._finalize(FinalizeReason.SILENCE_TIMEOUT)

        if silence_ms >= self._config.stuck_after_ms:
            self.discard(reason="stuck")

        return None

    def _finalize(self, reason: FinalizeReason) -> Utterance | None:
        self._transition(SegmenterState.FINALIZING)
        duration_ms = self.buffer.duration_ms()

        log_event(
            "recording_end",
            self._event_data(duration_ms=duration_ms, reason=reason.value),
        )

        utterance: Utterance | None = None
        if duration_ms >= self._config.min_utterance_ms:
            utterance = Utterance(
                audio=self.buffer.get_audio(),
                participant_id=self.participant_id,
                destination_id=self.destination_id,
                group_id=self.group_id,
                reason=reason,
                duration_ms=duration_ms,
                started_at=self.started_at if self.started_at is not None else 0.0,
                sequence=next(self._sequence),
            )
            if self._metrics is not None:
                self._metrics.record_utterance_finalized(reason.value, duration_ms / 1000.0)

        self._reset()
        return utterance

    def discard(self, reason: str) -> None:
        """Drop any in-progress utterance without emitting and return to IDLE."""
        if self._state == SegmenterState.ACTIVE:
            log_event(
                "utterance_discarded",
                self._event_data(duration_ms=self.buffer.duration_ms(), reason=reason),
            )
            if self._metrics is not None:
                self._metrics.record_utterance_discarded(reason)
        self._reset()

    def clear_pre_roll(self) -> None:
        """Forget idle audio so it can never seed an utterance."""
        self.pre_roll.clear()

    def _reset(self) -> None:
        if self._state != SegmenterState.IDLE:
            self._transition(SegmenterState.IDLE)
        self.buffer.clear()
        self.pre_roll.clear()
        self.started_at = None
        self.last_voiced_at = None
        self._too_long_logged = False

    def __repr__(self) -> str:
        return (
            f"UtteranceSegmenter(participant_id={self.participant_id!r}, "
            f"state={self._state.value}, buffer={self.buffer!r})"
        )
