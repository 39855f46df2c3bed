"""Frame buffers used by the utterance segmenter.

This module provides the two buffers a segmenter owns:

- UtteranceBuffer accumulates every frame of an active utterance and
  reports its duration from the byte count.
- PreRollBuffer is a ring of the most recent frames seen while idle,
  trimmed to a time budget, used to seed an utterance so its first
  syllable is not lost to classifier lag.

Design:
    idle frames → pre-roll ring → (voiced) → seeded into utterance buffer
    → frames appended until finalize → buffer joined and cleared

Thread-safety: NOT thread-safe. Each buffer is owned by a single segmenter,
which is only mutated from its capture's processing task.
"""

import logging
from collections import deque
from typing import Final

logger = logging.getLogger(__name__)

# Constants
DEFAULT_SAMPLE_RATE: Final[int] = 48000  # Hz
DEFAULT_CHANNELS: Final[int] = 2  # Stereo
BYTES_PER_SAMPLE: Final[int] = 2  # 16-bit PCM


def _bytes_per_second(sample_rate: int, channels: int) -> int:
    if sample_rate <= 0:
        raise ValueError(f"Sample rate must be positive, got {sample_rate}")
    if channels not in (1, 2):
        raise ValueError(f"Channels must be 1 (mono) or 2 (stereo), got {channels}")
    return sample_rate * channels * BYTES_PER_SAMPLE


class UtteranceBuffer:
    """Ordered accumulation of the frames of one utterance.

    Example:
        ```python
        buffer = UtteranceBuffer(sample_rate=48000, channels=2)
        buffer.extend(pre_roll.frames)
        buffer.append(frame)
        if buffer.duration_ms() >= min_utterance_ms:
            audio = buffer.get_audio()
        buffer.clear()
        ```
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
    ) -> None:
        """Initialize utterance buffer.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of interleaved channels (1=mono, 2=stereo)

        Raises:
            ValueError: If parameters are invalid
        """
        self._bytes_per_second = _bytes_per_second(sample_rate, channels)
        self.sample_rate = sample_rate
        self.channels = channels

        self._frames: list[bytes] = []
        self._total_bytes = 0

    def append(self, frame: bytes) -> None:
        """Append one frame. Empty frames are accepted and contribute nothing."""
        self._frames.append(frame)
        self._total_bytes += len(frame)

    def extend(self, frames: list[bytes]) -> None:
        """Append frames in order."""
        for frame in frames:
            self.append(frame)

    def get_audio(self) -> bytes:
        """Get all buffered audio as a single bytes object.

        Does NOT clear the buffer.
        """
        return b"".join(self._frames)

    def clear(self) -> None:
        """Drop all frames."""
        self._frames.clear()
        self._total_bytes = 0

    def duration_ms(self) -> int:
        """Get duration of buffered audio in milliseconds (rounded)."""
        return round(self._total_bytes / self._bytes_per_second * 1000)

    @property
    def frames(self) -> list[bytes]:
        """Copy of the buffered frames, oldest first."""
        return list(self._frames)

    @property
    def frame_count(self) -> int:
        """Number of frames currently in buffer."""
        return len(self._frames)

    @property
    def byte_count(self) -> int:
        """Number of bytes currently in buffer."""
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._frames)

    def __repr__(self) -> str:
        return (
            f"UtteranceBuffer(sample_rate={self.sample_rate}, "
            f"channels={self.channels}, "
            f"frames={len(self._frames)}, "
            f"bytes={self._total_bytes}, "
            f"duration_ms={self.duration_ms()})"
        )


class PreRollBuffer:
    """Ring of the most recent frames, bounded by a time budget.

    Unlike a fixed-capacity ring, trimming is by buffered duration: once the
    total exceeds the budget the oldest frames are discarded, but the newest
    frame is always kept even if it alone exceeds the budget.

    Example:
        ```python
        # Keep the last 300ms of idle audio
        pre_roll = PreRollBuffer(max_duration_ms=300)
        for frame in idle_frames:
            pre_roll.append(frame)
        seed = pre_roll.drain()
        ```
    """

    def __init__(
        self,
        max_duration_ms: int,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
    ) -> None:
        """Initialize pre-roll ring.

        Args:
            max_duration_ms: Retention budget in milliseconds
            sample_rate: Sample rate in Hz
            channels: Number of interleaved channels

        Raises:
            ValueError: If parameters are invalid
        """
        if max_duration_ms < 0:
            raise ValueError(f"Max duration must be non-negative, got {max_duration_ms}")

        bytes_per_second = _bytes_per_second(sample_rate, channels)
        self.max_duration_ms = max_duration_ms
        self._max_bytes = int(max_duration_ms / 1000 * bytes_per_second)
        self._bytes_per_second = bytes_per_second

        self._frames: deque[bytes] = deque()
        self._total_bytes = 0

    def append(self, frame: bytes) -> None:
        """Append frame, discarding oldest frames beyond the budget."""
        self._frames.append(frame)
        self._total_bytes += len(frame)

        while self._total_bytes > self._max_bytes and len(self._frames) > 1:
            oldest_frame = self._frames.popleft()
            self._total_bytes -= len(oldest_frame)

    def drain(self) -> list[bytes]:
        """Return the retained frames oldest first and clear the ring."""
        frames = list(self._frames)
        self.clear()
        return frames

    def clear(self) -> None:
        """Drop all retained frames."""
        self._frames.clear()
        self._total_bytes = 0

    def duration_ms(self) -> int:
        """Duration of the retained frames in milliseconds (rounded)."""
        return round(self._total_bytes / self._bytes_per_second * 1000)

    @property
    def frames(self) -> list[bytes]:
        """Copy of the retained frames, oldest first."""
        return list(self._frames)

    @property
    def byte_count(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._frames)

    def __repr__(self) -> str:
        return (
            f"PreRollBuffer(max_duration_ms={self.max_duration_ms}, "
            f"frames={len(self._frames)}, "
            f"bytes={self._total_bytes}/{self._max_bytes})"
        )
