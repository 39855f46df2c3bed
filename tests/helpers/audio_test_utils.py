"""Audio and transport testing utilities.

Provides utilities for testing segmentation and turn-taking:
- Synthetic PCM frame generation (voiced and silent) at an exact RMS
- A fake audio receiver whose per-participant streams can be fed, ended or failed
- A fake audio player that can hold playback open until stopped
- Small config factories with timings short enough for real-time tests
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable

import numpy as np

from turnkeeper.config import (
    BargeInConfig,
    RateLimitConfig,
    SegmenterConfig,
    TurnkeeperConfig,
)

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 2
FRAME_MS = 20
FRAME_BYTES = SAMPLE_RATE * CHANNELS * 2 * FRAME_MS // 1000  # 3840


# ============================================================================
# Frame Generation
# ============================================================================


def make_frame(
    rms: float,
    duration_ms: int = FRAME_MS,
    sample_rate: int = SAMPLE_RATE,
    channels: int = CHANNELS,
) -> bytes:
    """Generate an interleaved 16-bit PCM frame with a given normalized RMS.

    Samples alternate between +A and -A, so the RMS is exactly A / 32768.

    Args:
        rms: Target normalized RMS in [0, 1)
        duration_ms: Frame duration in milliseconds
        sample_rate: Sample rate in Hz
        channels: Interleaved channel count

    Returns:
        Raw PCM bytes
    """
    num_samples = sample_rate * duration_ms // 1000 * channels
    amplitude = int(round(rms * 32768))
    samples = np.full(num_samples, amplitude, dtype=np.int16)
    samples[1::2] = -amplitude
    return samples.astype("<i2").tobytes()


def voiced_frame(rms: float = 0.1, duration_ms: int = FRAME_MS) -> bytes:
    """Frame loud enough to be voiced (and to barge in) at default thresholds."""
    return make_frame(rms, duration_ms)


def quiet_frame(rms: float = 0.015, duration_ms: int = FRAME_MS) -> bytes:
    """Frame above the voice threshold but below the barge-in threshold."""
    return make_frame(rms, duration_ms)


def silence_frame(duration_ms: int = FRAME_MS) -> bytes:
    """All-zero frame."""
    return bytes(SAMPLE_RATE * CHANNELS * 2 * duration_ms // 1000)


async def pcm_source(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    """Async iterator over fixed PCM chunks."""
    for chunk in chunks:
        yield chunk


# ============================================================================
# Fake Transport
# ============================================================================


_END = object()


class FakeReceiver:
    """In-memory AudioReceiver.

    Each subscribe() opens a fresh stream; frames fed afterwards are delivered
    to the newest stream of that participant.

    Example:
        ```python
        receiver = FakeReceiver()
        stream = receiver.subscribe("user-1")
        receiver.feed("user-1", voiced_frame())
        receiver.end("user-1")
        ```
    """

    def __init__(self, failing: Iterable[str] = ()) -> None:
        self._queues: dict[str, asyncio.Queue[object]] = {}
        self.subscribe_calls: list[str] = []
        self.unsubscribe_calls: list[str] = []
        # Participants whose subscribe() raises
        self.failing = set(failing)

    def subscribe(self, participant_id: str) -> AsyncIterator[bytes]:
        if participant_id in self.failing:
            raise ConnectionError(f"subscribe failed for {participant_id}")
        queue: asyncio.Queue[object] = asyncio.Queue()
        self._queues[participant_id] = queue
        self.subscribe_calls.append(participant_id)
        return self._stream(queue)

    def unsubscribe(self, participant_id: str) -> None:
        self.unsubscribe_calls.append(participant_id)

    def subscriptions(self, participant_id: str) -> int:
        """Number of times a participant was subscribed."""
        return self.subscribe_calls.count(participant_id)

    def feed(self, participant_id: str, *frames: bytes) -> None:
        queue = self._queues[participant_id]
        for frame in frames:
            queue.put_nowait(frame)

    def end(self, participant_id: str) -> None:
        """End the participant's current stream cleanly."""
        self._queues[participant_id].put_nowait(_END)

    def fail(self, participant_id: str, error: Exception) -> None:
        """Make the participant's current stream raise."""
        self._queues[participant_id].put_nowait(error)

    @staticmethod
    async def _stream(queue: asyncio.Queue[object]) -> AsyncIterator[bytes]:
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            assert isinstance(item, bytes)
            yield item


class FakePlayer:
    """In-memory AudioPlayer.

    With ``hold=True`` play() does not return after the source is exhausted
    until stop() or finish() is called, simulating a long clip.
    """

    def __init__(self, hold: bool = False) -> None:
        self.hold = hold
        self.played: list[bytes] = []
        self.play_count = 0
        self.stop_calls: list[bool] = []
        self.started = asyncio.Event()
        self._release = asyncio.Event()

    async def play(self, source: AsyncIterator[bytes]) -> None:
        self.play_count += 1
        self._release = asyncio.Event()
        self.started.set()

        async for chunk in source:
            self.played.append(chunk)
            if self._release.is_set():
                break

        if self.hold:
            await self._release.wait()

    def stop(self, interrupt: bool = True) -> None:
        self.stop_calls.append(interrupt)
        self._release.set()

    def finish(self) -> None:
        """Let a held clip complete normally."""
        self._release.set()


# ============================================================================
# Config Factories
# ============================================================================


def fast_config(**overrides: object) -> TurnkeeperConfig:
    """Config with timings short enough for real-time asyncio tests.

    20ms frames: 3 voiced frames reach the minimum utterance length and 3
    silent ticks end it.
    """
    config = TurnkeeperConfig(
        segmenter=SegmenterConfig(
            silence_ms=60,
            min_utterance_ms=40,
            max_utterance_ms=2000,
            pre_roll_ms=40,
            tick_interval_ms=10,
            rearm_delay_ms=10,
        ),
        barge_in=BargeInConfig(coalesce_window_ms=250, required_hits=2),
        rate_limit=RateLimitConfig(),
    )
    if overrides:
        config = config.model_copy(update=overrides)
    return config


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is truthy or fail the test on timeout."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout=timeout)
