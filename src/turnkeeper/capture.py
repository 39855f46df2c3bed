"""Single-owner processing loop for one participant's audio.

A capture connects a participant's upstream frame stream to its segmenter.
Three tasks cooperate, but only one of them ever touches the segmenter:

- pump: copies frames from the receiver stream into the event queue
- ticker: enqueues a tick every ``tick_interval_ms``
- run: consumes the queue and is the sole writer of segmenter state

Frame arrival therefore never blocks tick evaluation, and frames and ticks
for the same participant are strictly serialized.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from turnkeeper.audio.energy import EnergyClassifier
from turnkeeper.barge_in import BargeInDecision, BargeInMonitor
from turnkeeper.clock import Clock
from turnkeeper.metrics import MetricsCollector
from turnkeeper.playback import PlaybackController
from turnkeeper.segmenter import Utterance, UtteranceSegmenter
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameEvent:
    """A frame together with its arrival time."""

    frame: bytes
    received_at: float


@dataclass(frozen=True)
class TickEvent:
    """Periodic evaluation request."""


@dataclass(frozen=True)
class StreamClosed:
    """Upstream stream ended (error is None) or failed."""

    error: BaseException | None = None


CaptureEvent = FrameEvent | TickEvent | StreamClosed

_TICK = TickEvent()


class ParticipantCapture:
    """Owns the segmentation loop of one participant in one session.

    Example:
        ```python
        capture = ParticipantCapture(
            segmenter=segmenter,
            stream=receiver.subscribe(participant_id),
            classifier=EnergyClassifier(0.01),
            barge_monitor=BargeInMonitor(config.barge_in),
            playback=session.playback,
            clock=MonotonicClock(),
            on_utterance=pipeline.submit,
            on_closed=session.handle_capture_closed,
        )
        capture.start()
        ...
        await capture.stop()
        ```
    """

    def __init__(
        self,
        segmenter: UtteranceSegmenter,
        stream: AsyncIterator[bytes],
        classifier: EnergyClassifier,
        barge_monitor: BargeInMonitor,
        playback: PlaybackController,
        clock: Clock,
        on_utterance: Callable[[Utterance], None],
        on_closed: Callable[["ParticipantCapture", str], None] | None = None,
        tick_interval_ms: int = 200,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.segmenter = segmenter
        self._stream = stream
        self._classifier = classifier
        self._barge_monitor = barge_monitor
        self._playback = playback
        self._clock = clock
        self._on_utterance = on_utterance
        self._on_closed = on_closed
        self._tick_interval_s = tick_interval_ms / 1000.0
        self._metrics = metrics

        self._queue: asyncio.Queue[CaptureEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def participant_id(self) -> str:
        return self.segmenter.participant_id

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the pump, ticker and processing tasks."""
        if self._tasks:
            raise RuntimeError(f"Capture for {self.participant_id} already started")

        name = f"capture-{self.segmenter.destination_id}-{self.participant_id}"
        self._tasks = [
            asyncio.create_task(self._run(), name=f"{name}-run"),
            asyncio.create_task(self._pump(), name=f"{name}-pump"),
            asyncio.create_task(self._ticker(), name=f"{name}-tick"),
        ]

    async def stop(self) -> None:
        """Destroy the capture without finalizing buffered audio.

        Safe to call more than once, and from outside the capture's tasks only.
        """
        self._closed = True
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self.segmenter.discard(reason="capture destroyed")
        await self._close_stream()

    # === Synchronous core ===

    def process_frame(self, frame: bytes, now: float) -> None:
        """Route one frame through barge-in detection and segmentation."""
        voiced, _ = self._classifier.classify(frame)

        decision = self._barge_monitor.observe(
            self.segmenter.barge, frame, now, self._playback.is_active
        )

        if decision is BargeInDecision.DISCARD:
            # Playback audio must never seed an utterance
            self.segmenter.clear_pre_roll()
            return

        if decision is BargeInDecision.TRIGGER and self._playback.interrupt():
            log_event(
                "barge_in",
                {
                    "participant_id": self.participant_id,
                    "destination_id": self.segmenter.destination_id,
                },
            )
            if self._metrics is not None:
                self._metrics.record_barge_in()

        self.segmenter.push_frame(frame, now, voiced)

    def process_tick(self, now: float) -> None:
        """Evaluate the segmenter and hand off any finalized utterance."""
        utterance = self.segmenter.tick(now)
        if utterance is None:
            return

        try:
            self._on_utterance(utterance)
        except Exception as e:
            logger.error(
                "Utterance handoff failed",
                extra={"participant_id": self.participant_id, "error": str(e)},
                exc_info=True,
            )

    # === Tasks ===

    async def _run(self) -> None:
        reason = "stream_end"
        while True:
            event = await self._queue.get()

            if isinstance(event, FrameEvent):
                self.process_frame(event.frame, event.received_at)
            elif isinstance(event, TickEvent):
                self.process_tick(self._clock.now())
            else:
                if event.error is not None:
                    reason = "stream_error"
                    logger.warning(
                        f"Audio stream error for {self.participant_id}: {event.error}",
                        exc_info=event.error,
                    )
                break

        await self._shutdown_from_stream(reason)

    async def _pump(self) -> None:
        error: BaseException | None = None
        try:
            async for frame in self._stream:
                self._queue.put_nowait(FrameEvent(frame, self._clock.now()))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        self._queue.put_nowait(StreamClosed(error))

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_s)
            self._queue.put_nowait(_TICK)

    async def _shutdown_from_stream(self, reason: str) -> None:
        self._closed = True
        for task in self._tasks:
            if task is not asyncio.current_task():
                task.cancel()

        self.segmenter.discard(reason=reason)
        await self._close_stream()

        if self._on_closed is not None:
            self._on_closed(self, reason)

    async def _close_stream(self) -> None:
        aclose = getattr(self._stream, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()

    def __repr__(self) -> str:
        return f"ParticipantCapture(participant_id={self.participant_id!r}, closed={self._closed})"
