"""Per-destination session state.

A Session represents one destination (voice channel) the system occupies.
It owns the participant captures, the playback resource and the reply
pipeline of that destination, tracks which eligible participants are
present, and applies standby and re-arm policy.

Lifecycle:
- created by SessionRegistry.connect()
- detach()/reattach() around an unintended transport loss
- close() on intentional leave or replacement (terminal)
"""

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable, Iterator
from enum import Enum

from turnkeeper.audio.energy import EnergyClassifier
from turnkeeper.barge_in import BargeInMonitor
from turnkeeper.capture import ParticipantCapture
from turnkeeper.clock import Clock, MonotonicClock
from turnkeeper.config import TurnkeeperConfig
from turnkeeper.interfaces import AudioPlayer, AudioReceiver
from turnkeeper.metrics import MetricsCollector
from turnkeeper.pipeline import ReplyPipeline, SpeechServices
from turnkeeper.playback import PlaybackController
from turnkeeper.rate_limit import RateLimiter
from turnkeeper.segmenter import Utterance, UtteranceSegmenter
from turnkeeper.standby import StandbyController, StandbyTransition
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


class ConnectionIntent(Enum):
    """Whether a lost connection should be re-established.

    - CONNECTED_WANT_RECONNECT: normal operation; transport loss triggers reconnect
    - DISCONNECTED_INTENTIONAL: explicit leave; no reconnect, no re-arm
    """

    CONNECTED_WANT_RECONNECT = "connected_want_reconnect"
    DISCONNECTED_INTENTIONAL = "disconnected_intentional"


UtteranceListener = Callable[[Utterance], None]


class Session:
    """Turn-taking state of one destination.

    Thread-safety: NOT thread-safe. Use from the event loop only.
    """

    def __init__(
        self,
        destination_id: str,
        group_id: str,
        receiver: AudioReceiver,
        player: AudioPlayer,
        config: TurnkeeperConfig,
        rate_limiter: RateLimiter,
        services: SpeechServices | None = None,
        utterance_listener: UtteranceListener | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        auto_join: bool = False,
    ) -> None:
        """Initialize session.

        Args:
            destination_id: Destination (voice channel) identifier
            group_id: Parent group (server) identifier
            receiver: Source of per-participant decoded audio
            player: Playback resource of the destination
            config: Turnkeeper configuration
            rate_limiter: Shared per-participant rate limiter
            services: Speech clients; without them utterances only reach the listener
            utterance_listener: Optional callback for every finalized utterance
            clock: Time source (defaults to monotonic)
            metrics: Optional metrics collector
            auto_join: Whether the session was created without an explicit join
        """
        self.destination_id = destination_id
        self.group_id = group_id
        self.auto_join = auto_join
        self.intent = ConnectionIntent.CONNECTED_WANT_RECONNECT

        self._config = config
        self._receiver = receiver
        self._clock = clock or MonotonicClock()
        self._metrics = metrics
        self._utterance_listener = utterance_listener

        self.playback = PlaybackController(
            player, destination_id=destination_id, audio_format=config.audio
        )
        self.pipeline: ReplyPipeline | None = None
        if services is not None:
            self.pipeline = ReplyPipeline(
                services,
                self.playback,
                rate_limiter,
                audio_format=config.audio,
                metrics=metrics,
            )

        self._classifier = EnergyClassifier(config.segmenter.silence_threshold)
        self._barge_monitor = BargeInMonitor(config.barge_in)
        self._standby = StandbyController()

        self.present: set[str] = set()
        self.captures: dict[str, ParticipantCapture] = {}
        self._sequences: dict[str, Iterator[int]] = {}
        self._rearm_tasks: dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self._detached = False

    # === Properties ===

    @property
    def standby(self) -> bool:
        """True while no eligible participant is present."""
        return self._standby.standby

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def receiver(self) -> AudioReceiver:
        return self._receiver

    def _event_data(self, **data: object) -> dict[str, object]:
        return {"group_id": self.group_id, "destination_id": self.destination_id, **data}

    # === Lifecycle ===

    async def start(self, members: Iterable[str] = ()) -> None:
        """Prime captures for members already present and evaluate standby."""
        for participant_id in members:
            if self._config.is_eligible(participant_id):
                self.present.add(participant_id)

        for participant_id in sorted(self.present):
            self.start_capture(participant_id)

        await self.refresh_standby()

    async def detach(self) -> None:
        """Destroy all captures after the transport was lost.

        Buffered audio is discarded; continuity across the gap cannot be
        guaranteed. No capture is created until reattach(), so a participant
        joining meanwhile is captured on the new receiver.
        """
        self._detached = True
        self._cancel_rearms()
        self.playback.interrupt()
        await self._destroy_all_captures()

    def reattach(self, receiver: AudioReceiver, player: AudioPlayer | None = None) -> None:
        """Resume on a fresh connection with fresh (idle) captures."""
        if self._closed:
            return

        self._receiver = receiver
        self._detached = False
        if player is not None:
            self.playback.attach_player(player)

        if not self.standby:
            for participant_id in sorted(self.present):
                self.start_capture(participant_id)

    async def close(self, intentional: bool = True) -> None:
        """Tear the session down. Terminal.

        Captures are destroyed without finalizing, playback is stopped and the
        reply pipeline cancelled.
        """
        if self._closed:
            return

        if intentional:
            self.intent = ConnectionIntent.DISCONNECTED_INTENTIONAL
        self._closed = True

        self._cancel_rearms()
        self.playback.interrupt()
        await self._destroy_all_captures()
        if self.pipeline is not None:
            await self.pipeline.close()

    # === Presence ===

    async def participant_joined(self, participant_id: str) -> None:
        """Handle an eligible participant entering the destination."""
        if not self._config.is_eligible(participant_id) or self._closed:
            return

        self.present.add(participant_id)
        await self.refresh_standby()

        if not self.standby:
            self.start_capture(participant_id)

    async def participant_left(self, participant_id: str) -> None:
        """Handle a participant leaving the destination."""
        if participant_id not in self.present:
            return

        self.present.discard(participant_id)
        task = self._rearm_tasks.pop(participant_id, None)
        if task is not None:
            task.cancel()

        await self.destroy_capture(participant_id)
        await self.refresh_standby()

    async def refresh_standby(self) -> None:
        """Re-evaluate standby from current presence and apply any transition."""
        transition = self._standby.evaluate(bool(self.present))
        if transition is None:
            return

        log_event(transition.value, self._event_data())
        if self._metrics is not None:
            self._metrics.record_standby(transition is StandbyTransition.ENTER)

        if transition is StandbyTransition.ENTER:
            # Avoid transcription cost while nobody eligible is here
            self._cancel_rearms()
            await self._destroy_all_captures()
        else:
            for participant_id in sorted(self.present):
                self.start_capture(participant_id)

    # === Captures ===

    def start_capture(self, participant_id: str) -> bool:
        """Subscribe to a participant and start segmenting.

        Returns:
            True if a new capture was created. A failing subscription is
            logged and returns False.
        """
        if (
            self._closed
            or self._detached
            or self.standby
            or self.intent is ConnectionIntent.DISCONNECTED_INTENTIONAL
            or participant_id in self.captures
            or not self._config.is_eligible(participant_id)
        ):
            return False

        try:
            stream = self._receiver.subscribe(participant_id)
        except Exception as e:
            logger.warning(
                f"Subscribe failed for {participant_id}: {e}",
                extra={"destination_id": self.destination_id},
                exc_info=True,
            )
            return False

        log_event("recording_start", self._event_data(participant_id=participant_id))

        sequence = self._sequences.setdefault(participant_id, itertools.count(1))
        segmenter = UtteranceSegmenter(
            participant_id,
            self.destination_id,
            self.group_id,
            self._config.segmenter,
            audio_format=self._config.audio,
            sequence=sequence,
            metrics=self._metrics,
        )
        capture = ParticipantCapture(
            segmenter=segmenter,
            stream=stream,
            classifier=self._classifier,
            barge_monitor=self._barge_monitor,
            playback=self.playback,
            clock=self._clock,
            on_utterance=self._handle_utterance,
            on_closed=self._handle_capture_closed,
            tick_interval_ms=self._config.segmenter.tick_interval_ms,
            metrics=self._metrics,
        )
        self.captures[participant_id] = capture
        capture.start()

        if self._metrics is not None:
            self._metrics.record_capture_start()
        return True

    async def destroy_capture(self, participant_id: str) -> bool:
        """Destroy a participant's capture without finalizing.

        Returns:
            True if a capture existed
        """
        capture = self.captures.pop(participant_id, None)
        if capture is None:
            return False

        await capture.stop()
        self._release(participant_id)
        return True

    async def _destroy_all_captures(self) -> None:
        for participant_id in list(self.captures):
            await self.destroy_capture(participant_id)

    def _release(self, participant_id: str) -> None:
        try:
            self._receiver.unsubscribe(participant_id)
        except Exception as e:
            logger.warning(f"Unsubscribe failed for {participant_id}: {e}")
        if self._metrics is not None:
            self._metrics.record_capture_end()

    def _handle_capture_closed(self, capture: ParticipantCapture, reason: str) -> None:
        participant_id = capture.participant_id
        if self.captures.get(participant_id) is not capture:
            return

        del self.captures[participant_id]
        self._release(participant_id)
        log_event(
            "recording_closed",
            self._event_data(participant_id=participant_id, reason=reason),
        )

        if not self._closed and participant_id not in self._rearm_tasks:
            self._rearm_tasks[participant_id] = asyncio.create_task(
                self._rearm(participant_id, reason),
                name=f"rearm-{self.destination_id}-{participant_id}",
            )

    async def _rearm(self, participant_id: str, previous_reason: str) -> None:
        try:
            await asyncio.sleep(self._config.segmenter.rearm_delay_ms / 1000.0)
        finally:
            if self._rearm_tasks.get(participant_id) is asyncio.current_task():
                del self._rearm_tasks[participant_id]

        if (
            participant_id not in self.present
            or self.standby
            or self._closed
            or self.intent is ConnectionIntent.DISCONNECTED_INTENTIONAL
            or participant_id in self.captures
        ):
            return

        log_event(
            "recording_rearm",
            self._event_data(participant_id=participant_id, prev_reason=previous_reason),
        )
        if self._metrics is not None:
            self._metrics.record_rearm()
        self.start_capture(participant_id)

    def _cancel_rearms(self) -> None:
        for task in self._rearm_tasks.values():
            task.cancel()
        self._rearm_tasks.clear()

    # === Output ===

    def _handle_utterance(self, utterance: Utterance) -> None:
        if self._utterance_listener is not None:
            self._utterance_listener(utterance)
        if self.pipeline is not None:
            self.pipeline.submit(utterance)

    async def speak(self, text: str, participant_id: str = "system") -> bool:
        """Synthesize and play text outside the utterance flow.

        Returns:
            True if playback ran to completion; False without speech services
        """
        if self.pipeline is None:
            logger.warning("speak() called on a session without speech services")
            return False
        return await self.pipeline.speak(text, participant_id)

    def __repr__(self) -> str:
        return (
            f"Session(destination_id={self.destination_id!r}, group_id={self.group_id!r}, "
            f"intent={self.intent.value}, standby={self.standby}, "
            f"captures={sorted(self.captures)}, playback_active={self.playback.is_active})"
        )
