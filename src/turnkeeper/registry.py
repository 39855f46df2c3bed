"""Registry of destination sessions.

Owns every Session, keyed by destination id, and governs creation,
replacement, intentional teardown and recovery from an unintended transport
loss. At most one session exists per destination.
"""

import asyncio
import logging
from collections.abc import Iterable

from turnkeeper.clock import Clock, MonotonicClock
from turnkeeper.config import TurnkeeperConfig
from turnkeeper.errors import SessionNotFoundError
from turnkeeper.interfaces import AudioPlayer, AudioReceiver, Reconnector
from turnkeeper.metrics import MetricsCollector
from turnkeeper.pipeline import SpeechServices
from turnkeeper.rate_limit import RateLimiter
from turnkeeper.session import ConnectionIntent, Session, UtteranceListener
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owner of all destination sessions.

    The lock is held only while sessions are created or destroyed; steady
    state frame and tick processing never touches it.

    Example:
        ```python
        registry = SessionRegistry(config, services=services, reconnector=gateway)

        session = await registry.connect(
            "channel-1", "guild-1", receiver, player, members=["user-1"]
        )
        await registry.participant_joined("channel-1", "user-2")
        await registry.handle_transport_lost("channel-1")
        await registry.disconnect("channel-1")
        ```
    """

    def __init__(
        self,
        config: TurnkeeperConfig,
        services: SpeechServices | None = None,
        reconnector: Reconnector | None = None,
        utterance_listener: UtteranceListener | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        self._services = services
        self._reconnector = reconnector
        self._utterance_listener = utterance_listener
        self._clock = clock or MonotonicClock()
        self.metrics = metrics or MetricsCollector()

        # Shared across destinations: limits apply per participant
        self.rate_limiter = RateLimiter(config.rate_limit, clock=self._clock)

        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    @property
    def sessions(self) -> dict[str, Session]:
        """Snapshot of active sessions by destination id."""
        return dict(self._sessions)

    def find(self, destination_id: str) -> Session | None:
        return self._sessions.get(destination_id)

    def get(self, destination_id: str) -> Session:
        """Get the session of a destination.

        Raises:
            SessionNotFoundError: If no session exists for the destination
        """
        session = self._sessions.get(destination_id)
        if session is None:
            raise SessionNotFoundError(f"No session for destination {destination_id}")
        return session

    async def connect(
        self,
        destination_id: str,
        group_id: str,
        receiver: AudioReceiver,
        player: AudioPlayer,
        members: Iterable[str] = (),
        auto_join: bool = False,
    ) -> Session:
        """Create the session of a destination, replacing any existing one.

        Args:
            destination_id: Destination being joined
            group_id: Parent group of the destination
            receiver: Audio receiver of the new connection
            player: Playback resource of the new connection
            members: Participants already present
            auto_join: Whether the join was automatic (logged only)

        Returns:
            The new session
        """
        async with self._lock:
            existing = self._sessions.pop(destination_id, None)
            if existing is not None:
                logger.info(f"Replacing existing session for {destination_id}")
                await existing.close(intentional=True)
                self.metrics.record_session_end()

            session = Session(
                destination_id,
                group_id,
                receiver,
                player,
                self.config,
                self.rate_limiter,
                services=self._services,
                utterance_listener=self._utterance_listener,
                clock=self._clock,
                metrics=self.metrics,
                auto_join=auto_join,
            )
            self._sessions[destination_id] = session
            self.metrics.record_session_start()

            log_event(
                "voice_join",
                {"group_id": group_id, "destination_id": destination_id, "auto_join": auto_join},
            )
            await session.start(members)
            return session

    async def disconnect(self, destination_id: str) -> bool:
        """Intentionally leave a destination. No reconnect or re-arm follows.

        Returns:
            True if a session existed
        """
        async with self._lock:
            session = self._sessions.pop(destination_id, None)
            if session is None:
                return False

            await session.close(intentional=True)
            self.metrics.record_session_end()

        log_event(
            "voice_leave",
            {"group_id": session.group_id, "destination_id": destination_id},
        )
        return True

    async def handle_transport_lost(self, destination_id: str) -> bool:
        """Recover a session whose transport disconnected unexpectedly.

        Captures are destroyed, the reconnector re-establishes the transport
        and fresh captures are created on the new receiver.

        Returns:
            True if the session was re-attached
        """
        session = self._sessions.get(destination_id)
        if session is None:
            return False

        log_event("voice_disconnected", {"group_id": session.group_id, "destination_id": destination_id})

        if session.intent is ConnectionIntent.DISCONNECTED_INTENTIONAL or session.closed:
            return False

        async with self._lock:
            await session.detach()

        if self._reconnector is None:
            logger.warning(f"Transport lost for {destination_id} and no reconnector configured")
            return False

        try:
            receiver = await self._reconnector.reconnect(session)
        except Exception as e:
            logger.error(
                "Reconnect failed",
                extra={"destination_id": destination_id, "error": str(e)},
                exc_info=True,
            )
            return False

        async with self._lock:
            # The session may have been replaced or left while reconnecting
            if self._sessions.get(destination_id) is not session or session.closed:
                return False
            session.reattach(receiver)

        log_event("voice_reconnect", {"group_id": session.group_id, "destination_id": destination_id})
        return True

    async def participant_joined(self, destination_id: str, participant_id: str) -> None:
        """Route a presence join to the destination's session, if any."""
        session = self._sessions.get(destination_id)
        if session is not None:
            await session.participant_joined(participant_id)

    async def participant_left(self, destination_id: str, participant_id: str) -> None:
        """Route a presence leave to the destination's session, if any.

        Expired rate-limit windows are dropped here so the limiter only holds
        participants active within the current window.
        """
        session = self._sessions.get(destination_id)
        if session is not None:
            await session.participant_left(participant_id)
        self.rate_limiter.prune()

    async def participant_moved(
        self,
        participant_id: str,
        from_destination: str | None,
        to_destination: str | None,
    ) -> None:
        """Apply a presence change between two destinations."""
        if from_destination == to_destination:
            return
        if from_destination is not None:
            await self.participant_left(from_destination, participant_id)
        if to_destination is not None:
            await self.participant_joined(to_destination, participant_id)

    async def close(self) -> None:
        """Intentionally close every session."""
        for destination_id in list(self._sessions):
            await self.disconnect(destination_id)

    def get_status(self) -> dict[str, object]:
        """Status summary for health checks."""
        return {
            "sessions": len(self._sessions),
            "captures": sum(len(s.captures) for s in self._sessions.values()),
            "standby": sorted(d for d, s in self._sessions.items() if s.standby),
            "playing": sorted(d for d, s in self._sessions.items() if s.playback.is_active),
        }
