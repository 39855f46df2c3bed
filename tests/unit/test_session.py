"""Unit tests for Session presence, standby and capture lifecycle."""

import asyncio

import pytest
import pytest_asyncio

from tests.helpers.audio_test_utils import (
    FakePlayer,
    FakeReceiver,
    fast_config,
    voiced_frame,
    wait_until,
)
from turnkeeper.config import SegmenterConfig
from turnkeeper.metrics import MetricsCollector
from turnkeeper.rate_limit import RateLimiter
from turnkeeper.segmenter import Utterance
from turnkeeper.session import ConnectionIntent, Session


@pytest.fixture
def receiver() -> FakeReceiver:
    return FakeReceiver()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def utterances() -> list[Utterance]:
    return []


@pytest_asyncio.fixture
async def session(receiver: FakeReceiver, metrics: MetricsCollector, utterances: list[Utterance]):
    config = fast_config(eligible_participants=["alice", "bob"])
    session = Session(
        "channel-1",
        "guild-1",
        receiver,
        FakePlayer(),
        config,
        RateLimiter(config.rate_limit),
        utterance_listener=utterances.append,
        metrics=metrics,
    )
    yield session
    await session.close()


class TestStart:
    """Test initial capture priming."""

    @pytest.mark.asyncio
    async def test_start_with_members(self, session: Session, receiver: FakeReceiver) -> None:
        """Test captures are created for eligible members already present."""
        await session.start(["alice", "bob", "carol"])

        assert session.standby is False
        assert set(session.captures) == {"alice", "bob"}
        assert session.present == {"alice", "bob"}
        assert sorted(receiver.subscribe_calls) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_start_empty_enters_standby(
        self,
        session: Session,
        metrics: MetricsCollector,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a destination with nobody eligible starts in standby."""
        with caplog.at_level("INFO", logger="turnkeeper.events"):
            await session.start(["carol"])

        assert session.standby is True
        assert session.captures == {}
        assert '"event": "standby_on"' in caplog.text
        assert metrics.counter_value("standby_transitions_total", state="on") == 1


class TestPresence:
    """Test joins, leaves and standby transitions."""

    @pytest.mark.asyncio
    async def test_join_exits_standby(
        self, session: Session, receiver: FakeReceiver, metrics: MetricsCollector
    ) -> None:
        """Test the first eligible join leaves standby and starts a capture."""
        await session.start([])
        await session.participant_joined("alice")

        assert session.standby is False
        assert "alice" in session.captures
        assert receiver.subscriptions("alice") == 1
        assert metrics.counter_value("standby_transitions_total", state="off") == 1
        assert metrics.gauge_value("captures_active") == 1

    @pytest.mark.asyncio
    async def test_ineligible_join_ignored(self, session: Session, receiver: FakeReceiver) -> None:
        """Test non-eligible participants neither leave standby nor get captured."""
        await session.start([])
        await session.participant_joined("mallory")

        assert session.standby is True
        assert receiver.subscribe_calls == []

    @pytest.mark.asyncio
    async def test_leave_destroys_capture(self, session: Session, receiver: FakeReceiver) -> None:
        """Test a leaving participant's capture is destroyed and unsubscribed."""
        await session.start(["alice", "bob"])
        await session.participant_left("bob")

        assert set(session.captures) == {"alice"}
        assert receiver.unsubscribe_calls == ["bob"]
        assert session.standby is False

    @pytest.mark.asyncio
    async def test_last_leave_enters_standby_without_emitting(
        self,
        receiver: FakeReceiver,
        metrics: MetricsCollector,
        utterances: list[Utterance],
    ) -> None:
        """Test standby discards partially buffered speech."""
        config = fast_config(
            segmenter=SegmenterConfig(silence_ms=5000, min_utterance_ms=40, tick_interval_ms=10)
        )
        session = Session(
            "channel-1",
            "guild-1",
            receiver,
            FakePlayer(),
            config,
            RateLimiter(config.rate_limit),
            utterance_listener=utterances.append,
            metrics=metrics,
        )
        await session.start(["alice"])
        receiver.feed("alice", *[voiced_frame()] * 10)  # 200ms, above the minimum
        await wait_until(lambda: session.captures["alice"].segmenter.buffer.frame_count == 10)

        await session.participant_left("alice")

        assert session.standby is True
        assert session.captures == {}
        assert utterances == []
        assert metrics.counter_value("utterances_discarded_total", reason="capture destroyed") == 1
        assert metrics.gauge_value("captures_active") == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_rejoin_creates_fresh_capture(
        self, session: Session, receiver: FakeReceiver
    ) -> None:
        """Test rejoining after standby creates a new idle capture."""
        await session.start(["alice"])
        first = session.captures["alice"]

        await session.participant_left("alice")
        await session.participant_joined("alice")

        capture = session.captures["alice"]
        assert capture is not first
        assert capture.segmenter.is_active is False
        assert receiver.subscriptions("alice") == 2


class TestLifecycle:
    """Test detach, reattach and close."""

    @pytest.mark.asyncio
    async def test_detach_and_reattach(self, session: Session, receiver: FakeReceiver) -> None:
        """Test captures move to a fresh receiver after a reconnect."""
        await session.start(["alice"])
        await session.detach()
        assert session.captures == {}

        fresh = FakeReceiver()
        session.reattach(fresh)

        assert session.receiver is fresh
        assert fresh.subscribe_calls == ["alice"]
        assert receiver.unsubscribe_calls == ["alice"]

    @pytest.mark.asyncio
    async def test_close_is_terminal(self, session: Session) -> None:
        """Test a closed session refuses new captures."""
        await session.start(["alice"])
        await session.close()

        assert session.closed is True
        assert session.intent is ConnectionIntent.DISCONNECTED_INTENTIONAL
        assert session.captures == {}
        assert session.start_capture("alice") is False

    @pytest.mark.asyncio
    async def test_no_rearm_after_close(self, session: Session, receiver: FakeReceiver) -> None:
        """Test a stream ending during close does not recreate the capture."""
        await session.start(["alice"])
        receiver.end("alice")
        await session.close()
        await asyncio.sleep(0.05)

        assert receiver.subscriptions("alice") == 1

    @pytest.mark.asyncio
    async def test_join_while_detached_waits_for_reattach(
        self, session: Session, receiver: FakeReceiver
    ) -> None:
        """Test a participant joining between detach and reattach is captured on the new receiver."""
        await session.start(["alice"])
        await session.detach()

        await session.participant_joined("bob")
        assert session.captures == {}
        assert receiver.subscriptions("bob") == 0

        fresh = FakeReceiver()
        session.reattach(fresh)

        assert sorted(session.captures) == ["alice", "bob"]
        assert sorted(fresh.subscribe_calls) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_speak_without_services(self, session: Session) -> None:
        """Test speaking without speech services is refused."""
        assert await session.speak("hello") is False


class TestSubscribeFailure:
    """Test a receiver that refuses a subscription."""

    @pytest_asyncio.fixture
    async def flaky_session(self, metrics: MetricsCollector):
        config = fast_config(eligible_participants=["alice", "bob"])
        receiver = FakeReceiver(failing=["alice"])
        session = Session(
            "channel-1",
            "guild-1",
            receiver,
            FakePlayer(),
            config,
            RateLimiter(config.rate_limit),
            metrics=metrics,
        )
        yield session
        await session.close()

    @pytest.mark.asyncio
    async def test_start_continues_past_failure(
        self, flaky_session: Session, metrics: MetricsCollector, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test one failing participant does not block captures for the others."""
        with caplog.at_level("WARNING", logger="turnkeeper.session"):
            await flaky_session.start(["alice", "bob"])

        assert set(flaky_session.captures) == {"bob"}
        assert metrics.gauge_value("captures_active") == 1
        assert "Subscribe failed for alice" in caplog.text

    @pytest.mark.asyncio
    async def test_join_does_not_raise(self, flaky_session: Session) -> None:
        """Test a failing subscription on join is contained."""
        await flaky_session.start([])
        await flaky_session.participant_joined("alice")

        assert flaky_session.standby is False
        assert flaky_session.captures == {}
        assert flaky_session.start_capture("alice") is False

        flaky_session.receiver.failing.clear()
        assert flaky_session.start_capture("alice") is True
