"""Integration test fixtures.

Provides shared fixtures for:
- Fake transport (receiver and player) per destination
- Mocked speech services
- Session registry lifecycle with fast segmentation timings
"""

import logging
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from tests.helpers.audio_test_utils import FakePlayer, FakeReceiver, fast_config, pcm_source
from turnkeeper.config import TurnkeeperConfig
from turnkeeper.metrics import MetricsCollector
from turnkeeper.pipeline import SpeechServices
from turnkeeper.registry import SessionRegistry
from turnkeeper.segmenter import Utterance

logger = logging.getLogger(__name__)


@pytest.fixture
def config() -> TurnkeeperConfig:
    return fast_config(eligible_participants=["alice", "bob"])


@pytest.fixture
def receiver() -> FakeReceiver:
    return FakeReceiver()


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def utterances() -> list[Utterance]:
    return []


@pytest.fixture
def services() -> SpeechServices:
    """Speech services answering every utterance with a fixed reply."""
    services = SpeechServices(
        transcriber=AsyncMock(),
        reply_service=AsyncMock(),
        synthesizer=AsyncMock(),
    )
    services.transcriber.transcribe.return_value = "hello there"
    services.reply_service.respond.return_value = "general kenobi"
    services.synthesizer.synthesize.return_value = b"encoded-reply"
    return services


@pytest.fixture
def fake_transcoder():
    """Replace the ffmpeg transcoder with one yielding a single PCM chunk."""

    def build(**kwargs: object) -> MagicMock:
        transcoder = MagicMock()
        transcoder.start = AsyncMock()
        transcoder.iter_pcm = MagicMock(side_effect=lambda: pcm_source([b"reply-pcm"]))
        transcoder.wait = AsyncMock(return_value=0)
        return transcoder

    with patch("turnkeeper.playback.PcmTranscoder", side_effect=build) as factory:
        yield factory


@pytest_asyncio.fixture
async def registry(
    config: TurnkeeperConfig,
    metrics: MetricsCollector,
    utterances: list[Utterance],
) -> AsyncIterator[SessionRegistry]:
    """Registry without speech services; utterances are collected."""
    registry = SessionRegistry(
        config,
        reconnector=AsyncMock(),
        utterance_listener=utterances.append,
        metrics=metrics,
    )
    yield registry
    await registry.close()
