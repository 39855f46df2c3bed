"""Reply pipeline: transcription → reply → synthesis → playback.

Finalized utterances are submitted without blocking the segmenter. Each
participant gets its own queue and worker task, so one participant's
utterances are processed strictly in emission order while different
participants proceed concurrently. Playback itself is serialized per
destination by the PlaybackController.
"""

import asyncio
import logging
from dataclasses import dataclass

from turnkeeper.audio.resampler import pcm_to_stt_wav
from turnkeeper.config import AudioFormatConfig
from turnkeeper.interfaces import ReplyService, Synthesizer, Transcriber
from turnkeeper.metrics import MetricsCollector
from turnkeeper.playback import PlaybackController
from turnkeeper.rate_limit import RateLimiter, RequestKind
from turnkeeper.segmenter import Utterance
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)

MAX_TTS_CHARS = 800
LOG_TEXT_CHARS = 300


@dataclass
class SpeechServices:
    """External speech clients used by the reply pipeline."""

    transcriber: Transcriber
    reply_service: ReplyService
    synthesizer: Synthesizer


class ReplyPipeline:
    """Per-destination reply pipeline with per-participant ordering.

    Example:
        ```python
        pipeline = ReplyPipeline(services, session.playback, rate_limiter)
        capture = ParticipantCapture(..., on_utterance=pipeline.submit)
        ...
        await pipeline.close()
        ```
    """

    def __init__(
        self,
        services: SpeechServices,
        playback: PlaybackController,
        rate_limiter: RateLimiter,
        audio_format: AudioFormatConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._services = services
        self._playback = playback
        self._rate_limiter = rate_limiter
        self._audio_format = audio_format or AudioFormatConfig()
        self._metrics = metrics

        self._queues: dict[str, asyncio.Queue[Utterance]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._closed = False

    def submit(self, utterance: Utterance) -> None:
        """Queue an utterance for processing. Never blocks."""
        if self._closed:
            logger.debug(f"Pipeline closed, dropping {utterance!r}")
            return

        participant_id = utterance.participant_id
        queue = self._queues.get(participant_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[participant_id] = queue
            self._workers[participant_id] = asyncio.create_task(
                self._worker(participant_id, queue),
                name=f"reply-{utterance.destination_id}-{participant_id}",
            )
        queue.put_nowait(utterance)

    async def _worker(self, participant_id: str, queue: asyncio.Queue[Utterance]) -> None:
        while True:
            utterance = await queue.get()
            try:
                await self.process(utterance)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Reply pipeline failed",
                    extra={"participant_id": participant_id, "error": str(e)},
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def process(self, utterance: Utterance) -> bool:
        """Run one utterance through the pipeline.

        Returns:
            True if a reply was played to completion
        """
        participant_id = utterance.participant_id

        if not self._rate_limiter.allow(participant_id, RequestKind.TRANSCRIPTION):
            if self._metrics is not None:
                self._metrics.record_rate_limited(RequestKind.TRANSCRIPTION.value)
            return False

        wav = await asyncio.to_thread(
            pcm_to_stt_wav,
            utterance.audio,
            self._audio_format.sample_rate,
            self._audio_format.channels,
            self._audio_format.stt_sample_rate,
        )

        log_event(
            "stt_request",
            {
                "participant_id": participant_id,
                "destination_id": utterance.destination_id,
                "group_id": utterance.group_id,
                "wav_bytes": len(wav),
                "stt_rate": self._audio_format.stt_sample_rate,
                "sequence": utterance.sequence,
            },
        )
        text = (await self._services.transcriber.transcribe(wav) or "").strip()
        log_event(
            "stt_result",
            {"participant_id": participant_id, "text": text[:LOG_TEXT_CHARS], "text_len": len(text)},
        )
        if not text:
            return False

        reply = (await self._services.reply_service.respond(text, utterance) or "").strip()
        log_event(
            "agent_reply",
            {
                "participant_id": participant_id,
                "reply": reply[:LOG_TEXT_CHARS],
                "reply_len": len(reply),
            },
        )
        if not reply:
            return False

        return await self.speak(reply, participant_id)

    async def speak(self, text: str, participant_id: str) -> bool:
        """Synthesize text and play it on the destination.

        Returns:
            True if playback ran to completion
        """
        if not self._rate_limiter.allow(participant_id, RequestKind.SYNTHESIS):
            if self._metrics is not None:
                self._metrics.record_rate_limited(RequestKind.SYNTHESIS.value)
            return False

        log_event(
            "tts_request",
            {"participant_id": participant_id, "destination_id": self._playback.destination_id},
        )
        audio = await self._services.synthesizer.synthesize(text[:MAX_TTS_CHARS])
        if not audio:
            return False

        return await self._playback.play_encoded(audio, participant_id=participant_id)

    async def drain(self) -> None:
        """Wait until every queued utterance has been processed."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def close(self) -> None:
        """Cancel all workers. Queued utterances are dropped."""
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    @property
    def pending(self) -> int:
        """Number of utterances waiting across all participants."""
        return sum(queue.qsize() for queue in self._queues.values())
