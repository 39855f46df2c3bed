"""Per-destination playback resource.

Owns the destination's audio player and the in-flight transcoder process of
the clip being played. Playback starts are serialized: a reply that arrives
while another is playing waits until the player is free. Interruption
(barge-in) is synchronous so that ``is_active`` and the transcoder handle
change in one step with respect to the event loop.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from turnkeeper.audio.transcoder import PcmTranscoder
from turnkeeper.config import AudioFormatConfig
from turnkeeper.errors import TranscoderError
from turnkeeper.interfaces import AudioPlayer
from turnkeeper.utils.logging import log_event

logger = logging.getLogger(__name__)


class PlaybackController:
    """Exclusive playback resource of one destination.

    Example:
        ```python
        playback = PlaybackController(player, destination_id="channel-1")
        await playback.play_encoded(mp3_bytes)  # waits for a busy player

        # From the capture loop, on barge-in:
        playback.interrupt()
        ```
    """

    def __init__(
        self,
        player: AudioPlayer,
        destination_id: str,
        audio_format: AudioFormatConfig | None = None,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        self._player = player
        self.destination_id = destination_id
        self._audio_format = audio_format or AudioFormatConfig()
        self._ffmpeg_path = ffmpeg_path

        self._lock = asyncio.Lock()
        self._active = False
        self._interrupted = False
        self._transcoder: PcmTranscoder | None = None

    @property
    def is_active(self) -> bool:
        """True while a clip is playing and has not been interrupted."""
        return self._active

    @property
    def transcoder(self) -> PcmTranscoder | None:
        """Transcoder feeding the current clip, if any."""
        return self._transcoder

    @property
    def player(self) -> AudioPlayer:
        return self._player

    def attach_player(self, player: AudioPlayer) -> None:
        """Swap the underlying player (after a transport reconnect)."""
        self.interrupt()
        self._player = player

    async def play(
        self,
        source: AsyncIterator[bytes],
        transcoder: PcmTranscoder | None = None,
        participant_id: str | None = None,
    ) -> bool:
        """Play raw PCM, waiting for any current playback to finish first.

        Args:
            source: Raw PCM chunks in the transport format
            transcoder: Process producing ``source``, killed on interruption
            participant_id: Participant the reply is addressed to (for logging)

        Returns:
            True if playback ran to completion, False if interrupted or the
            player failed
        """
        async with self._lock:
            return await self._play_locked(source, transcoder, participant_id)

    async def play_encoded(self, encoded: bytes, participant_id: str | None = None) -> bool:
        """Transcode an encoded clip with ffmpeg and play it.

        Returns:
            True if playback ran to completion, False if interrupted or the
            transcoder could not start
        """
        async with self._lock:
            transcoder = PcmTranscoder(
                sample_rate=self._audio_format.sample_rate,
                channels=self._audio_format.channels,
                ffmpeg_path=self._ffmpeg_path,
            )
            try:
                await transcoder.start(encoded)
            except TranscoderError as e:
                logger.error(f"Playback transcoder failed to start: {e}")
                return False

            completed = False
            try:
                completed = await self._play_locked(
                    transcoder.iter_pcm(), transcoder, participant_id
                )
            finally:
                if not completed:
                    transcoder.kill()
                await transcoder.wait()
            return completed

    async def _play_locked(
        self,
        source: AsyncIterator[bytes],
        transcoder: PcmTranscoder | None,
        participant_id: str | None,
    ) -> bool:
        self._active = True
        self._interrupted = False
        self._transcoder = transcoder

        log_event(
            "player_play",
            {"destination_id": self.destination_id, "participant_id": participant_id},
        )

        completed = False
        try:
            await self._player.play(source)
            completed = True
        except asyncio.CancelledError:
            self.interrupt()
            raise
        except Exception as e:
            logger.error(
                "Audio player error",
                extra={"destination_id": self.destination_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            self._active = False
            if self._transcoder is transcoder:
                self._transcoder = None

        return completed and not self._interrupted

    def interrupt(self) -> bool:
        """Stop playback immediately and kill the in-flight transcoder.

        Returns:
            True if something was playing
        """
        if not self._active:
            return False

        self._active = False
        self._interrupted = True

        try:
            self._player.stop(interrupt=True)
        except Exception as e:
            logger.warning(f"Player stop failed: {e}")

        if self._transcoder is not None:
            self._transcoder.kill()
            self._transcoder = None

        return True
