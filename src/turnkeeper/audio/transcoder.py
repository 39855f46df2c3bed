"""ffmpeg transcoder turning synthesized speech into raw playback PCM.

The synthesizer returns an encoded clip (mp3, wav, ...). The transcoder runs
ffmpeg as a subprocess, feeds the clip on stdin and exposes stdout as a
stream of raw 16-bit PCM at the transport format. The process handle is kept
so a barge-in can kill it mid-stream.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from turnkeeper.errors import TranscoderError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 3840  # 20ms @ 48kHz stereo
STDERR_TAIL_BYTES = 2000


class PcmTranscoder:
    """Single-use ffmpeg process converting one clip to raw PCM.

    Example:
        ```python
        transcoder = PcmTranscoder()
        await transcoder.start(mp3_bytes)
        player.play(transcoder.iter_pcm())
        ...
        transcoder.kill()  # on barge-in
        ```
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        channels: int = 2,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.ffmpeg_path = ffmpeg_path

        self._process: asyncio.subprocess.Process | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail = b""
        self._killed = False

    def _command(self) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0",
            "-f",
            "s16le",
            "-ar",
            str(self.sample_rate),
            "-ac",
            str(self.channels),
            "pipe:1",
        ]

    async def start(self, encoded: bytes) -> None:
        """Spawn ffmpeg and begin feeding the encoded clip.

        Raises:
            TranscoderError: If the process cannot be started or was already started
        """
        if self._process is not None:
            raise TranscoderError("Transcoder already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscoderError(f"Failed to start ffmpeg: {e}") from e

        self._feed_task = asyncio.create_task(self._feed(encoded))
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug(f"Transcoder started: pid={self._process.pid}, input={len(encoded)} bytes")

    async def _feed(self, encoded: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise TranscoderError("Transcoder not started")

        stdin = self._process.stdin
        try:
            stdin.write(encoded)
            await stdin.drain()
            stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Expected when the process is killed mid-write on barge-in
            logger.debug("Transcoder stdin closed before input was consumed")

    async def iter_pcm(self, chunk_bytes: int = DEFAULT_CHUNK_BYTES) -> AsyncIterator[bytes]:
        """Yield raw PCM chunks from ffmpeg stdout until it closes."""
        if self._process is None or self._process.stdout is None:
            raise TranscoderError("Transcoder not started")

        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(chunk_bytes)
            if not chunk:
                break
            yield chunk

    async def _drain_stderr(self) -> None:
        """Consume stderr while ffmpeg runs, keeping only the tail for diagnostics."""
        if self._process is None or self._process.stderr is None:
            return

        stderr = self._process.stderr
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                break
            self._stderr_tail = (self._stderr_tail + chunk)[-STDERR_TAIL_BYTES:]

    def kill(self) -> None:
        """Terminate the process immediately. Safe to call more than once.

        Follow with wait() to reap the process.
        """
        if self._feed_task is not None and not self._feed_task.done():
            self._feed_task.cancel()

        if self._process is None or self._process.returncode is not None:
            return

        self._killed = True
        with contextlib.suppress(ProcessLookupError):
            self._process.kill()
        logger.debug(f"Transcoder killed: pid={self._process.pid}")

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code.

        A non-zero exit is logged with the tail of ffmpeg's stderr, not
        raised. Exits caused by kill() are not logged.
        """
        if self._process is None:
            raise TranscoderError("Transcoder not started")

        code = await self._process.wait()
        if self._stderr_task is not None:
            await self._stderr_task

        if code != 0 and not self._killed:
            logger.warning(
                "ffmpeg exited with error",
                extra={"code": code, "stderr": self._stderr_tail.decode(errors="replace")},
            )
        return code

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        """True while the process exists and has not exited."""
        return self._process is not None and self._process.returncode is None
