"""Interfaces of the external collaborators.

The transport, codec, speech-to-text, reply and text-to-speech layers live
outside this package. They are described here as protocols; implementations
are supplied by the embedding application.
"""

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from turnkeeper.segmenter import Utterance
    from turnkeeper.session import Session


class AudioReceiver(Protocol):
    """Source of decoded per-participant audio for one destination."""

    def subscribe(self, participant_id: str) -> AsyncIterator[bytes]:
        """Open a stream of decoded PCM frames for a participant.

        The iterator ends when the upstream stream closes and raises when it
        fails. Frames are interleaved 16-bit little-endian PCM.
        """
        ...

    def unsubscribe(self, participant_id: str) -> None:
        """Release the upstream subscription of a participant."""
        ...


class AudioPlayer(Protocol):
    """Playback resource of one destination."""

    async def play(self, source: AsyncIterator[bytes]) -> None:
        """Play raw PCM until the source is exhausted or stop() is called."""
        ...

    def stop(self, interrupt: bool = True) -> None:
        """Stop current playback immediately."""
        ...


class Transcriber(Protocol):
    """Speech-to-text client."""

    async def transcribe(self, wav: bytes) -> str:
        """Transcribe a mono WAV clip. Returns an empty string on failure."""
        ...


class ReplyService(Protocol):
    """Conversational reply service."""

    async def respond(self, text: str, utterance: "Utterance") -> str:
        """Produce a reply for transcribed text. Empty string means no reply."""
        ...


class Synthesizer(Protocol):
    """Text-to-speech client."""

    async def synthesize(self, text: str) -> bytes:
        """Synthesize text into an encoded audio clip (mp3, wav, ...)."""
        ...


class Reconnector(Protocol):
    """Re-establishes a lost transport connection for a session."""

    async def reconnect(self, session: "Session") -> AudioReceiver:
        """Reconnect and return the receiver of the new connection."""
        ...
