"""Audio preparation for transcription.

Finalized utterances are interleaved stereo PCM at the transport rate
(48kHz). Transcribers are faster and more stable on mono 16kHz audio, so
utterances are downmixed, resampled and wrapped in a WAV container.
"""

import io
import logging
import wave
from typing import Any, cast

import numpy as np
from numpy.typing import NDArray
from scipy import signal

logger = logging.getLogger(__name__)

_INT16 = np.iinfo(np.int16)


class AudioResampler:
    """Whole-buffer FFT resampling of mono int16 audio.

    Utterances are short and complete when they reach this stage, so a single
    scipy.signal.resample call per utterance is used instead of streaming.
    """

    def __init__(self, source_rate: int, target_rate: int) -> None:
        if min(source_rate, target_rate) <= 0:
            raise ValueError(
                f"Sample rates must be positive (got {source_rate} -> {target_rate})"
            )
        self.source_rate = source_rate
        self.target_rate = target_rate

    def output_length(self, input_length: int) -> int:
        return input_length * self.target_rate // self.source_rate

    def process(self, audio: NDArray[np.int16]) -> NDArray[np.int16]:
        """Resample, returning the input itself when no work is needed."""
        if self.source_rate == self.target_rate or not len(audio):
            return audio

        resampled = cast(
            NDArray[Any], signal.resample(audio.astype(np.float32), self.output_length(len(audio)))
        )
        return np.clip(np.rint(resampled), _INT16.min, _INT16.max).astype(np.int16)


def downmix_to_mono(pcm: bytes, channels: int) -> NDArray[np.int16]:
    """Average interleaved channels into a mono int16 signal.

    Args:
        pcm: Interleaved 16-bit little-endian PCM
        channels: Number of interleaved channels

    Returns:
        Mono samples. Incomplete trailing samples are dropped.
    """
    frame_bytes = 2 * channels
    usable = len(pcm) - (len(pcm) % frame_bytes)
    samples = np.frombuffer(pcm[:usable], dtype="<i2")
    if channels == 1:
        return samples.astype(np.int16)

    stacked = samples.reshape(-1, channels).astype(np.int32)
    return (stacked.sum(axis=1) // channels).astype(np.int16)


def encode_wav(samples: NDArray[np.int16], sample_rate: int) -> bytes:
    """Wrap mono int16 samples in a WAV container."""
    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.astype("<i2").tobytes())
    return out.getvalue()


def pcm_to_stt_wav(pcm: bytes, sample_rate: int, channels: int, target_rate: int) -> bytes:
    """Convert an utterance into the mono WAV sent to the transcriber.

    Args:
        pcm: Interleaved 16-bit PCM of the utterance
        sample_rate: Source sample rate
        channels: Source channel count
        target_rate: Transcriber sample rate (typically 16000)

    Returns:
        WAV file bytes
    """
    mono = downmix_to_mono(pcm, channels)
    resampled = AudioResampler(source_rate=sample_rate, target_rate=target_rate).process(mono)

    logger.debug(
        f"Prepared STT audio: {len(pcm)} bytes @ {sample_rate}Hz x{channels} "
        f"→ {len(resampled)} samples @ {target_rate}Hz mono"
    )
    return encode_wav(resampled, target_rate)
