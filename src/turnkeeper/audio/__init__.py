"""Audio utilities for energy classification, buffering and format conversion.

This module provides utilities for handling interleaved 16-bit PCM frames:
RMS voice classification, utterance and pre-roll buffers, downmix/resample
for transcription, and the ffmpeg transcoder used for playback.
"""

from .buffer import PreRollBuffer, UtteranceBuffer
from .energy import EnergyClassifier, compute_rms, is_voiced
from .resampler import AudioResampler, pcm_to_stt_wav
from .transcoder import PcmTranscoder

__all__ = [
    "PreRollBuffer",
    "UtteranceBuffer",
    "EnergyClassifier",
    "compute_rms",
    "is_voiced",
    "AudioResampler",
    "pcm_to_stt_wav",
    "PcmTranscoder",
]
