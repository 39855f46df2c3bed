"""Frame energy classification.

Computes a normalized root-mean-square loudness for interleaved 16-bit PCM
frames and compares it against a threshold. Stateless and cheap enough to run
on every incoming frame.
"""

import logging
from typing import Final

import numpy as np

logger = logging.getLogger(__name__)

FULL_SCALE: Final[float] = 32768.0  # Magnitude of the most negative int16 sample


def compute_rms(frame: bytes) -> float:
    """Calculate normalized RMS level of a PCM frame.

    All interleaved samples (every channel) contribute to the mean.

    Args:
        frame: Raw PCM audio frame (16-bit signed int, little endian)

    Returns:
        RMS level in [0.0, 1.0]; 0.0 for an empty frame. A trailing odd
        byte is ignored.
    """
    usable = len(frame) - (len(frame) % 2)
    if usable == 0:
        return 0.0

    samples = np.frombuffer(frame, dtype="<i2", count=usable // 2).astype(np.float64)
    samples /= FULL_SCALE
    return float(np.sqrt(np.mean(samples * samples)))


def is_voiced(frame: bytes, threshold: float) -> bool:
    """Check whether a frame's energy reaches the voice threshold.

    Args:
        frame: Raw PCM audio frame (16-bit signed int, little endian)
        threshold: Normalized RMS threshold in [0, 1]

    Returns:
        True if the frame RMS is at or above the threshold. Empty frames
        are never voiced.
    """
    if not frame:
        return False
    return compute_rms(frame) >= threshold


class EnergyClassifier:
    """Threshold classifier bound to a fixed voice threshold.

    Example:
        ```python
        classifier = EnergyClassifier(threshold=0.01)
        voiced, rms = classifier.classify(frame)
        ```
    """

    def __init__(self, threshold: float) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be in range [0.0, 1.0], got {threshold}")
        self.threshold = threshold

    def classify(self, frame: bytes) -> tuple[bool, float]:
        """Classify a frame.

        Returns:
            Tuple of (voiced, rms)
        """
        rms = compute_rms(frame)
        return bool(frame) and rms >= self.threshold, rms

    def __repr__(self) -> str:
        return f"EnergyClassifier(threshold={self.threshold})"
