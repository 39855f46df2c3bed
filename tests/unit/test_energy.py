"""Unit tests for frame energy classification."""

import numpy as np
import pytest

from tests.helpers.audio_test_utils import make_frame, silence_frame
from turnkeeper.audio.energy import EnergyClassifier, compute_rms, is_voiced


class TestComputeRms:
    """Test RMS computation."""

    def test_silence_is_zero(self) -> None:
        """Test that an all-zero frame has zero RMS."""
        assert compute_rms(silence_frame()) == 0.0

    def test_empty_frame_is_zero(self) -> None:
        """Test that an empty frame has zero RMS."""
        assert compute_rms(b"") == 0.0

    def test_single_byte_is_zero(self) -> None:
        """Test that a frame without a complete sample has zero RMS."""
        assert compute_rms(b"\x01") == 0.0

    def test_known_amplitude(self) -> None:
        """Test RMS of a square wave equals its normalized amplitude."""
        assert compute_rms(make_frame(0.25)) == pytest.approx(0.25, abs=1e-4)

    def test_full_scale(self) -> None:
        """Test that full negative scale normalizes to 1.0."""
        frame = np.full(960, -32768, dtype="<i2").tobytes()
        assert compute_rms(frame) == pytest.approx(1.0)

    def test_odd_trailing_byte_ignored(self) -> None:
        """Test that a trailing odd byte does not change the result."""
        frame = make_frame(0.1)
        assert compute_rms(frame + b"\x7f") == pytest.approx(compute_rms(frame))

    def test_all_channels_contribute(self) -> None:
        """Test that a signal on one channel only still has energy."""
        samples = np.zeros(1920, dtype="<i2")
        samples[0::2] = 16384  # left channel only
        rms = compute_rms(samples.tobytes())
        assert rms == pytest.approx(np.sqrt(0.5 * 0.5**2), abs=1e-4)


class TestIsVoiced:
    """Test threshold comparison."""

    def test_at_threshold_is_voiced(self) -> None:
        """Test that RMS equal to the threshold counts as voiced."""
        frame = make_frame(0.1)
        assert is_voiced(frame, compute_rms(frame)) is True

    def test_below_threshold(self) -> None:
        """Test quiet frames are not voiced."""
        assert is_voiced(make_frame(0.005), 0.01) is False

    def test_empty_never_voiced(self) -> None:
        """Test that empty frames are never voiced, even at zero threshold."""
        assert is_voiced(b"", 0.0) is False


class TestEnergyClassifier:
    """Test the bound classifier."""

    def test_classify(self) -> None:
        """Test classification returns the flag and the RMS."""
        classifier = EnergyClassifier(threshold=0.01)

        voiced, rms = classifier.classify(make_frame(0.1))
        assert voiced is True
        assert rms == pytest.approx(0.1, abs=1e-3)

        voiced, rms = classifier.classify(silence_frame())
        assert voiced is False
        assert rms == 0.0

    def test_empty_frame(self) -> None:
        """Test that an empty frame classifies as unvoiced at zero threshold."""
        voiced, _ = EnergyClassifier(threshold=0.0).classify(b"")
        assert voiced is False

    def test_invalid_threshold(self) -> None:
        """Test threshold range validation."""
        with pytest.raises(ValueError, match="Threshold must be in range"):
            EnergyClassifier(threshold=1.5)
