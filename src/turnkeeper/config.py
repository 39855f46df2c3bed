"""Configuration schema for turnkeeper.

Defines Pydantic models for loading and validating segmentation, barge-in,
rate-limit and audio format configuration from YAML files and environment
variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from turnkeeper.errors import ConfigError

BYTES_PER_SAMPLE = 2  # 16-bit PCM


class AudioFormatConfig(BaseModel):
    """Format of the decoded PCM frames delivered by the receiver."""

    sample_rate: int = Field(default=48000, description="Input sample rate in Hz")
    channels: int = Field(default=2, description="Interleaved channel count")
    stt_sample_rate: int = Field(
        default=16000,
        description="Sample rate of the mono WAV handed to the transcriber",
    )

    @field_validator("sample_rate", "stt_sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that sample rate is a supported speech rate."""
        valid_rates = [8000, 16000, 24000, 48000]
        if v not in valid_rates:
            raise ValueError(f"sample_rate must be one of {valid_rates}, got {v}")
        return v

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: int) -> int:
        """Validate channel count."""
        if v not in (1, 2):
            raise ValueError(f"channels must be 1 (mono) or 2 (stereo), got {v}")
        return v

    @property
    def bytes_per_second(self) -> int:
        """Byte rate of the PCM stream."""
        return self.sample_rate * self.channels * BYTES_PER_SAMPLE

    def bytes_to_ms(self, num_bytes: int) -> int:
        """Convert a PCM byte count to milliseconds (rounded)."""
        return round(num_bytes / self.bytes_per_second * 1000)

    def ms_to_bytes(self, ms: float) -> int:
        """Convert milliseconds to a PCM byte count (floored)."""
        return int(ms / 1000 * self.bytes_per_second)


class SegmenterConfig(BaseModel):
    """Utterance segmentation configuration."""

    silence_ms: int = Field(
        default=800,
        ge=1,
        description="Silence after the last voiced frame that ends an utterance",
    )
    min_utterance_ms: int = Field(
        default=600,
        ge=0,
        description="Utterances shorter than this are never emitted",
    )
    max_utterance_ms: int = Field(
        default=15000,
        ge=1,
        description="Utterances are finalized at this length regardless of silence",
    )
    silence_threshold: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Normalized RMS at or above which a frame counts as voiced",
    )
    pre_roll_ms: int = Field(
        default=300,
        ge=0,
        description="Audio retained before speech onset",
    )
    tick_interval_ms: int = Field(
        default=200,
        ge=10,
        description="Interval of the silence/duration evaluation tick",
    )
    stuck_multiplier: int = Field(
        default=10,
        ge=2,
        description="Silence multiple after which a non-qualifying utterance is dropped",
    )
    rearm_delay_ms: int = Field(
        default=250,
        ge=0,
        description="Delay before recreating a capture whose stream ended",
    )

    @model_validator(mode="after")
    def validate_duration_bounds(self) -> "SegmenterConfig":
        """Validate that the maximum utterance length exceeds the minimum."""
        if self.max_utterance_ms <= self.min_utterance_ms:
            raise ValueError(
                f"max_utterance_ms ({self.max_utterance_ms}) must be greater than "
                f"min_utterance_ms ({self.min_utterance_ms})"
            )
        return self

    @property
    def stuck_after_ms(self) -> int:
        """Silence after which an Active segment is abandoned."""
        return self.silence_ms * self.stuck_multiplier


class BargeInConfig(BaseModel):
    """Barge-in (playback interruption) configuration."""

    enabled: bool = Field(default=True, description="Allow speech to interrupt playback")
    threshold: float = Field(
        default=0.02,
        ge=0.0,
        le=1.0,
        description="Normalized RMS a frame must reach to count as a barge-in hit",
    )
    coalesce_window_ms: int = Field(
        default=250,
        ge=1,
        description="Maximum gap between hits that still counts as consecutive",
    )
    required_hits: int = Field(
        default=2,
        ge=1,
        description="Consecutive hits needed to interrupt playback",
    )


class RateLimitConfig(BaseModel):
    """Per-participant fixed-window rate limits."""

    window_ms: int = Field(default=60000, ge=1, description="Window size in milliseconds")
    stt_max: int = Field(default=10, ge=0, description="Transcriptions allowed per window")
    tts_max: int = Field(default=10, ge=0, description="Syntheses allowed per window")


class TurnkeeperConfig(BaseModel):
    """Root turnkeeper configuration."""

    audio: AudioFormatConfig = Field(default_factory=AudioFormatConfig)
    segmenter: SegmenterConfig = Field(default_factory=SegmenterConfig)
    barge_in: BargeInConfig = Field(default_factory=BargeInConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    eligible_participants: list[str] = Field(
        default_factory=list,
        description="Participants whose speech is captured (empty = everyone)",
    )

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    def is_eligible(self, participant_id: str) -> bool:
        """Check whether a participant's audio should be captured."""
        if not self.eligible_participants:
            return True
        return participant_id in self.eligible_participants

    @classmethod
    def from_yaml(cls, path: Path) -> "TurnkeeperConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ConfigError: If YAML is invalid or validation fails
        """
        import yaml

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        return cls._validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "TurnkeeperConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides are applied in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls._validate(_apply_env_overrides({}))

    @classmethod
    def _validate(cls, data: dict[str, Any]) -> "TurnkeeperConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(str(e)) from e


# Environment variable → (section, key). A section of None targets the root model.
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "SILENCE_MS": ("segmenter", "silence_ms"),
    "MIN_UTTERANCE_MS": ("segmenter", "min_utterance_ms"),
    "MAX_UTTERANCE_MS": ("segmenter", "max_utterance_ms"),
    "SILENCE_THRESHOLD": ("segmenter", "silence_threshold"),
    "PRE_ROLL_MS": ("segmenter", "pre_roll_ms"),
    "BARGE_IN_THRESHOLD": ("barge_in", "threshold"),
    "RATE_LIMIT_WINDOW_MS": ("rate_limit", "window_ms"),
    "RATE_LIMIT_STT_MAX": ("rate_limit", "stt_max"),
    "RATE_LIMIT_TTS_MAX": ("rate_limit", "tts_max"),
    "STT_SAMPLE_RATE": ("audio", "stt_sample_rate"),
    "LOG_LEVEL": (None, "log_level"),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay recognized environment variables onto raw config data.

    Values are passed through as strings; pydantic coerces them.
    """
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        if (value := os.getenv(env_name)) is None:
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    # Any value other than "0" keeps barge-in enabled
    if (barge_in := os.getenv("BARGE_IN")) is not None:
        data.setdefault("barge_in", {})["enabled"] = barge_in != "0"

    if allowlist := os.getenv("ALLOWLIST"):
        data["eligible_participants"] = [
            participant.strip() for participant in allowlist.split(",") if participant.strip()
        ]

    return data
