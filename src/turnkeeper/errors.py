"""Exception hierarchy for turnkeeper.

These are raised only at API boundaries (misuse, unrecoverable setup
failures). The steady-state frame and tick paths never raise; failures there
are logged and contained to the owning capture or session.
"""


class TurnkeeperError(Exception):
    """Base exception for turnkeeper errors."""

    pass


class ConfigError(TurnkeeperError):
    """Raised when configuration cannot be loaded or validated."""

    pass


class SessionNotFoundError(TurnkeeperError):
    """Raised when an operation targets a destination with no session."""

    pass


class TranscoderError(TurnkeeperError):
    """Raised when the playback transcoder process cannot be started."""

    pass
