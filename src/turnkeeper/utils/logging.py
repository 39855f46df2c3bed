"""Structured logging utilities."""

import json
import logging
from typing import Any

EVENT_LOGGER_NAME = "turnkeeper.events"

_event_logger = logging.getLogger(EVENT_LOGGER_NAME)


def setup_logging(level: str = "INFO") -> None:
    """Setup logging for the process.

    Args:
        level: Logging level name
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def log_event(event_type: str, data: dict[str, Any] | None = None) -> None:
    """Log structured event.

    Events are emitted as one JSON object per line on the
    ``turnkeeper.events`` logger so an external sink can filter on it.

    Args:
        event_type: Event type identifier (e.g. "utterance_start")
        data: Event data dictionary
    """
    _event_logger.info(json.dumps({"event": event_type, **(data or {})}, default=str))
