"""
Observability sink for the texturing pipeline.

The pipeline does not talk to process-wide logging state directly. It emits
named events with structured fields to an EventSink, and the CLI decides
where those events go (LoggingEventSink forwards them to `logging`).
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple


class EventSink(Protocol):
    """Anything that accepts structured pipeline events."""

    def emit(self, event: str, **fields: Any) -> None:
        ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: str, **fields: Any) -> None:
        pass


class LoggingEventSink:
    """
    Forward events to a `logging.Logger`.

    Events are logged at INFO unless a `level` field is given. Fields are
    rendered as `key=value` pairs after the event name.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("sfm2tex")

    def emit(self, event: str, **fields: Any) -> None:
        level = fields.pop("level", logging.INFO)
        if not self.logger.isEnabledFor(level):
            return
        if fields:
            details = " ".join(f"{key}={value}" for key, value in fields.items())
            self.logger.log(level, "%s %s", event, details)
        else:
            self.logger.log(level, "%s", event)


class RecordingEventSink:
    """Keep every event in memory (used by tests and notebooks)."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, dict(fields)))

    def names(self) -> List[str]:
        """Event names in emission order."""
        return [name for name, _ in self.events]

    def fields(self, event: str) -> List[Dict[str, Any]]:
        """Fields of every emission of `event`."""
        return [fields for name, fields in self.events if name == event]
