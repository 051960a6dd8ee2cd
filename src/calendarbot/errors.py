"""Error hierarchy for the scheduling pipeline.

Transport and decoding failures are terminal for a pipeline run; parse and
store-write failures are scoped to a single proposed event.
"""

from __future__ import annotations

import re

_BEARER_PATTERN = re.compile(r"(?i)\bBearer\s+[^\s,;\"']+")
_MAX_MESSAGE_LENGTH = 200


def sanitize_message(message: str) -> str:
    """Normalize whitespace, mask bearer tokens and truncate to 200 chars."""
    redacted = _BEARER_PATTERN.sub("Bearer [REDACTED]", message)
    return " ".join(redacted.split())[:_MAX_MESSAGE_LENGTH]


class CalendarBotError(RuntimeError):
    """Base error raised by calendarbot components."""


class NetworkError(CalendarBotError):
    """Raised when the completion service cannot be reached (DNS, connect, timeout)."""


class ProtocolError(CalendarBotError):
    """Raised when a completion response cannot be decoded at either layer."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ServiceError(CalendarBotError):
    """Raised when the completion service answers with the failure status."""

    def __init__(self, message: str | None) -> None:
        self.message = message
        super().__init__(message or "Completion service reported a failure")


class ParseError(CalendarBotError):
    """Raised when a proposed event timestamp does not match the expected profile."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Invalid proposal timestamp: {value!r}")


class StoreWriteError(CalendarBotError):
    """Raised when the calendar store rejects a create or delete."""


class PipelineBusyError(CalendarBotError):
    """Raised when a pipeline instance is asked to run while a run is in flight."""
