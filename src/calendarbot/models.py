"""Value objects shared by the store, formatter, completion client and pipeline."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from calendarbot.errors import ServiceError

# Status value the completion service uses to signal failure.
COMPLETION_STATUS_FAILURE = 0


class CalendarKind(StrEnum):
    """Entity type a calendar holds."""

    event = "event"
    reminder = "reminder"


class Calendar(BaseModel):
    """A calendar (for events) or a reminder list (for reminders)."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    title: str
    kind: CalendarKind = CalendarKind.event
    color: str | None = None


class CalendarEvent(BaseModel):
    """Event as read from the host calendar store."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    calendar: str
    calendar_id: str
    location: str | None = None
    notes: str | None = None


class CalendarEventCreate(BaseModel):
    """Payload for creating an event in the host store."""

    title: str
    start_at: datetime
    end_at: datetime
    location: str | None = None
    notes: str | None = None


class Reminder(BaseModel):
    """Reminder as read from the host store.

    ``due_at`` may carry only a date. A bare :class:`~datetime.date` is
    normalized to midnight with ``has_time`` cleared.
    """

    model_config = ConfigDict(frozen=True)

    reminder_id: str
    title: str
    due_at: datetime | None = None
    has_time: bool = True
    completed: bool = False
    calendar: str
    calendar_id: str

    @model_validator(mode="before")
    @classmethod
    def _normalize_date_only_due(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        due = data.get("due_at")
        if isinstance(due, date) and not isinstance(due, datetime):
            data = {**data, "due_at": datetime.combine(due, time.min), "has_time": False}
        return data


class ProposedEvent(BaseModel):
    """Event suggested by the completion service; timestamps are still text."""

    model_config = ConfigDict(extra="ignore")

    dtstart: str
    dtend: str
    summary: str
    location: str | None = None
    description: str | None = None


class CompletionResult(BaseModel):
    """Decoded contents of the service's ``answer`` string."""

    model_config = ConfigDict(extra="ignore")

    status: int
    message: str | None = None
    events: list[ProposedEvent] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status != COMPLETION_STATUS_FAILURE

    def raise_for_status(self) -> None:
        """Raise :class:`ServiceError` when the service reported failure."""
        if not self.succeeded:
            raise ServiceError(self.message)


class CompletionUsage(BaseModel):
    """Token accounting reported in the envelope metadata."""

    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_price: str | None = None
    currency: str | None = None
    latency: float | None = None


class CompletionMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    usage: CompletionUsage = Field(default_factory=CompletionUsage)


class CompletionEnvelope(BaseModel):
    """Outer response body. ``answer`` is itself a JSON-encoded string."""

    model_config = ConfigDict(extra="ignore")

    event: str | None = None
    task_id: str | None = None
    id: str | None = None
    message_id: str | None = None
    mode: str | None = None
    answer: str
    created_at: int | None = None
    metadata: CompletionMetadata = Field(default_factory=CompletionMetadata)


class PipelineRequest(BaseModel):
    """Date range (start inclusive, end exclusive) and calendar selection."""

    model_config = ConfigDict(frozen=True)

    start_at: datetime
    end_at: datetime
    calendar_ids: frozenset[str] = frozenset()
    # None selects every reminder list.
    reminder_list_ids: frozenset[str] | None = None

    @field_validator("calendar_ids", "reminder_list_ids", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        if value is None or isinstance(value, frozenset):
            return value
        return frozenset(value)

    @model_validator(mode="after")
    def _validate_range(self) -> PipelineRequest:
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        return self

    @classmethod
    def tomorrow(
        cls,
        calendar_ids: set[str] | frozenset[str],
        *,
        tz: tzinfo,
        now: datetime | None = None,
    ) -> PipelineRequest:
        """Range covering the whole of tomorrow in *tz*."""
        start = _start_of_day(now or datetime.now(tz), tz) + timedelta(days=1)
        return cls(start_at=start, end_at=start + timedelta(days=1), calendar_ids=calendar_ids)

    @classmethod
    def next_week(
        cls,
        calendar_ids: set[str] | frozenset[str],
        *,
        tz: tzinfo,
        now: datetime | None = None,
    ) -> PipelineRequest:
        """Range from the start of today through the following seven days."""
        start = _start_of_day(now or datetime.now(tz), tz)
        return cls(start_at=start, end_at=start + timedelta(days=7), calendar_ids=calendar_ids)


def _start_of_day(value: datetime, tz: tzinfo) -> datetime:
    local = value.astimezone(tz) if value.tzinfo is not None else value.replace(tzinfo=tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)
