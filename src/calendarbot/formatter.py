"""Render events and reminders as day-grouped text blocks.

The two blocks are the ``existed_events`` and ``plans`` inputs of the
completion request. Output depends only on the inputs, the timezone and, for
reminders without a due time, the supplied ``now``.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, tzinfo
from typing import TypeVar

from calendarbot.models import CalendarEvent, Reminder

EVENTS_HEADER = "Event List:"
REMINDERS_HEADER = "Reminder List:"
NO_EVENTS_PLACEHOLDER = "No events in the selected time range."
NO_REMINDERS_PLACEHOLDER = "No reminders in the selected time range."
DEFAULT_EVENT_CALENDAR = "Default Calendar"
DEFAULT_REMINDER_CALENDAR = "Default Reminder"

# Fixed English names so output does not follow the process locale.
_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

T = TypeVar("T")


def _to_local(value: datetime, tz: tzinfo) -> datetime:
    """Wall-clock time in *tz*; naive values are taken as already local."""
    if value.tzinfo is None:
        return value
    return value.astimezone(tz).replace(tzinfo=None)


def format_day_header(day: date) -> str:
    return f"=== {_WEEKDAYS[day.weekday()]}, {_MONTHS[day.month - 1]} {day.day}, {day.year} ==="


def format_date(day: date) -> str:
    return f"{_MONTHS[day.month - 1]} {day.day}, {day.year}"


def format_datetime(value: datetime) -> str:
    return f"{format_date(value)} {value.hour:02d}:{value.minute:02d}"


def _group_by_day(
    items: Iterable[T], local_key: Callable[[T], datetime]
) -> list[tuple[date, list[T]]]:
    grouped: dict[date, list[tuple[datetime, T]]] = defaultdict(list)
    for item in items:
        key = local_key(item)
        grouped[key.date()].append((key, item))
    return [
        (day, [item for _, item in sorted(grouped[day], key=lambda pair: pair[0])])
        for day in sorted(grouped)
    ]


def format_events(events: Iterable[CalendarEvent], *, tz: tzinfo) -> str:
    """Render events grouped by the local day of their start."""
    lines = [EVENTS_HEADER, ""]
    days = _group_by_day(events, lambda event: _to_local(event.start_at, tz))
    if not days:
        lines.append(NO_EVENTS_PLACEHOLDER)
        return "\n".join(lines) + "\n"

    for day, day_events in days:
        lines.append(format_day_header(day))
        for event in day_events:
            calendar = event.calendar or DEFAULT_EVENT_CALENDAR
            start = format_datetime(_to_local(event.start_at, tz))
            end = format_datetime(_to_local(event.end_at, tz))
            lines.append(f"• [{calendar}] {event.title}")
            lines.append(f"  Time: {start} - {end}")
        lines.append("")
    return "\n".join(lines) + "\n"


def format_reminders(
    reminders: Iterable[Reminder],
    *,
    tz: tzinfo,
    now: datetime | None = None,
) -> str:
    """Render reminders grouped by the local day they are due.

    Reminders without a due time are filed under *now*.
    """
    current = _to_local(now or datetime.now(tz), tz)

    def local_due(reminder: Reminder) -> datetime:
        if reminder.due_at is None:
            return current
        if not reminder.has_time:
            return datetime.combine(reminder.due_at.date(), time.min)
        return _to_local(reminder.due_at, tz)

    lines = [REMINDERS_HEADER, ""]
    days = _group_by_day(reminders, local_due)
    if not days:
        lines.append(NO_REMINDERS_PLACEHOLDER)
        return "\n".join(lines) + "\n"

    for day, day_reminders in days:
        lines.append(format_day_header(day))
        for reminder in day_reminders:
            calendar = reminder.calendar or DEFAULT_REMINDER_CALENDAR
            lines.append(f"• [{calendar}] {reminder.title}")
            if reminder.due_at is not None:
                due = local_due(reminder)
                rendered = format_datetime(due) if reminder.has_time else format_date(due)
                lines.append(f"  Due: {rendered}")
            lines.append(f"  Status: {'Completed' if reminder.completed else 'Pending'}")
        lines.append("")
    return "\n".join(lines) + "\n"


def format_all(
    events: Iterable[CalendarEvent],
    reminders: Iterable[Reminder],
    *,
    tz: tzinfo,
    now: datetime | None = None,
) -> str:
    """Events block and reminders block joined by a blank line."""
    return f"{format_events(events, tz=tz)}\n{format_reminders(reminders, tz=tz, now=now)}"


class TextFormatter:
    """Formatter bound to a display timezone."""

    def __init__(self, tz: tzinfo, *, clock: Callable[[], datetime] | None = None) -> None:
        self.tz = tz
        self._clock = clock

    def _now(self) -> datetime | None:
        return self._clock() if self._clock is not None else None

    def format_events(self, events: Iterable[CalendarEvent]) -> str:
        return format_events(events, tz=self.tz)

    def format_reminders(self, reminders: Iterable[Reminder]) -> str:
        return format_reminders(reminders, tz=self.tz, now=self._now())

    def format(self, events: Iterable[CalendarEvent], reminders: Iterable[Reminder]) -> str:
        return format_all(events, reminders, tz=self.tz, now=self._now())
