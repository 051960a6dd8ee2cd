"""Calendar store contracts with an in-memory provider.

This module defines:
- ``CalendarStore``: provider interface the pipeline reads from and writes to
- ``InMemoryCalendarStore``: reference provider, optionally loaded from and
  saved to a JSON snapshot file
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from datetime import UTC, datetime, tzinfo
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from calendarbot.errors import StoreWriteError
from calendarbot.models import Calendar, CalendarEvent, CalendarEventCreate, CalendarKind, Reminder

logger = logging.getLogger(__name__)


class CalendarStore(abc.ABC):
    """Host calendar/reminders store used by the pipeline."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``memory``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self, kind: CalendarKind | None = None) -> list[Calendar]:
        """Return calendars, optionally restricted to one kind."""
        ...

    @abc.abstractmethod
    async def default_calendar(self) -> Calendar | None:
        """Return the calendar new events are written to, if any."""
        ...

    @abc.abstractmethod
    async def create_calendar(
        self, title: str, kind: CalendarKind = CalendarKind.event
    ) -> Calendar:
        """Create a calendar."""
        ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None:
        """Delete a calendar together with its events or reminders."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        calendar_ids: set[str] | frozenset[str],
    ) -> list[CalendarEvent]:
        """Return events overlapping ``[start_at, end_at)``, sorted by start."""
        ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> CalendarEvent | None:
        """Fetch a single event by id."""
        ...

    @abc.abstractmethod
    async def create_event(
        self, *, calendar_id: str, payload: CalendarEventCreate
    ) -> CalendarEvent:
        """Create an event."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event."""
        ...

    @abc.abstractmethod
    async def list_reminders(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        calendar_ids: set[str] | frozenset[str] | None = None,
    ) -> list[Reminder]:
        """Return reminders due in ``[start_at, end_at)``, sorted by due time.

        Reminders without a due time are never in range. ``calendar_ids`` of
        ``None`` means every reminder list.
        """
        ...

    @abc.abstractmethod
    async def create_reminder(
        self,
        *,
        calendar_id: str,
        title: str,
        due_at: datetime | None = None,
        has_time: bool = True,
        completed: bool = False,
    ) -> Reminder:
        """Create a reminder."""
        ...


class StoreSnapshot(BaseModel):
    """On-disk shape of an :class:`InMemoryCalendarStore`."""

    calendars: list[Calendar] = Field(default_factory=list)
    default_calendar_id: str | None = None
    events: list[CalendarEvent] = Field(default_factory=list)
    reminders: list[Reminder] = Field(default_factory=list)


class InMemoryCalendarStore(CalendarStore):
    """Process-local store. Naive datetimes are interpreted in ``tz``."""

    def __init__(self, *, tz: tzinfo = UTC) -> None:
        self._tz = tz
        self._calendars: dict[str, Calendar] = {}
        self._events: dict[str, CalendarEvent] = {}
        self._reminders: dict[str, Reminder] = {}
        self._default_calendar_id: str | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "memory"

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @classmethod
    def from_snapshot(cls, path: Path, *, tz: tzinfo = UTC) -> InMemoryCalendarStore:
        """Load a store from a JSON snapshot file."""
        try:
            snapshot = StoreSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise ValueError(f"Cannot load calendar snapshot {path}: {exc}") from exc

        store = cls(tz=tz)
        store._calendars = {cal.calendar_id: cal for cal in snapshot.calendars}
        store._events = {
            event.event_id: event.model_copy(
                update={
                    "start_at": store._localize(event.start_at),
                    "end_at": store._localize(event.end_at),
                }
            )
            for event in snapshot.events
        }
        store._reminders = {
            reminder.reminder_id: reminder.model_copy(
                update={"due_at": store._localize(reminder.due_at)}
            )
            for reminder in snapshot.reminders
        }
        if snapshot.default_calendar_id in store._calendars:
            store._default_calendar_id = snapshot.default_calendar_id
        logger.debug(
            "Loaded snapshot %s: %d calendars, %d events, %d reminders",
            path,
            len(store._calendars),
            len(store._events),
            len(store._reminders),
        )
        return store

    def to_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            calendars=list(self._calendars.values()),
            default_calendar_id=self._default_calendar_id,
            events=sorted(self._events.values(), key=lambda e: e.start_at),
            reminders=list(self._reminders.values()),
        )

    def save_snapshot(self, path: Path) -> None:
        path.write_text(self.to_snapshot().model_dump_json(indent=2), encoding="utf-8")

    def set_default_calendar(self, calendar_id: str) -> None:
        calendar = self._calendars.get(calendar_id)
        if calendar is None or calendar.kind is not CalendarKind.event:
            raise StoreWriteError(f"Unknown event calendar: {calendar_id}")
        self._default_calendar_id = calendar_id

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(self, kind: CalendarKind | None = None) -> list[Calendar]:
        calendars = list(self._calendars.values())
        if kind is not None:
            calendars = [cal for cal in calendars if cal.kind is kind]
        return sorted(calendars, key=lambda cal: cal.title.lower())

    async def default_calendar(self) -> Calendar | None:
        if self._default_calendar_id is None:
            return None
        return self._calendars.get(self._default_calendar_id)

    async def create_calendar(
        self, title: str, kind: CalendarKind = CalendarKind.event
    ) -> Calendar:
        normalized = title.strip()
        if not normalized:
            raise StoreWriteError("Calendar title must be a non-empty string")
        async with self._lock:
            calendar = Calendar(calendar_id=uuid.uuid4().hex, title=normalized, kind=kind)
            self._calendars[calendar.calendar_id] = calendar
            # The first event calendar becomes the default for new events.
            if kind is CalendarKind.event and self._default_calendar_id is None:
                self._default_calendar_id = calendar.calendar_id
        logger.info("Created %s calendar %r (%s)", kind, normalized, calendar.calendar_id)
        return calendar

    async def delete_calendar(self, calendar_id: str) -> None:
        async with self._lock:
            if self._calendars.pop(calendar_id, None) is None:
                raise StoreWriteError(f"Unknown calendar: {calendar_id}")
            self._events = {
                key: event
                for key, event in self._events.items()
                if event.calendar_id != calendar_id
            }
            self._reminders = {
                key: reminder
                for key, reminder in self._reminders.items()
                if reminder.calendar_id != calendar_id
            }
            if self._default_calendar_id == calendar_id:
                self._default_calendar_id = None
        logger.info("Deleted calendar %s", calendar_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        calendar_ids: set[str] | frozenset[str],
    ) -> list[CalendarEvent]:
        window_start = self._localize(start_at)
        window_end = self._localize(end_at)
        events = [
            event
            for event in self._events.values()
            if event.calendar_id in calendar_ids
            and event.start_at < window_end
            and event.end_at > window_start
        ]
        return sorted(events, key=lambda e: e.start_at)

    async def get_event(self, event_id: str) -> CalendarEvent | None:
        return self._events.get(event_id)

    async def create_event(
        self, *, calendar_id: str, payload: CalendarEventCreate
    ) -> CalendarEvent:
        calendar = self._calendars.get(calendar_id)
        if calendar is None or calendar.kind is not CalendarKind.event:
            raise StoreWriteError(f"Unknown event calendar: {calendar_id}")

        start_at = self._localize(payload.start_at)
        end_at = self._localize(payload.end_at)
        if end_at < start_at:
            raise StoreWriteError(
                f"Event end {end_at.isoformat()} precedes start {start_at.isoformat()}"
            )
        if not payload.title.strip():
            raise StoreWriteError("Event title must be a non-empty string")

        event = CalendarEvent(
            event_id=uuid.uuid4().hex,
            title=payload.title,
            start_at=start_at,
            end_at=end_at,
            calendar=calendar.title,
            calendar_id=calendar.calendar_id,
            location=payload.location,
            notes=payload.notes,
        )
        async with self._lock:
            self._events[event.event_id] = event
        return event

    async def delete_event(self, event_id: str) -> None:
        async with self._lock:
            if self._events.pop(event_id, None) is None:
                raise StoreWriteError(f"Unknown event: {event_id}")

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def list_reminders(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        calendar_ids: set[str] | frozenset[str] | None = None,
    ) -> list[Reminder]:
        window_start = self._localize(start_at)
        window_end = self._localize(end_at)
        reminders = [
            reminder
            for reminder in self._reminders.values()
            if reminder.due_at is not None
            and window_start <= reminder.due_at < window_end
            and (calendar_ids is None or reminder.calendar_id in calendar_ids)
        ]
        return sorted(reminders, key=lambda r: r.due_at)

    async def create_reminder(
        self,
        *,
        calendar_id: str,
        title: str,
        due_at: datetime | None = None,
        has_time: bool = True,
        completed: bool = False,
    ) -> Reminder:
        calendar = self._calendars.get(calendar_id)
        if calendar is None or calendar.kind is not CalendarKind.reminder:
            raise StoreWriteError(f"Unknown reminder list: {calendar_id}")

        reminder = Reminder(
            reminder_id=uuid.uuid4().hex,
            title=title,
            due_at=self._localize(due_at),
            has_time=has_time,
            completed=completed,
            calendar=calendar.title,
            calendar_id=calendar.calendar_id,
        )
        async with self._lock:
            self._reminders[reminder.reminder_id] = reminder
        return reminder

    def _localize(self, value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=self._tz)
