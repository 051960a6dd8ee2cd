"""Write service-proposed events into the host calendar store."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from calendarbot.errors import CalendarBotError, ParseError, StoreWriteError
from calendarbot.models import CalendarEvent, CalendarEventCreate, ProposedEvent
from calendarbot.store import CalendarStore

logger = logging.getLogger(__name__)

# Internet date-time: date, time and offset; no fractional seconds.
_PROPOSAL_TIMESTAMP_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:Z|[+-]\d{2}:\d{2})$"
)


def parse_proposal_timestamp(value: str) -> datetime:
    """Parse ``2024-06-01T09:00:00+08:00`` style text into an aware datetime."""
    normalized = value.strip()
    if _PROPOSAL_TIMESTAMP_PATTERN.fullmatch(normalized) is None:
        raise ParseError(value)
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ParseError(value) from exc


@dataclass
class MaterializeFailure:
    """A proposal that was not written, with the reason."""

    proposal: ProposedEvent
    error: CalendarBotError


@dataclass
class MaterializeResult:
    created: list[CalendarEvent] = field(default_factory=list)
    failures: list[MaterializeFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True only when every proposal parsed and was written."""
        return not self.failures


class EventMaterializer:
    """Creates proposed events in the store's default calendar for new events.

    A failure on one proposal is recorded and the remaining proposals are
    still attempted.
    """

    def __init__(self, store: CalendarStore) -> None:
        self._store = store

    async def materialize(self, proposals: list[ProposedEvent]) -> MaterializeResult:
        result = MaterializeResult()
        if not proposals:
            return result

        calendar = await self._store.default_calendar()

        for proposal in proposals:
            try:
                payload = CalendarEventCreate(
                    title=proposal.summary,
                    start_at=parse_proposal_timestamp(proposal.dtstart),
                    end_at=parse_proposal_timestamp(proposal.dtend),
                    location=proposal.location,
                    notes=proposal.description,
                )
            except ParseError as exc:
                logger.warning(
                    "Skipping proposal %r: dtstart=%r dtend=%r (%s)",
                    proposal.summary,
                    proposal.dtstart,
                    proposal.dtend,
                    exc,
                )
                result.failures.append(MaterializeFailure(proposal=proposal, error=exc))
                continue

            try:
                if calendar is None:
                    raise StoreWriteError("Store has no default calendar for new events")
                event = await self._store.create_event(
                    calendar_id=calendar.calendar_id, payload=payload
                )
            except StoreWriteError as exc:
                logger.warning("Store rejected proposal %r: %s", proposal.summary, exc)
                result.failures.append(MaterializeFailure(proposal=proposal, error=exc))
                continue

            logger.info("Created event %r (%s)", event.title, event.event_id)
            result.created.append(event)

        return result
