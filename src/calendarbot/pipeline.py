"""Export-and-suggest pipeline.

Reads events and reminders for a range, formats them, asks the completion
service for new events and writes the accepted ones back to the store.

States::

    idle -> formatting -> awaiting_completion -> materializing -> idle
                 \\               \\                     \\
                  +---------------+---------------------+--> error

A run that ends in ``error`` is re-initiated by calling :meth:`run` again.
Nothing is retried automatically.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from calendarbot.completion import CompletionClient
from calendarbot.core.logging import reset_run_context, set_run_context
from calendarbot.core.telemetry import get_tracer
from calendarbot.errors import (
    CalendarBotError,
    NetworkError,
    PipelineBusyError,
    ProtocolError,
    ServiceError,
)
from calendarbot.formatter import TextFormatter
from calendarbot.materializer import EventMaterializer, MaterializeFailure
from calendarbot.models import CalendarEvent, CompletionResult, PipelineRequest
from calendarbot.store import CalendarStore

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "System exception, please try again later"
DEFAULT_SERVICE_ERROR_MESSAGE = GENERIC_ERROR_MESSAGE
MATERIALIZE_ERROR_MESSAGE = "An error occurred while creating events"


class PipelineState(StrEnum):
    idle = "idle"
    formatting = "formatting"
    awaiting_completion = "awaiting_completion"
    materializing = "materializing"
    error = "error"


_WORKING_STATES = frozenset(
    {PipelineState.formatting, PipelineState.awaiting_completion, PipelineState.materializing}
)

StateListener = Callable[[PipelineState, PipelineState], None]


@dataclass
class PipelineOutcome:
    """Terminal report of one run: a created-event list or an error string."""

    ok: bool
    created: list[CalendarEvent] = field(default_factory=list)
    error_message: str | None = None
    failures: list[MaterializeFailure] = field(default_factory=list)
    result: CompletionResult | None = None

    @property
    def created_count(self) -> int:
        return len(self.created)


class SchedulingPipeline:
    """Sequences store reads, formatting, completion and materialization."""

    def __init__(
        self,
        store: CalendarStore,
        client: CompletionClient,
        formatter: TextFormatter,
        *,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._formatter = formatter
        self._materializer = EventMaterializer(store)
        self._on_state_change = on_state_change
        self._state = PipelineState.idle

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state in _WORKING_STATES

    def _transition(self, new_state: PipelineState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.debug("Pipeline state %s -> %s", old_state, new_state)
        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)

    def _fail(self, message: str, **details: object) -> PipelineOutcome:
        self._transition(PipelineState.error)
        return PipelineOutcome(ok=False, error_message=message, **details)

    async def run(self, request: PipelineRequest) -> PipelineOutcome:
        if self.busy:
            raise PipelineBusyError(f"Pipeline run already in progress (state={self._state})")
        if self._state is PipelineState.error:
            self._transition(PipelineState.idle)

        token = set_run_context(uuid.uuid4().hex[:12])
        try:
            with get_tracer().start_as_current_span("calendarbot.pipeline.run") as span:
                span.set_attribute("pipeline.range_start", request.start_at.isoformat())
                span.set_attribute("pipeline.range_end", request.end_at.isoformat())
                span.set_attribute("pipeline.calendar_count", len(request.calendar_ids))
                try:
                    outcome = await self._run(request)
                except Exception:
                    self._transition(PipelineState.error)
                    raise
                span.set_attribute("pipeline.ok", outcome.ok)
                span.set_attribute("pipeline.created_count", outcome.created_count)
                return outcome
        finally:
            reset_run_context(token)

    async def _run(self, request: PipelineRequest) -> PipelineOutcome:
        # -- formatting --
        self._transition(PipelineState.formatting)
        try:
            events = await self._store.list_events(
                start_at=request.start_at,
                end_at=request.end_at,
                calendar_ids=request.calendar_ids,
            )
            reminders = await self._store.list_reminders(
                start_at=request.start_at,
                end_at=request.end_at,
                calendar_ids=request.reminder_list_ids,
            )
        except CalendarBotError:
            logger.exception("Reading events and reminders from %s failed", self._store.name)
            return self._fail(GENERIC_ERROR_MESSAGE)

        events_text = self._formatter.format_events(events)
        reminders_text = self._formatter.format_reminders(reminders)
        logger.info(
            "Formatted %d events and %d reminders for %s to %s",
            len(events),
            len(reminders),
            request.start_at.isoformat(),
            request.end_at.isoformat(),
        )

        # -- awaiting_completion --
        self._transition(PipelineState.awaiting_completion)
        try:
            result = await self._client.submit(events_text, reminders_text)
        except (NetworkError, ProtocolError) as exc:
            logger.error("Completion request failed: %s", exc)
            return self._fail(GENERIC_ERROR_MESSAGE)

        try:
            result.raise_for_status()
        except ServiceError as exc:
            logger.warning("Completion service reported failure: %s", exc)
            return self._fail(exc.message or DEFAULT_SERVICE_ERROR_MESSAGE, result=result)

        if result.message:
            logger.info("Completion service message: %s", result.message)

        if result.events is None:
            self._transition(PipelineState.idle)
            return PipelineOutcome(ok=True, result=result)

        # -- materializing --
        self._transition(PipelineState.materializing)
        materialized = await self._materializer.materialize(result.events)
        if not materialized.ok:
            logger.warning(
                "Materialized %d of %d proposed events",
                len(materialized.created),
                len(result.events),
            )
            return self._fail(
                MATERIALIZE_ERROR_MESSAGE,
                created=materialized.created,
                failures=materialized.failures,
                result=result,
            )

        self._transition(PipelineState.idle)
        logger.info("Pipeline created %d events", len(materialized.created))
        return PipelineOutcome(ok=True, created=materialized.created, result=result)
