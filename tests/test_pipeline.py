"""Tests for the export-and-suggest pipeline."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from calendarbot.core.logging import get_run_context
from calendarbot.errors import PipelineBusyError, StoreWriteError
from calendarbot.formatter import TextFormatter
from calendarbot.models import CalendarEventCreate, PipelineRequest
from calendarbot.pipeline import (
    DEFAULT_SERVICE_ERROR_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    MATERIALIZE_ERROR_MESSAGE,
    PipelineState,
    SchedulingPipeline,
)
from calendarbot.store import InMemoryCalendarStore
from tests.conftest import SHANGHAI, SeededStore, answer_handler, at, make_client, make_envelope

pytestmark = pytest.mark.unit

REVIEW_ANSWER = {
    "status": 1,
    "events": [
        {
            "dtstart": "2024-06-01T14:00:00+08:00",
            "dtend": "2024-06-01T15:00:00+08:00",
            "summary": "Review",
        }
    ],
}


def _request(seeded: SeededStore) -> PipelineRequest:
    return PipelineRequest(
        start_at=datetime(2024, 6, 1, tzinfo=SHANGHAI),
        end_at=datetime(2024, 6, 2, tzinfo=SHANGHAI),
        calendar_ids={seeded.work.calendar_id, seeded.personal.calendar_id},
    )


def _pipeline(store, handler, **kwargs) -> SchedulingPipeline:
    return SchedulingPipeline(store, make_client(handler), TextFormatter(SHANGHAI), **kwargs)


async def _titles(seeded: SeededStore, request: PipelineRequest) -> list[str]:
    events = await seeded.store.list_events(
        start_at=request.start_at, end_at=request.end_at, calendar_ids=request.calendar_ids
    )
    return [event.title for event in events]


async def _add_standup(seeded: SeededStore) -> None:
    await seeded.store.create_event(
        calendar_id=seeded.work.calendar_id,
        payload=CalendarEventCreate(
            title="Standup",
            start_at=at("2024-06-01T09:00:00+08:00"),
            end_at=at("2024-06-01T09:15:00+08:00"),
        ),
    )


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestSuccess:
    async def test_review_scenario(self, seeded: SeededStore):
        await _add_standup(seeded)
        requests: list[httpx.Request] = []
        pipeline = _pipeline(seeded.store, answer_handler(REVIEW_ANSWER, requests))
        request = _request(seeded)

        outcome = await pipeline.run(request)

        assert outcome.ok
        assert outcome.error_message is None
        assert outcome.created_count == 1
        assert outcome.created[0].title == "Review"
        assert await _titles(seeded, request) == ["Standup", "Review"]
        assert pipeline.state is PipelineState.idle

        inputs = json.loads(requests[0].content)["inputs"]
        assert "=== Saturday, Jun 1, 2024 ===" in inputs["existed_events"]
        assert "• [Work] Standup" in inputs["existed_events"]
        assert inputs["plans"] == (
            "Reminder List:\n\nNo reminders in the selected time range.\n"
        )

    async def test_reminders_sent_as_plans(self, seeded: SeededStore):
        await seeded.store.create_reminder(
            calendar_id=seeded.tasks.calendar_id,
            title="Buy milk",
            due_at=at("2024-06-01T18:00:00+08:00"),
        )
        requests: list[httpx.Request] = []
        pipeline = _pipeline(seeded.store, answer_handler({"status": 1}, requests))

        await pipeline.run(_request(seeded))

        plans = json.loads(requests[0].content)["inputs"]["plans"]
        assert "• [Tasks] Buy milk" in plans
        assert "  Status: Pending" in plans

    async def test_success_without_events(self, seeded: SeededStore):
        pipeline = _pipeline(seeded.store, answer_handler({"status": 1, "message": "nothing"}))

        outcome = await pipeline.run(_request(seeded))

        assert outcome.ok
        assert outcome.created_count == 0
        assert pipeline.state is PipelineState.idle

    async def test_state_transitions(self, seeded: SeededStore):
        transitions: list[tuple[PipelineState, PipelineState]] = []
        pipeline = _pipeline(
            seeded.store,
            answer_handler(REVIEW_ANSWER),
            on_state_change=lambda old, new: transitions.append((old, new)),
        )

        await pipeline.run(_request(seeded))

        assert transitions == [
            (PipelineState.idle, PipelineState.formatting),
            (PipelineState.formatting, PipelineState.awaiting_completion),
            (PipelineState.awaiting_completion, PipelineState.materializing),
            (PipelineState.materializing, PipelineState.idle),
        ]

    async def test_run_id_bound_during_run(self, seeded: SeededStore):
        seen: list[str | None] = []
        pipeline = _pipeline(
            seeded.store,
            answer_handler({"status": 1}),
            on_state_change=lambda old, new: seen.append(get_run_context()),
        )

        await pipeline.run(_request(seeded))

        assert seen
        assert all(run_id is not None for run_id in seen)
        assert len(set(seen)) == 1
        assert get_run_context() is None


# ---------------------------------------------------------------------------
# Failed runs
# ---------------------------------------------------------------------------


class TestFailure:
    async def test_service_failure_writes_nothing(self, seeded: SeededStore):
        pipeline = _pipeline(
            seeded.store, answer_handler({"status": 0, "message": "quota exceeded"})
        )
        request = _request(seeded)

        outcome = await pipeline.run(request)

        assert not outcome.ok
        assert outcome.error_message == "quota exceeded"
        assert outcome.created == []
        assert await _titles(seeded, request) == []
        assert pipeline.state is PipelineState.error

    async def test_service_failure_without_message(self, seeded: SeededStore):
        pipeline = _pipeline(seeded.store, answer_handler({"status": 0, "message": None}))

        outcome = await pipeline.run(_request(seeded))

        assert outcome.error_message == DEFAULT_SERVICE_ERROR_MESSAGE

    async def test_network_error_reports_generic_message(self, seeded: SeededStore):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        pipeline = _pipeline(seeded.store, handler)

        outcome = await pipeline.run(_request(seeded))

        assert not outcome.ok
        assert outcome.error_message == GENERIC_ERROR_MESSAGE
        assert pipeline.state is PipelineState.error

    async def test_undecodable_answer_reports_generic_message(self, seeded: SeededStore):
        pipeline = _pipeline(seeded.store, answer_handler("I could not find any slots."))

        outcome = await pipeline.run(_request(seeded))

        assert outcome.error_message == GENERIC_ERROR_MESSAGE
        assert await _titles(seeded, _request(seeded)) == []

    async def test_http_error_status_reports_generic_message(self, seeded: SeededStore):
        pipeline = _pipeline(seeded.store, lambda request: httpx.Response(503, text="busy"))

        outcome = await pipeline.run(_request(seeded))

        assert outcome.error_message == GENERIC_ERROR_MESSAGE

    async def test_partial_materialization(self, seeded: SeededStore):
        answer = {
            "status": 1,
            "events": [
                {"dtstart": "soon", "dtend": "later", "summary": "Vague"},
                {
                    "dtstart": "2024-06-01T16:00:00+08:00",
                    "dtend": "2024-06-01T17:00:00+08:00",
                    "summary": "Focus",
                },
            ],
        }
        pipeline = _pipeline(seeded.store, answer_handler(answer))
        request = _request(seeded)

        outcome = await pipeline.run(request)

        assert not outcome.ok
        assert outcome.error_message == MATERIALIZE_ERROR_MESSAGE
        assert [event.title for event in outcome.created] == ["Focus"]
        assert [failure.proposal.summary for failure in outcome.failures] == ["Vague"]
        assert await _titles(seeded, request) == ["Focus"]

    async def test_store_read_failure(self, seeded: SeededStore):
        class BrokenStore(InMemoryCalendarStore):
            async def list_events(self, **kwargs):
                raise StoreWriteError("calendar access revoked")

        requests: list[httpx.Request] = []
        pipeline = _pipeline(BrokenStore(), answer_handler({"status": 1}, requests))

        outcome = await pipeline.run(_request(seeded))

        assert outcome.error_message == GENERIC_ERROR_MESSAGE
        assert requests == []

    async def test_unexpected_exception_propagates(self, seeded: SeededStore):
        class ExplodingStore(InMemoryCalendarStore):
            async def list_reminders(self, **kwargs):
                raise KeyError("boom")

        pipeline = _pipeline(ExplodingStore(), answer_handler({"status": 1}))

        with pytest.raises(KeyError):
            await pipeline.run(_request(seeded))
        assert pipeline.state is PipelineState.error
        assert get_run_context() is None


# ---------------------------------------------------------------------------
# Re-entry
# ---------------------------------------------------------------------------


class TestReentry:
    async def test_rerun_after_error(self, seeded: SeededStore):
        responses = iter(
            [
                make_envelope({"status": 0, "message": "try later"}),
                make_envelope(REVIEW_ANSWER),
            ]
        )
        transitions: list[tuple[PipelineState, PipelineState]] = []
        pipeline = _pipeline(
            seeded.store,
            lambda request: httpx.Response(200, json=next(responses)),
            on_state_change=lambda old, new: transitions.append((old, new)),
        )

        first = await pipeline.run(_request(seeded))
        assert not first.ok
        assert pipeline.state is PipelineState.error

        transitions.clear()
        second = await pipeline.run(_request(seeded))

        assert second.ok
        assert second.created_count == 1
        assert transitions[0] == (PipelineState.error, PipelineState.idle)
        assert transitions[-1] == (PipelineState.materializing, PipelineState.idle)

    async def test_concurrent_run_rejected(self, seeded: SeededStore):
        release = asyncio.Event()
        awaiting = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json=make_envelope({"status": 1}))

        def on_change(old: PipelineState, new: PipelineState) -> None:
            if new is PipelineState.awaiting_completion:
                awaiting.set()

        pipeline = _pipeline(seeded.store, handler, on_state_change=on_change)
        first = asyncio.create_task(pipeline.run(_request(seeded)))
        await awaiting.wait()

        assert pipeline.busy
        with pytest.raises(PipelineBusyError):
            await pipeline.run(_request(seeded))

        release.set()
        outcome = await first
        assert outcome.ok
        assert not pipeline.busy
