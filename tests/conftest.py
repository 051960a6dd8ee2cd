"""Shared fixtures for the calendarbot test suite."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx
import pytest

from calendarbot.completion import CompletionClient
from calendarbot.models import Calendar, CalendarKind
from calendarbot.store import InMemoryCalendarStore

TEST_ENDPOINT = "https://completion.test/v1/completion-messages"
TEST_API_KEY = "app-test-key"

SHANGHAI = ZoneInfo("Asia/Shanghai")


@dataclass
class SeededStore:
    """An in-memory store with two event calendars and one reminder list."""

    store: InMemoryCalendarStore
    work: Calendar
    personal: Calendar
    tasks: Calendar


@pytest.fixture
def tz() -> ZoneInfo:
    return SHANGHAI


@pytest.fixture
async def seeded(tz: ZoneInfo) -> SeededStore:
    store = InMemoryCalendarStore(tz=tz)
    work = await store.create_calendar("Work")
    personal = await store.create_calendar("Personal")
    tasks = await store.create_calendar("Tasks", CalendarKind.reminder)
    return SeededStore(store=store, work=work, personal=personal, tasks=tasks)


def make_envelope(answer: dict[str, Any] | str, **overrides: Any) -> dict[str, Any]:
    """Build an outer completion envelope whose ``answer`` is JSON-encoded."""
    envelope: dict[str, Any] = {
        "event": "message",
        "task_id": "task-1",
        "id": "msg-1",
        "message_id": "msg-1",
        "mode": "completion",
        "answer": answer if isinstance(answer, str) else json.dumps(answer),
        "created_at": 1717200000,
        "metadata": {
            "usage": {
                "prompt_tokens": 120,
                "completion_tokens": 40,
                "total_tokens": 160,
                "total_price": "0.0003",
                "currency": "USD",
                "latency": 1.25,
            }
        },
    }
    envelope.update(overrides)
    return envelope


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> CompletionClient:
    transport = httpx.MockTransport(handler)
    return CompletionClient(
        api_key=TEST_API_KEY,
        endpoint=TEST_ENDPOINT,
        user="test-user",
        http_client=httpx.AsyncClient(transport=transport),
    )


def answer_handler(answer: dict[str, Any] | str, requests: list[httpx.Request] | None = None):
    """MockTransport handler that always replies with *answer* in an envelope."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, json=make_envelope(answer))

    return handler


def at(text: str) -> datetime:
    return datetime.fromisoformat(text)
