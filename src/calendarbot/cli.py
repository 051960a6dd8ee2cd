"""Command-line front-end for calendarbot."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date, datetime, time, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
from pydantic import ValidationError

from calendarbot.completion import build_completion_client
from calendarbot.config import ConfigError, load_config
from calendarbot.core.logging import configure_logging
from calendarbot.core.telemetry import init_telemetry
from calendarbot.formatter import TextFormatter, format_datetime
from calendarbot.models import CalendarKind, PipelineRequest
from calendarbot.pipeline import PipelineOutcome, SchedulingPipeline
from calendarbot.store import InMemoryCalendarStore

logger = logging.getLogger(__name__)

PRESET_TOMORROW = "tomorrow"
PRESET_NEXT_WEEK = "next-week"

_snapshot_option = click.option(
    "--snapshot",
    "snapshot_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON snapshot of the calendar store",
)


def _range_options(func):  # noqa: ANN001, ANN202
    func = click.option(
        "--calendar",
        "calendars",
        multiple=True,
        help="Event calendar id or title to include (default: all)",
    )(func)
    func = click.option(
        "--preset",
        type=click.Choice([PRESET_TOMORROW, PRESET_NEXT_WEEK]),
        default=None,
        help="Predefined range instead of --start/--end",
    )(func)
    func = click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)(func)
    func = click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)(func)
    return func


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Suggest new calendar events from existing events and reminders."""


def _parse_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise click.BadParameter(f"Unknown timezone: {name}") from exc


def _load_store(snapshot_path: Path, tz: tzinfo) -> InMemoryCalendarStore:
    try:
        return InMemoryCalendarStore.from_snapshot(snapshot_path, tz=tz)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


async def _resolve_calendar_ids(
    store: InMemoryCalendarStore, selectors: tuple[str, ...]
) -> set[str]:
    calendars = await store.list_calendars(CalendarKind.event)
    if not selectors:
        return {cal.calendar_id for cal in calendars}

    selected: set[str] = set()
    unknown: list[str] = []
    for selector in selectors:
        matches = [cal for cal in calendars if selector in (cal.calendar_id, cal.title)]
        if not matches:
            unknown.append(selector)
        selected.update(cal.calendar_id for cal in matches)
    if unknown:
        raise click.BadParameter(
            f"Unknown calendar(s): {', '.join(unknown)}", param_hint="--calendar"
        )
    return selected


def _build_request(
    *,
    start: datetime | None,
    end: datetime | None,
    preset: str | None,
    calendar_ids: set[str],
    tz: tzinfo,
) -> PipelineRequest:
    if preset is not None and (start is not None or end is not None):
        raise click.UsageError("--preset cannot be combined with --start/--end")
    if preset == PRESET_NEXT_WEEK:
        return PipelineRequest.next_week(calendar_ids, tz=tz)
    if preset == PRESET_TOMORROW or (start is None and end is None):
        return PipelineRequest.tomorrow(calendar_ids, tz=tz)
    if start is None or end is None:
        raise click.UsageError("--start and --end must be given together")

    def _midnight(value: date) -> datetime:
        return datetime.combine(value, time.min, tzinfo=tz)

    try:
        return PipelineRequest(
            start_at=_midnight(start.date()),
            end_at=_midnight(end.date()),
            calendar_ids=calendar_ids,
        )
    except ValidationError as exc:
        raise click.UsageError("--start must be before --end") from exc


@cli.command("calendars")
@_snapshot_option
def calendars_cmd(snapshot_path: Path) -> None:
    """List calendars and reminder lists in a snapshot."""
    store = _load_store(snapshot_path, ZoneInfo("UTC"))

    async def _list() -> None:
        default = await store.default_calendar()
        for calendar in await store.list_calendars():
            is_default = default is not None and calendar.calendar_id == default.calendar_id
            marker = "*" if is_default else " "
            click.echo(f"{marker} {calendar.calendar_id}  {calendar.kind:<8}  {calendar.title}")

    asyncio.run(_list())


@cli.command()
@_snapshot_option
@_range_options
@click.option("--timezone", "timezone", default="UTC", show_default=True)
def export(
    snapshot_path: Path,
    start: datetime | None,
    end: datetime | None,
    preset: str | None,
    calendars: tuple[str, ...],
    timezone: str,
) -> None:
    """Print the formatted events and reminders for a range."""
    tz = _parse_timezone(timezone)
    store = _load_store(snapshot_path, tz)

    async def _export() -> str:
        calendar_ids = await _resolve_calendar_ids(store, calendars)
        request = _build_request(
            start=start, end=end, preset=preset, calendar_ids=calendar_ids, tz=tz
        )
        events = await store.list_events(
            start_at=request.start_at, end_at=request.end_at, calendar_ids=request.calendar_ids
        )
        reminders = await store.list_reminders(
            start_at=request.start_at,
            end_at=request.end_at,
            calendar_ids=request.reminder_list_ids,
        )
        return TextFormatter(tz).format(events, reminders)

    click.echo(asyncio.run(_export()), nl=False)


@cli.command()
@click.option(
    "--config",
    "config_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory containing calendarbot.toml",
)
@_snapshot_option
@_range_options
@click.option("--write", is_flag=True, help="Save created events back to the snapshot")
def suggest(
    config_dir: Path,
    snapshot_path: Path,
    start: datetime | None,
    end: datetime | None,
    preset: str | None,
    calendars: tuple[str, ...],
    write: bool,
) -> None:
    """Ask the completion service for new events and create them."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    init_telemetry()

    tz = config.formatting.tz
    store = _load_store(snapshot_path, tz)

    async def _suggest() -> PipelineOutcome:
        calendar_ids = await _resolve_calendar_ids(store, calendars)
        request = _build_request(
            start=start, end=end, preset=preset, calendar_ids=calendar_ids, tz=tz
        )
        async with build_completion_client(config.completion) as client:
            pipeline = SchedulingPipeline(store, client, TextFormatter(tz))
            return await pipeline.run(request)

    outcome = asyncio.run(_suggest())

    for event in outcome.created:
        start_text = format_datetime(event.start_at.astimezone(tz))
        end_text = format_datetime(event.end_at.astimezone(tz))
        click.echo(f"+ [{event.calendar}] {event.title}  {start_text} - {end_text}")

    if write and outcome.created:
        store.save_snapshot(snapshot_path)
        logger.info("Saved %d new events to %s", outcome.created_count, snapshot_path)

    if not outcome.ok:
        click.echo(f"Error: {outcome.error_message}", err=True)
        sys.exit(1)

    click.echo(f"Successfully created {outcome.created_count} new events")
