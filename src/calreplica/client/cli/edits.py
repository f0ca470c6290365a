"""Offline editing commands for the calreplica CLI.

Commands:
- event add: Create an event in a calendar
- event edit: Change fields of an event or of one occurrence
- event delete: Delete an event

Edits apply to the replica at once and are queued; the next sync or flush
pushes them to the remote side.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from typing import Any, NoReturn
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click

from calreplica.client.cli.config import open_store
from calreplica.client.models import EventKey, EventTime
from calreplica.client.sync.queue import LocalChangeQueue

WHEN = click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"])


def event_times(
    start: datetime,
    end: datetime | None,
    all_day: bool,
    zone: str | None,
) -> tuple[EventTime, EventTime]:
    """Build start/end values from command-line input.

    All-day events end on the next day unless told otherwise; timed events
    last an hour.

    Raises:
        ValueError: If the zone is unknown or the end is not after the start.
    """
    if all_day:
        first = start.date()
        last = end.date() if end else first + timedelta(days=1)
        if last <= first:
            raise ValueError("End date must be after the start date")
        return EventTime.from_date(first, zone), EventTime.from_date(last, zone)

    try:
        tz = ZoneInfo(zone) if zone else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown time zone: {zone}") from None
    begin = start.replace(tzinfo=tz)
    finish = end.replace(tzinfo=tz) if end else begin + timedelta(hours=1)
    if finish <= begin:
        raise ValueError("End must be after start")
    return EventTime.from_datetime(begin, zone), EventTime.from_datetime(finish, zone)


def _fail(error: Exception) -> NoReturn:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
def event() -> None:
    """Edit events offline; changes are pushed on the next sync."""


@event.command("add")
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("summary")
@click.option("--start", type=WHEN, required=True, help="Start (YYYY-MM-DD[THH:MM]).")
@click.option("--end", type=WHEN, help="End (default one hour, or one day if --all-day).")
@click.option("--all-day", is_flag=True, help="All-day event.")
@click.option("--zone", help="IANA time zone of start and end (default UTC).")
@click.option("--location", help="Location.")
@click.option("--description", help="Description.")
@click.option("--rrule", "rules", multiple=True, help="Recurrence line, e.g. RRULE:FREQ=WEEKLY.")
def event_add(
    account_id: str,
    calendar_id: str,
    summary: str,
    start: datetime,
    end: datetime | None,
    all_day: bool,
    zone: str | None,
    location: str | None,
    description: str | None,
    rules: tuple[str, ...],
) -> None:
    """Create an event."""
    with open_store() as store:
        try:
            first, last = event_times(start, end, all_day, zone)
            created = LocalChangeQueue(store).create_event(
                account_id,
                calendar_id,
                summary=summary,
                start=first,
                end=last,
                description=description,
                location=location,
                recurrence=rules,
            )
        except ValueError as e:
            _fail(e)
    click.echo(f"Queued new event {created.key}.")


@event.command("edit")
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("event_id")
@click.option("--summary", help="New title.")
@click.option("--location", help="New location.")
@click.option("--description", help="New description.")
@click.option("--start", type=WHEN, help="New start (YYYY-MM-DD[THH:MM]).")
@click.option("--end", type=WHEN, help="New end (needs --start).")
@click.option("--all-day", is_flag=True, help="Make the new times all-day.")
@click.option("--zone", help="IANA time zone of the new times (default UTC).")
@click.option(
    "--occurrence",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Only change the occurrence of a recurring event on this date.",
)
def event_edit(
    account_id: str,
    calendar_id: str,
    event_id: str,
    summary: str | None,
    location: str | None,
    description: str | None,
    start: datetime | None,
    end: datetime | None,
    all_day: bool,
    zone: str | None,
    occurrence: datetime | None,
) -> None:
    """Change an event, or one occurrence of a recurring event."""
    changes: dict[str, Any] = {
        name: value
        for name, value in (("summary", summary), ("location", location), ("description", description))
        if value is not None
    }
    key = EventKey(account_id, calendar_id, event_id)

    with open_store() as store:
        queue = LocalChangeQueue(store)
        try:
            if end is not None and start is None:
                raise ValueError("--end needs --start")
            if start is not None:
                changes["start"], changes["end"] = event_times(start, end, all_day, zone)
            if not changes:
                raise ValueError("Nothing to change")
            if occurrence is not None:
                updated = queue.modify_instance(key, occurrence.date(), changes)
            else:
                updated = queue.update_event(key, changes)
        except ValueError as e:
            _fail(e)
    click.echo(f"Queued update of {updated.key}.")


@event.command("delete")
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("event_id")
@click.confirmation_option(prompt="Delete the event?")
def event_delete(account_id: str, calendar_id: str, event_id: str) -> None:
    """Delete an event."""
    key = EventKey(account_id, calendar_id, event_id)
    with open_store() as store:
        try:
            LocalChangeQueue(store).delete_event(key)
        except ValueError as e:
            _fail(e)
    click.echo(f"Queued delete of {key}.")
