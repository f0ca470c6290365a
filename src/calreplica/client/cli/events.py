"""Event and diagnostics commands for the calreplica CLI.

Commands:
- events: Show events in a date range (recurring events expanded)
- conflicts: List events waiting for conflict resolution
- resolve: Keep the local or the remote side of a conflict
- errors: Show the error log
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone

import click

from calreplica.client.cli.config import open_store
from calreplica.client.models import Event, EventKey
from calreplica.client.query import list_events
from calreplica.client.sync.conflict import ConflictResolver
from calreplica.client.sync.domain.conflicts import Resolution
from calreplica.client.sync.types import ConflictResolutionError
from calreplica.core.config import SyncWindow


def _format_when(event: Event) -> str:
    if event.start.is_all_day:
        return f"{event.start.date} (all day)"
    start = event.start.to_datetime()
    end = event.end.to_datetime()
    return f"{start:%Y-%m-%d %H:%M}-{end:%H:%M}"


def _flags(event: Event) -> str:
    flags = []
    if event.locally_modified:
        flags.append("pending")
    if event.has_conflict:
        flags.append("conflict")
    if event.sync_error:
        flags.append("error")
    return f" [{', '.join(flags)}]" if flags else ""


@click.command()
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), help="First day (default today).")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), help="Last day (default start + 7).")
@click.option("--account", "account_ids", multiple=True, help="Only this account (repeatable).")
@click.option("--calendar", "calendar_ids", multiple=True, help="Only this calendar (repeatable).")
def events(
    start: datetime | None,
    end: datetime | None,
    account_ids: tuple[str, ...],
    calendar_ids: tuple[str, ...],
) -> None:
    """Show events in a date range."""
    first = (start or datetime.now()).replace(
        hour=0, minute=0, second=0, microsecond=0, tzinfo=timezone.utc
    )
    last = end.replace(tzinfo=timezone.utc) if end else first + timedelta(days=7)
    if last < first:
        click.echo("Error: --end is before --start.", err=True)
        sys.exit(1)
    window = SyncWindow(start=first, end=last + timedelta(days=1))

    with open_store() as store:
        found = list_events(
            store,
            window,
            account_ids=account_ids or None,
            calendar_ids=calendar_ids or None,
        )
    if not found:
        click.echo("No events.")
        return
    for event in found:
        click.echo(f"{_format_when(event)}  {event.summary or '(no title)'}{_flags(event)}")


@click.command()
@click.option("--account", "account_id", help="Only this account.")
def conflicts(account_id: str | None) -> None:
    """List events waiting for conflict resolution."""
    with open_store() as store:
        conflicted = store.list_conflicts(account_id)
    if not conflicted:
        click.echo("No conflicts.")
        return
    for event in conflicted:
        remote = event.conflict_remote
        if remote is None:
            theirs = "changed remotely"
        elif remote.cancelled:
            theirs = "deleted remotely"
        else:
            theirs = f"remote: {remote.summary or '(no title)'}"
        mine = "deleted locally" if event.deleted else f"local: {event.summary or '(no title)'}"
        click.echo(f"{event.key}  {mine} | {theirs}")


@click.command()
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("event_id")
@click.option(
    "--keep",
    type=click.Choice([r.value for r in Resolution]),
    required=True,
    help="Side to keep.",
)
def resolve(account_id: str, calendar_id: str, event_id: str, keep: str) -> None:
    """Resolve a conflict by keeping the local or the remote version."""
    key = EventKey(account_id, calendar_id, event_id)
    with open_store() as store:
        try:
            ConflictResolver(store).resolve(key, Resolution(keep))
        except ConflictResolutionError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Kept {keep} version of {key}.")


@click.command()
@click.option("--account", "account_id", help="Only this account.")
@click.option("--limit", default=20, show_default=True, help="Number of entries.")
def errors(account_id: str | None, limit: int) -> None:
    """Show the most recent errors."""
    with open_store() as store:
        entries = store.list_errors(account_id, limit=limit)
    if not entries:
        click.echo("No errors.")
        return
    for entry in entries:
        when = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        where = "/".join(p for p in (entry.account_id, entry.calendar_id, entry.event_id) if p)
        click.echo(f"{when}  {entry.kind.value:<16} {where}  {entry.message}")
