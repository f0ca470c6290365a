"""Sync commands for the calreplica CLI.

Commands:
- sync: Pull remote changes and push queued local changes
- flush: Push queued local changes only
- watch: Sync periodically until interrupted
"""

from __future__ import annotations

import sys
import threading

import click

from calreplica.client.cli.config import get_log_path, open_services, setup_logging
from calreplica.client.sync.scheduler import SyncScheduler
from calreplica.client.sync.types import FlushReport, SyncError, SyncReport


def _echo_flush(report: FlushReport) -> None:
    click.echo(
        f"Pushed {report.flushed} changes, {report.failed} failed, "
        f"{report.retried} to retry, {report.skipped} waiting"
    )
    for failure in report.terminal:
        click.echo(f"  ! {failure.event_key}: {failure.message}", err=True)


def _echo_report(report: SyncReport) -> None:
    click.echo(
        f"Synced {report.calendars_synced} calendars: "
        f"{report.events_created} new, {report.events_updated} updated, "
        f"{report.events_deleted} deleted"
    )
    if report.conflicts:
        click.echo(f"{report.conflicts_raised} new conflicts (see 'calreplica conflicts')")
    for error in report.errors:
        where = f"{error.account_id}/{error.calendar_id}" if error.calendar_id else error.account_id
        click.echo(f"  ! {where}: {error.message}", err=True)
    for account_id, calendar_id in report.cancelled_calendars:
        click.echo(f"  - {account_id}/{calendar_id}: cancelled")
    if report.flush is not None:
        _echo_flush(report.flush)


@click.command()
@click.option("--account", "account_ids", multiple=True, help="Account to sync (repeatable).")
@click.option("--no-flush", is_flag=True, help="Only pull; keep local changes queued.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def sync(account_ids: tuple[str, ...], no_flush: bool, verbose: bool) -> None:
    """Pull remote changes and push queued local changes."""
    setup_logging(verbose, get_log_path())
    with open_services() as services:
        try:
            report = services.engine.run_sync(account_ids or None, flush=not no_flush)
        except SyncError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    _echo_report(report)
    if not report.ok:
        sys.exit(2)


@click.command()
@click.option("--account", "account_ids", multiple=True, help="Account to flush (repeatable).")
def flush(account_ids: tuple[str, ...]) -> None:
    """Push queued local changes without pulling."""
    setup_logging(False, get_log_path())
    with open_services() as services:
        report = services.engine.processor.flush(account_ids or None)
    _echo_flush(report)
    if report.terminal:
        sys.exit(2)


@click.command()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def watch(verbose: bool) -> None:
    """Sync every configured interval until interrupted."""
    setup_logging(verbose, get_log_path())
    with open_services() as services:
        if not services.settings.auto_sync:
            click.echo(
                "Automatic sync is disabled. Enable it with 'calreplica configure --auto-sync'.",
                err=True,
            )
            sys.exit(1)
        scheduler = SyncScheduler(
            services.engine,
            services.settings,
            is_online=services.gateway.health_check,
            on_report=_echo_report,
        )
        stop = threading.Event()
        scheduler.start()
        click.echo(
            f"Syncing every {services.settings.interval_minutes} minutes. Press Ctrl+C to stop."
        )
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            scheduler.stop()
