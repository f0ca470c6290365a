"""Command-line interface for calreplica.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store gateway and OAuth client settings
- account: Add, remove and list accounts
- calendar: List, enable and disable calendars
- sync: Pull remote changes and push queued local changes
- flush: Push queued local changes only
- watch: Sync periodically until interrupted
- events: Show events in a date range
- event add|edit|delete: Edit events offline
- conflicts: List events waiting for conflict resolution
- resolve: Keep the local or the remote side of a conflict
- errors: Show the error log
"""

from __future__ import annotations

import click

from calreplica.client.cli.accounts import account, calendar, configure
from calreplica.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
    setup_logging,
)
from calreplica.client.cli.edits import event
from calreplica.client.cli.events import conflicts, errors, events, resolve
from calreplica.client.cli.sync import flush, sync, watch


@click.group()
@click.version_option(package_name="calreplica")
def cli() -> None:
    """calreplica - Offline-capable multi-account calendar replica."""


# Setup commands
cli.add_command(configure)
cli.add_command(account)
cli.add_command(calendar)

# Sync commands
cli.add_command(sync)
cli.add_command(flush)
cli.add_command(watch)

# Event commands
cli.add_command(events)
cli.add_command(event)
cli.add_command(conflicts)
cli.add_command(resolve)
cli.add_command(errors)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
    "setup_logging",
]
