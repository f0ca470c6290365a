"""Account and calendar commands for the calreplica CLI.

Commands:
- configure: Store gateway and OAuth client settings
- account add|remove|list: Manage authorized accounts
- calendar list|enable|disable: Choose which calendars are synced
"""

from __future__ import annotations

import sys

import click

from calreplica.client.cli.config import (
    get_token_path,
    load_config,
    open_store,
    save_config,
)
from calreplica.client.credentials import JsonTokenVault, TokenSet
from calreplica.client.models import Account


@click.command()
@click.option("--client-id", help="OAuth client id.")
@click.option("--client-secret", help="OAuth client secret.")
@click.option("--base-url", help="Calendar API base URL.")
@click.option("--token-url", help="OAuth token endpoint.")
@click.option("--interval", type=int, help="Minutes between scheduled syncs.")
@click.option("--auto-sync/--no-auto-sync", default=None, help="Enable or disable periodic sync.")
def configure(
    client_id: str | None,
    client_secret: str | None,
    base_url: str | None,
    token_url: str | None,
    interval: int | None,
    auto_sync: bool | None,
) -> None:
    """Store gateway and OAuth client settings."""
    config = load_config()
    for key, value in (
        ("client_id", client_id),
        ("client_secret", client_secret),
        ("base_url", base_url),
        ("token_url", token_url),
    ):
        if value is not None:
            config[key] = value
    if interval is not None:
        if interval < 1:
            click.echo("Error: interval must be at least 1 minute.", err=True)
            sys.exit(1)
        config.setdefault("sync", {})["interval_minutes"] = interval
    if auto_sync is not None:
        config.setdefault("sync", {})["auto_sync"] = auto_sync
    save_config(config)
    click.echo("Configuration saved.")


@click.group()
def account() -> None:
    """Manage authorized accounts."""


@account.command("add")
@click.argument("account_id")
@click.option("--email", default="", help="Account email address.")
@click.option("--color", help="Display color.")
@click.option("--refresh-token", prompt=True, hide_input=True, help="OAuth refresh token.")
def account_add(account_id: str, email: str, color: str | None, refresh_token: str) -> None:
    """Add an account authorized by an OAuth refresh token."""
    with open_store() as store:
        if store.get_account(account_id) is not None:
            click.echo(f"Error: Account {account_id} already exists.", err=True)
            sys.exit(1)
        JsonTokenVault(get_token_path()).save(
            account_id,
            # Expired access token: the first request refreshes it
            TokenSet(access_token="", refresh_token=refresh_token, expires_at=0.0),
        )
        store.save_account(
            Account(id=account_id, email=email, credential_handle=account_id, color=color)
        )
    click.echo(f"Account {account_id} added.")


@account.command("remove")
@click.argument("account_id")
@click.confirmation_option(prompt="Remove the account and all its local data?")
def account_remove(account_id: str) -> None:
    """Remove an account and everything stored for it."""
    with open_store() as store:
        existing = store.get_account(account_id)
        if existing is None:
            click.echo(f"Error: Unknown account {account_id}.", err=True)
            sys.exit(1)
        store.delete_account(account_id)
    JsonTokenVault(get_token_path()).delete(existing.credential_handle or account_id)
    click.echo(f"Account {account_id} removed.")


@account.command("list")
def account_list() -> None:
    """List accounts."""
    with open_store() as store:
        accounts = store.list_accounts()
        if not accounts:
            click.echo("No accounts.")
            return
        for acc in accounts:
            pending = store.count_pending_changes(acc.id)
            calendars = len(store.list_calendars(acc.id))
            click.echo(
                f"{acc.id}  {acc.email or '-'}  {calendars} calendars  {pending} pending changes"
            )


@click.group()
def calendar() -> None:
    """Choose which calendars are synced."""


@calendar.command("list")
@click.option("--account", "account_id", help="Only calendars of this account.")
def calendar_list(account_id: str | None) -> None:
    """List known calendars."""
    with open_store() as store:
        calendars = store.list_calendars(account_id)
    if not calendars:
        click.echo("No calendars. Run 'calreplica sync' to fetch them.")
        return
    for cal in calendars:
        flag = "on " if cal.enabled else "off"
        status = cal.last_sync_status or "never synced"
        click.echo(f"[{flag}] {cal.account_id}/{cal.id}  {cal.summary}  ({status})")


def _set_enabled(account_id: str, calendar_id: str, enabled: bool) -> None:
    with open_store() as store:
        if not store.set_calendar_enabled(account_id, calendar_id, enabled):
            click.echo(f"Error: Unknown calendar {account_id}/{calendar_id}.", err=True)
            sys.exit(1)
    click.echo(f"Calendar {calendar_id} {'enabled' if enabled else 'disabled'}.")


@calendar.command("enable")
@click.argument("account_id")
@click.argument("calendar_id")
def calendar_enable(account_id: str, calendar_id: str) -> None:
    """Include a calendar in sync and display."""
    _set_enabled(account_id, calendar_id, True)


@calendar.command("disable")
@click.argument("account_id")
@click.argument("calendar_id")
def calendar_disable(account_id: str, calendar_id: str) -> None:
    """Exclude a calendar from sync and display."""
    _set_enabled(account_id, calendar_id, False)
