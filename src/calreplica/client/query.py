"""Read-side queries over the replica for display."""

from __future__ import annotations

from collections.abc import Iterable

from calreplica.client.models import Event
from calreplica.client.state import LocalStore
from calreplica.client.sync.domain.recurrence import expand_events
from calreplica.core.config import SyncWindow


def list_events(
    store: LocalStore,
    window: SyncWindow,
    account_ids: Iterable[str] | None = None,
    calendar_ids: Iterable[str] | None = None,
) -> list[Event]:
    """Events to display in a window, recurring events expanded.

    Only enabled calendars are included. Deleted and cancelled events are
    hidden; conflicted events show their local version.

    Args:
        store: Local replica.
        window: Display range.
        account_ids: Restrict to these accounts.
        calendar_ids: Restrict to these calendar ids.

    Returns:
        Events ordered by start.
    """
    accounts = set(account_ids) if account_ids is not None else None
    calendars = set(calendar_ids) if calendar_ids is not None else None

    events: list[Event] = []
    for calendar in store.list_calendars(enabled_only=True):
        if accounts is not None and calendar.account_id not in accounts:
            continue
        if calendars is not None and calendar.id not in calendars:
            continue
        events.extend(store.list_events(calendar.account_id, calendar.id))
    return expand_events(events, window)
