"""Local mutations and the pending-change queue.

This module provides:
- LocalChangeQueue: Applies user edits to the replica and queues them

Every edit is applied to the local record and appended to the durable
queue in one store transaction, so the replica never shows an edit that
is not also queued (and vice versa).

Coalescing:
    A change still waiting in the queue absorbs later edits of the same
    event: an update of a not-yet-created event rewrites the queued create,
    and repeated updates rewrite the queued update (keeping its original
    base version). Deleting a never-created event just drops its queued
    create. Mutations hold the (account, calendar) unit lock so they never
    interleave with a flush of the same unit.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from datetime import date, datetime, timedelta, timezone
from datetime import time as dt_time
from typing import Any

from calreplica.client.models import (
    Event,
    EventKey,
    EventTime,
    InstanceKey,
    Operation,
    PendingChange,
    Tombstone,
)
from calreplica.client.state import LocalStore
from calreplica.client.sync.domain.recurrence import expand
from calreplica.core.config import SyncWindow

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


def is_local_id(event_id: str) -> bool:
    """True for placeholder ids of events the remote side has not seen yet."""
    return event_id.startswith(LOCAL_ID_PREFIX)


class LocalChangeQueue:
    """User-facing mutation API of the replica."""

    def __init__(self, store: LocalStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def _require_event(self, key: EventKey) -> Event:
        event = self._store.get_event(key)
        if event is None or event.deleted:
            raise ValueError(f"No such event: {key}")
        return event

    def create_event(
        self,
        account_id: str,
        calendar_id: str,
        *,
        summary: str,
        start: EventTime,
        end: EventTime,
        description: str | None = None,
        location: str | None = None,
        recurrence: tuple[str, ...] = (),
    ) -> Event:
        """Create an event locally and queue its creation.

        The event gets a local placeholder id until the remote side assigns one.

        Raises:
            ValueError: If the calendar is unknown.
        """
        if self._store.get_calendar(account_id, calendar_id) is None:
            raise ValueError(f"Unknown calendar: {account_id}/{calendar_id}")

        now = self._clock()
        event = Event(
            account_id=account_id,
            calendar_id=calendar_id,
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}",
            start=start,
            end=end,
            summary=summary,
            description=description,
            location=location,
            recurrence=tuple(recurrence),
            locally_modified=True,
            updated_at=now,
        )
        with self._store.unit_lock(account_id, calendar_id), self._store.transaction():
            self._store.save_event(event)
            self._store.add_pending_change(
                PendingChange(
                    account_id=account_id,
                    calendar_id=calendar_id,
                    event_id=event.id,
                    operation=Operation.CREATE,
                    payload=event.to_payload(),
                    created_at=now,
                )
            )
        logger.debug(f"Queued create of {event.key}")
        return event

    def update_event(self, key: EventKey, changes: Mapping[str, Any]) -> Event:
        """Edit an event locally and queue the update.

        Args:
            key: Event to edit.
            changes: New values of editable fields.

        Raises:
            ValueError: If the event is unknown or deleted, or a field is not editable.
        """
        with self._store.unit_lock(key.account_id, key.calendar_id), self._store.transaction():
            event = self._require_event(key)
            updated = event.with_changes(changes)
            updated.locally_modified = True
            updated.updated_at = self._clock()
            updated.sync_error = None
            self._store.save_event(updated)
            self._enqueue_write(updated)
        logger.debug(f"Queued update of {key}")
        return updated

    def _enqueue_write(self, event: Event) -> None:
        """Fold the new state into a queued write, or append an update."""
        pending = self._store.pending_changes_for_event(event.key)
        writes = [c for c in pending if c.operation is not Operation.DELETE]
        if writes:
            latest = writes[-1]
            payload = event.to_payload()
            if latest.operation is Operation.UPDATE:
                payload["base_version"] = latest.base_version
            latest.payload = payload
            self._store.update_pending_change(latest)
            return

        payload = event.to_payload()
        payload["base_version"] = event.remote_version
        self._store.add_pending_change(
            PendingChange(
                account_id=event.account_id,
                calendar_id=event.calendar_id,
                event_id=event.id,
                operation=Operation.UPDATE,
                payload=payload,
                created_at=self._clock(),
            )
        )

    def delete_event(self, key: EventKey) -> None:
        """Delete an event locally and queue the remote delete.

        The record stays, soft-deleted and tombstoned, until the remote side
        confirms. An event the remote side never saw is removed outright.

        Raises:
            ValueError: If the event is unknown or already deleted.
        """
        with self._store.unit_lock(key.account_id, key.calendar_id), self._store.transaction():
            event = self._require_event(key)
            pending = self._store.pending_changes_for_event(key)

            if any(c.operation is Operation.CREATE for c in pending):
                self._store.delete_pending_changes_for_event(key)
                self._store.delete_event(key)
                logger.debug(f"Dropped never-created event {key}")
                return

            # A delete supersedes queued writes of the same event
            self._store.delete_pending_changes_for_event(key)
            now = self._clock()
            event.deleted = True
            event.locally_modified = True
            event.updated_at = now
            self._store.save_event(event)
            self._store.add_tombstone(
                Tombstone(
                    account_id=key.account_id,
                    calendar_id=key.calendar_id,
                    event_id=key.event_id,
                    deleted_at=now,
                    base_version=event.remote_version,
                )
            )
            self._store.add_pending_change(
                PendingChange(
                    account_id=key.account_id,
                    calendar_id=key.calendar_id,
                    event_id=key.event_id,
                    operation=Operation.DELETE,
                    created_at=now,
                )
            )
        logger.debug(f"Queued delete of {key}")

    def modify_instance(
        self,
        master_key: EventKey,
        instance_date: date,
        changes: Mapping[str, Any],
    ) -> Event:
        """Edit one occurrence of a recurring event.

        The occurrence is materialized as an exception record keyed by the
        master id and its original date, then queued as an update.

        Raises:
            ValueError: If the master is unknown, not recurring, not yet
                created remotely, or has no occurrence on that date.
        """
        master = self._require_event(master_key)
        if not master.is_recurring:
            raise ValueError(f"Event is not recurring: {master_key}")
        if is_local_id(master.id):
            raise ValueError(f"Recurring event not synced yet: {master_key}")

        instance_id = InstanceKey(master.id, instance_date).event_id
        instance_key = EventKey(master.account_id, master.calendar_id, instance_id)
        if self._store.get_event(instance_key) is not None:
            return self.update_event(instance_key, changes)

        day = datetime.combine(instance_date, dt_time.min, tzinfo=timezone.utc)
        window = SyncWindow(start=day - timedelta(days=1), end=day + timedelta(days=2))
        occurrence = next(
            (e for e in expand(master, window) if e.instance_date == instance_date),
            None,
        )
        if occurrence is None:
            raise ValueError(f"No occurrence of {master_key} on {instance_date}")

        exception = occurrence.with_changes(changes)
        exception.locally_modified = True
        exception.remote_version = None
        exception.updated_at = self._clock()
        with self._store.unit_lock(master.account_id, master.calendar_id), self._store.transaction():
            self._store.save_event(exception)
            self._enqueue_write(exception)
        logger.debug(f"Queued exception {instance_key}")
        return exception
