"""User-driven conflict resolution.

This module provides:
- ConflictResolver: Applies a chosen side to a conflicted event

The decision of what each side means lives in domain.conflicts; this module
applies the resulting plan to the store in one transaction.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from calreplica.client.models import Event, EventKey, Operation, PendingChange, Tombstone
from calreplica.client.state import LocalStore
from calreplica.client.sync.domain.conflicts import ConflictPlan, Resolution, plan_resolution
from calreplica.client.sync.types import ConflictResolutionError

logger = logging.getLogger(__name__)


class ConflictResolver:
    """Resolves conflicts flagged by the sync engine or the processor."""

    def __init__(self, store: LocalStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def resolve(self, key: EventKey, resolution: Resolution) -> Event | None:
        """Keep one side of a conflicted event.

        Args:
            key: Conflicted event.
            resolution: LOCAL_WINS re-arms the queued change against the
                latest remote version; REMOTE_WINS discards it.

        Returns:
            The resulting local record, or None if it was removed.

        Raises:
            ConflictResolutionError: If the event is not in conflict.
        """
        with self._store.unit_lock(key.account_id, key.calendar_id), self._store.transaction():
            local = self._store.get_event(key)
            if local is None or not local.has_conflict:
                raise ConflictResolutionError(f"Event is not in conflict: {key}")

            plan = plan_resolution(local, resolution)
            if plan.keep_pending:
                self._rearm(local, plan)
            else:
                self._store.delete_pending_changes_for_event(key)

            if plan.clear_tombstone:
                self._store.delete_tombstone(key)

            if plan.event is None:
                for exception in self._store.list_exceptions(*key):
                    self._store.delete_event(exception.key)
                self._store.delete_event(key)
            else:
                self._store.save_event(plan.event)

        logger.info(f"Resolved conflict on {key}: {resolution.value} wins")
        return plan.event

    def _rearm(self, local: Event, plan: ConflictPlan) -> None:
        """Rebase queued changes so they can be retried immediately."""
        pending = self._store.pending_changes_for_event(local.key)
        if not pending:
            pending = [self._requeue(local, plan)]

        for change in pending:
            change.retry_count = 0
            change.next_attempt_at = None
            change.last_error = None
            if plan.recreate and change.operation is Operation.UPDATE:
                self._store.delete_pending_change(change.id)
                self._store.add_pending_change(
                    PendingChange(
                        account_id=change.account_id,
                        calendar_id=change.calendar_id,
                        event_id=change.event_id,
                        operation=Operation.CREATE,
                        payload=change.fields,
                        created_at=change.created_at,
                    )
                )
                continue
            if change.operation is Operation.UPDATE:
                change.payload["base_version"] = plan.base_version
            self._store.update_pending_change(change)

        if local.deleted:
            self._store.add_tombstone(
                Tombstone(
                    account_id=local.account_id,
                    calendar_id=local.calendar_id,
                    event_id=local.id,
                    deleted_at=self._clock(),
                    base_version=plan.base_version,
                )
            )

    def _requeue(self, local: Event, plan: ConflictPlan) -> PendingChange:
        """Queue the local state again when no change is left in the queue."""
        if local.deleted:
            operation = Operation.DELETE
            payload: dict = {}
        else:
            operation = Operation.UPDATE
            payload = local.to_payload()
            payload["base_version"] = plan.base_version
        return self._store.add_pending_change(
            PendingChange(
                account_id=local.account_id,
                calendar_id=local.calendar_id,
                event_id=local.id,
                operation=operation,
                payload=payload,
                created_at=self._clock(),
            )
        )
