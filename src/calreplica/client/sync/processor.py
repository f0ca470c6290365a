"""Pending-change queue processor.

This module provides:
- QueueProcessor: Pushes queued local changes to the remote gateway

Ordering:
    Changes are grouped by (account, calendar). Groups run concurrently on
    a thread pool, each holding the store's unit lock; inside a group changes
    are applied strictly in creation order. Once a change of an event is left
    queued (backoff, open conflict, halted account), later changes of the
    same event are left queued too.

Failure handling:
    Retryable failures (429, 5xx, network) bump the retry count and schedule
    the next attempt with backoff; reaching the ceiling makes the change
    terminal. Non-retryable failures are terminal at once. A terminal change
    is removed from the queue, flagged on its event and written to the error
    log. A rejected version precondition marks the event conflicted instead.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed

from calreplica.client.api import (
    AuthenticationError,
    GoneError,
    NotFoundError,
    PreconditionFailedError,
    RemoteGateway,
)
from calreplica.client.models import (
    ErrorKind,
    ErrorLogEntry,
    Event,
    EventKey,
    Operation,
    PendingChange,
    RemoteEvent,
)
from calreplica.client.state import LocalStore
from calreplica.client.sync.queue import is_local_id
from calreplica.client.sync.retry import RetryPolicy
from calreplica.client.sync.types import CalendarError, FlushReport, TerminalFailure

logger = logging.getLogger(__name__)


class QueueProcessor:
    """Applies pending changes to the remote side."""

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._max_workers = max_workers
        self._halted_lock = threading.Lock()

    def flush(
        self,
        account_ids: Iterable[str] | None = None,
        exclude: Iterable[str] = (),
    ) -> FlushReport:
        """Process queued changes.

        Args:
            account_ids: Accounts to flush (all accounts if None).
            exclude: Accounts to leave untouched (e.g. failed authorization).

        Returns:
            Counts of flushed, failed, skipped and retried changes.
        """
        wanted = set(account_ids) if account_ids is not None else None
        excluded = set(exclude)

        groups: dict[tuple[str, str], list[PendingChange]] = {}
        for change in self._store.list_pending_changes():
            if wanted is not None and change.account_id not in wanted:
                continue
            if change.account_id in excluded:
                continue
            groups.setdefault((change.account_id, change.calendar_id), []).append(change)

        report = FlushReport()
        if not groups:
            return report

        # Accounts whose authorization failed during this flush
        halted: set[str] = set()

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="flush"
        ) as pool:
            futures = {
                pool.submit(self._flush_unit, account_id, calendar_id, changes, halted): (
                    account_id,
                    calendar_id,
                )
                for (account_id, calendar_id), changes in groups.items()
            }
            for future in as_completed(futures):
                account_id, calendar_id = futures[future]
                try:
                    report.merge(future.result())
                except Exception as e:
                    logger.exception(f"Flush of {account_id}/{calendar_id} failed")
                    report.errors.append(CalendarError(account_id, calendar_id, str(e)))

        logger.info(
            f"Flush complete: {report.flushed} flushed, {report.failed} failed, "
            f"{report.retried} retried, {report.skipped} skipped"
        )
        return report

    def _flush_unit(
        self,
        account_id: str,
        calendar_id: str,
        changes: list[PendingChange],
        halted: set[str],
    ) -> FlushReport:
        report = FlushReport()
        blocked: set[str] = set()

        with self._store.unit_lock(account_id, calendar_id):
            for queued in changes:
                # Re-read: an earlier create may have retargeted this change
                change = self._store.get_pending_change(queued.id) if queued.id else None
                if change is None:
                    continue
                target = change.event_id or ""

                if self._is_halted(account_id, halted) or target in blocked:
                    report.skipped += 1
                    blocked.add(target)
                    continue

                if change.next_attempt_at is not None and change.next_attempt_at > self._clock():
                    report.skipped += 1
                    blocked.add(target)
                    continue

                event = self._store.get_event(change.event_key) if change.event_key else None
                if event is not None and event.has_conflict:
                    logger.debug(f"Change {change.id} waits for conflict resolution")
                    report.skipped += 1
                    blocked.add(target)
                    continue

                if change.operation is not Operation.CREATE and is_local_id(target):
                    report.skipped += 1
                    blocked.add(target)
                    continue

                if not self._process(change, event, report, halted):
                    blocked.add(target)

        return report

    def _is_halted(self, account_id: str, halted: set[str]) -> bool:
        with self._halted_lock:
            return account_id in halted

    def _halt(
        self,
        account_id: str,
        error: Exception,
        report: FlushReport,
        halted: set[str],
    ) -> None:
        with self._halted_lock:
            if account_id in halted:
                return
            halted.add(account_id)
        logger.error(f"Authorization failed for {account_id}, halting its changes: {error}")
        self._store.add_error(
            ErrorLogEntry(
                kind=ErrorKind.AUTHORIZATION,
                account_id=account_id,
                message=str(error),
            )
        )
        report.errors.append(CalendarError(account_id, None, f"Authorization failed: {error}"))

    def _process(
        self,
        change: PendingChange,
        event: Event | None,
        report: FlushReport,
        halted: set[str],
    ) -> bool:
        """Apply one change and account for the outcome.

        Returns:
            True if the change left the queue.
        """
        try:
            self._apply(change, event)
        except AuthenticationError as e:
            self._halt(change.account_id, e, report, halted)
            report.skipped += 1
            return False
        except PreconditionFailedError as e:
            self._mark_conflict(change, event, e)
            report.skipped += 1
            return False
        except (NotFoundError, GoneError) as e:
            if change.operation is Operation.DELETE:
                logger.debug(f"Delete of {change.event_key} already applied remotely")
                self._confirm_delete(change)
                report.flushed += 1
                return True
            self._give_up(change, event, e, report)
            return True
        except Exception as e:
            if not self._policy.is_retryable(e):
                self._give_up(change, event, e, report)
                return True
            change.retry_count += 1
            if self._policy.should_give_up(change.retry_count):
                self._give_up(change, event, e, report)
                return True
            delay = self._policy.next_delay(change.retry_count - 1)
            change.next_attempt_at = self._clock() + delay
            change.last_error = str(e)
            self._store.update_pending_change(change)
            logger.warning(
                f"Change {change.id} ({change.operation.value} {change.event_key}) "
                f"failed, attempt {change.retry_count}/{self._policy.max_attempts}: {e}. "
                f"Next attempt in {delay:.1f}s"
            )
            report.retried += 1
            return False

        report.flushed += 1
        return True

    def _apply(self, change: PendingChange, event: Event | None) -> None:
        """Send one change to the gateway and fold the result into the store."""
        account_id, calendar_id = change.account_id, change.calendar_id

        if change.operation is Operation.CREATE:
            remote = self._gateway.create_event(account_id, calendar_id, change.fields)
            with self._store.transaction():
                self._store.delete_pending_change(change.id)
                if change.event_key is None or event is None:
                    return
                if remote.id != event.id:
                    self._store.rekey_event(change.event_key, remote.id)
                key = EventKey(account_id, calendar_id, remote.id)
                self._settle_write(key, remote)
            logger.info(f"Created {key} (was {change.event_id})")

        elif change.operation is Operation.UPDATE:
            if change.event_id is None:
                raise ValueError(f"Change {change.id} has no event to update")
            remote = self._gateway.update_event(
                account_id,
                calendar_id,
                change.event_id,
                change.fields,
                base_version=change.base_version,
            )
            with self._store.transaction():
                self._store.delete_pending_change(change.id)
                if change.event_key is not None and event is not None:
                    self._settle_write(change.event_key, remote)
            logger.info(f"Updated {change.event_key}")

        else:
            if change.event_id is None:
                raise ValueError(f"Change {change.id} has no event to delete")
            self._gateway.delete_event(account_id, calendar_id, change.event_id)
            self._confirm_delete(change)
            logger.info(f"Deleted {change.event_key}")

    def _settle_write(self, key: EventKey, remote: RemoteEvent) -> None:
        """Adopt the remote result of a create/update unless more edits are queued."""
        event = self._store.get_event(key)
        if event is None:
            return
        remaining = self._store.pending_changes_for_event(key)
        if remaining:
            # Our own write advanced the version; later edits build on it
            event.remote_version = remote.version
            event.sync_error = None
            self._store.save_event(event)
            for later in remaining:
                if later.operation is Operation.UPDATE:
                    later.payload["base_version"] = remote.version
                    self._store.update_pending_change(later)
            return
        self._store.save_event(event.adopt_remote(remote, now=self._clock()))

    def _confirm_delete(self, change: PendingChange) -> None:
        key = change.event_key
        with self._store.transaction():
            self._store.delete_pending_change(change.id)
            if key is None:
                return
            event = self._store.get_event(key)
            if event is not None and event.is_recurring:
                for exception in self._store.list_exceptions(*key):
                    self._store.delete_event(exception.key)
            self._store.delete_event(key)
            self._store.delete_tombstone(key)

    def _mark_conflict(self, change: PendingChange, event: Event | None, error: Exception) -> None:
        logger.warning(f"Version precondition failed for {change.event_key}: {error}")
        with self._store.transaction():
            if event is not None:
                event.has_conflict = True
                self._store.save_event(event)
            self._store.add_error(
                ErrorLogEntry(
                    kind=ErrorKind.CONFLICT,
                    account_id=change.account_id,
                    calendar_id=change.calendar_id,
                    event_id=change.event_id,
                    message="Remote event changed since the local edit",
                )
            )

    def _give_up(
        self,
        change: PendingChange,
        event: Event | None,
        error: Exception,
        report: FlushReport,
    ) -> None:
        """Remove a change that will never succeed and flag its event."""
        message = f"{change.operation.value} rejected: {error}"
        logger.error(f"Change {change.id} on {change.event_key} is terminal: {error}")
        with self._store.transaction():
            self._store.delete_pending_change(change.id)
            if event is not None:
                event.sync_error = message
                if change.operation is Operation.DELETE:
                    # Restore so the remote state stays visible
                    event.deleted = False
                    event.locally_modified = bool(
                        self._store.pending_changes_for_event(event.key)
                    )
                    self._store.delete_tombstone(event.key)
                self._store.save_event(event)
            self._store.add_error(
                ErrorLogEntry(
                    kind=ErrorKind.TERMINAL_CHANGE,
                    account_id=change.account_id,
                    calendar_id=change.calendar_id,
                    event_id=change.event_id,
                    message=message,
                    details={
                        "operation": change.operation.value,
                        "retry_count": change.retry_count,
                        "status_code": getattr(error, "status_code", None),
                    },
                )
            )
        report.failed += 1
        report.terminal.append(
            TerminalFailure(
                change_id=change.id or 0,
                event_key=change.event_key,
                operation=change.operation,
                message=message,
            )
        )
