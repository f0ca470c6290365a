"""Sync engine coordinating calendar synchronization.

This module provides:
- SyncEngine: Pulls remote deltas into the replica, then flushes the queue

A run has three phases per account:
    1. Refresh the calendar list (new, renamed and deleted calendars)
    2. Pull event deltas of every enabled calendar, one unit per
       (account, calendar), units in parallel
    3. Flush pending local changes (unless disabled or unauthorized)

A unit commits its new cursor only after every page was merged. A failure
anywhere in the unit leaves the old cursor, so the next run replays the
same deltas; merging is idempotent, so replay is harmless.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone

from calreplica.client.api import AuthenticationError, CursorExpiredError, RemoteGateway
from calreplica.client.models import (
    Calendar,
    ErrorKind,
    ErrorLogEntry,
    Event,
    EventKey,
    RemoteEvent,
)
from calreplica.client.state import LocalStore
from calreplica.client.sync.domain.decisions import MergeAction, resolve
from calreplica.client.sync.processor import QueueProcessor
from calreplica.client.sync.queue import is_local_id
from calreplica.client.sync.retry import RetryPolicy, retry_with_backoff
from calreplica.client.sync.types import (
    CalendarError,
    SyncInProgressError,
    SyncReport,
    UnknownAccountError,
)
from calreplica.core.config import SyncSettings, SyncWindow

logger = logging.getLogger(__name__)

DAY = 86400.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _UnitResult:
    """Outcome of one (account, calendar) unit."""

    account_id: str
    calendar_id: str
    status: str = "ok"  # ok, cancelled, skipped, error
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: list[EventKey] = field(default_factory=list)
    error: CalendarError | None = None


class SyncEngine:
    """Coordinates pull and push of the replica against the remote side."""

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        processor: QueueProcessor | None = None,
        settings: SyncSettings | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local replica.
            gateway: Remote calendar service.
            processor: Queue processor for the push phase (built if None).
            settings: Window, retention and concurrency settings.
            policy: Retry policy for remote reads.
            sleep: Sleep function used between read retries.
            now: Current time (aware, UTC).
        """
        self._store = store
        self._gateway = gateway
        self._settings = settings or SyncSettings()
        self._policy = policy or RetryPolicy()
        self._processor = processor or QueueProcessor(
            store,
            gateway,
            policy=self._policy,
            max_workers=self._settings.max_workers,
        )
        self._sleep = sleep
        self._now = now

        self._running: set[str] = set()
        self._running_lock = threading.Lock()
        self._unauthorized: set[str] = set()
        self._unauthorized_lock = threading.Lock()

    @property
    def processor(self) -> QueueProcessor:
        return self._processor

    def is_running(self, account_id: str | None = None) -> bool:
        """Check whether a run holds the account (or any account)."""
        with self._running_lock:
            if account_id is None:
                return bool(self._running)
            return account_id in self._running

    def _acquire(self, account_ids: list[str]) -> None:
        with self._running_lock:
            busy = [account_id for account_id in account_ids if account_id in self._running]
            if busy:
                raise SyncInProgressError(busy)
            self._running.update(account_ids)

    def _release(self, account_ids: list[str]) -> None:
        with self._running_lock:
            self._running.difference_update(account_ids)

    def run_sync(
        self,
        account_ids: Iterable[str] | None = None,
        cancel: threading.Event | None = None,
        flush: bool = True,
    ) -> SyncReport:
        """Synchronize accounts with the remote side.

        Args:
            account_ids: Accounts to sync (all accounts if None).
            cancel: Set to stop before the next calendar unit starts.
            flush: Push pending local changes after pulling.

        Returns:
            SyncReport with counts, conflicts raised and per-calendar errors.

        Raises:
            UnknownAccountError: If an account id is not in the store.
            SyncInProgressError: If another run holds one of the accounts.
        """
        if account_ids is None:
            ids = [account.id for account in self._store.list_accounts()]
        else:
            ids = list(dict.fromkeys(account_ids))
        for account_id in ids:
            if self._store.get_account(account_id) is None:
                raise UnknownAccountError(account_id)

        self._acquire(ids)
        try:
            return self._run(ids, cancel, flush)
        finally:
            self._release(ids)

    def _run(
        self,
        account_ids: list[str],
        cancel: threading.Event | None,
        flush: bool,
    ) -> SyncReport:
        report = SyncReport()
        with self._unauthorized_lock:
            self._unauthorized.difference_update(account_ids)

        units: list[tuple[str, str]] = []
        for account_id in account_ids:
            if cancel is not None and cancel.is_set():
                break
            if not self._refresh_calendars(account_id, report):
                continue
            units.extend(
                (account_id, calendar.id)
                for calendar in self._store.list_calendars(account_id, enabled_only=True)
            )

        window = self._settings.sync_window(self._now())
        if units:
            with ThreadPoolExecutor(
                max_workers=self._settings.max_workers, thread_name_prefix="sync"
            ) as pool:
                futures = [
                    pool.submit(self._sync_unit, account_id, calendar_id, window, cancel)
                    for account_id, calendar_id in units
                ]
                for future in as_completed(futures):
                    self._collect(future.result(), report)

        unauthorized = self._unauthorized_accounts(account_ids)
        if flush and not (cancel is not None and cancel.is_set()):
            report.flush = self._processor.flush(account_ids, exclude=unauthorized)

        logger.info(
            f"Sync complete: {report.calendars_synced} calendars, "
            f"+{report.events_created} ~{report.events_updated} -{report.events_deleted}, "
            f"{report.conflicts_raised} conflicts, {len(report.errors)} errors"
        )
        return report

    @staticmethod
    def _collect(result: _UnitResult, report: SyncReport) -> None:
        if result.status == "cancelled":
            report.cancelled_calendars.append((result.account_id, result.calendar_id))
            return
        report.events_created += result.created
        report.events_updated += result.updated
        report.events_deleted += result.deleted
        report.conflicts.extend(result.conflicts)
        if result.error is not None:
            report.errors.append(result.error)
        if result.status == "ok":
            report.calendars_synced += 1

    # === Authorization ===

    def _unauthorized_accounts(self, account_ids: list[str]) -> set[str]:
        with self._unauthorized_lock:
            return {account_id for account_id in account_ids if account_id in self._unauthorized}

    def _mark_unauthorized(self, account_id: str, error: Exception) -> None:
        """Stop the account for this run; log the failure once."""
        with self._unauthorized_lock:
            if account_id in self._unauthorized:
                return
            self._unauthorized.add(account_id)
        logger.error(f"Authorization failed for {account_id}: {error}")
        self._store.add_error(
            ErrorLogEntry(
                kind=ErrorKind.AUTHORIZATION,
                account_id=account_id,
                message=f"Authorization failed: {error}",
            )
        )

    # === Calendar list ===

    def _refresh_calendars(self, account_id: str, report: SyncReport) -> bool:
        """Mirror the remote calendar list.

        Returns:
            False if the account failed authorization.
        """
        try:
            deltas = retry_with_backoff(
                lambda: self._gateway.list_changed_calendars(account_id),
                self._policy,
                sleep=self._sleep,
            )
        except AuthenticationError as e:
            self._mark_unauthorized(account_id, e)
            report.errors.append(CalendarError(account_id, None, f"Authorization failed: {e}"))
            return False
        except Exception as e:
            logger.warning(f"Calendar list refresh failed for {account_id}: {e}")
            self._store.add_error(
                ErrorLogEntry(
                    kind=ErrorKind.SYNC_FAILURE,
                    account_id=account_id,
                    message=f"Calendar list refresh failed: {e}",
                )
            )
            report.errors.append(
                CalendarError(account_id, None, f"Calendar list refresh failed: {e}")
            )
            return True

        for delta in deltas:
            existing = self._store.get_calendar(account_id, delta.id)
            if delta.deleted:
                if existing is not None:
                    logger.info(f"Calendar {account_id}/{delta.id} removed remotely")
                    self._store.delete_calendar(account_id, delta.id)
                continue
            if existing is None:
                logger.info(f"New calendar {account_id}/{delta.id} ({delta.summary})")
                existing = Calendar(account_id=account_id, id=delta.id)
            existing.summary = delta.summary
            existing.color = delta.color
            existing.primary = delta.primary
            self._store.save_calendar(existing)
        return True

    # === Calendar units ===

    def _sync_unit(
        self,
        account_id: str,
        calendar_id: str,
        window: SyncWindow,
        cancel: threading.Event | None,
    ) -> _UnitResult:
        result = _UnitResult(account_id, calendar_id)
        if cancel is not None and cancel.is_set():
            result.status = "cancelled"
            return result
        if account_id in self._unauthorized_accounts([account_id]):
            result.status = "skipped"
            return result

        with self._store.unit_lock(account_id, calendar_id):
            calendar = self._store.get_calendar(account_id, calendar_id)
            if calendar is None:
                result.status = "skipped"
                return result

            try:
                try:
                    next_cursor = self._pull(calendar, calendar.sync_cursor, window, result)
                except CursorExpiredError:
                    logger.warning(
                        f"Sync cursor expired for {account_id}/{calendar_id}, full resync"
                    )
                    self._store.add_error(
                        ErrorLogEntry(
                            kind=ErrorKind.CURSOR_RESET,
                            account_id=account_id,
                            calendar_id=calendar_id,
                            message="Sync cursor expired; calendar resynchronized in full",
                        )
                    )
                    next_cursor = self._pull(calendar, None, window, result)

                if next_cursor:
                    self._store.set_sync_cursor(account_id, calendar_id, next_cursor)
                self._prune(account_id, calendar_id, window)
                self._store.record_calendar_sync(account_id, calendar_id, "ok")
            except AuthenticationError as e:
                self._mark_unauthorized(account_id, e)
                result.status = "error"
                result.error = CalendarError(account_id, calendar_id, f"Authorization failed: {e}")
                self._store.record_calendar_sync(account_id, calendar_id, "error", str(e))
            except Exception as e:
                logger.exception(f"Sync of {account_id}/{calendar_id} failed")
                result.status = "error"
                result.error = CalendarError(account_id, calendar_id, str(e))
                self._store.add_error(
                    ErrorLogEntry(
                        kind=ErrorKind.SYNC_FAILURE,
                        account_id=account_id,
                        calendar_id=calendar_id,
                        message=str(e),
                    )
                )
                self._store.record_calendar_sync(account_id, calendar_id, "error", str(e))

        return result

    def _pull(
        self,
        calendar: Calendar,
        cursor: str | None,
        window: SyncWindow,
        result: _UnitResult,
    ) -> str | None:
        """Merge every page of deltas; return the cursor of the last page."""
        account_id, calendar_id = calendar.account_id, calendar.id
        seen: set[str] = set()
        page_token: str | None = None

        while True:
            page = retry_with_backoff(
                lambda: self._gateway.list_changed_events(
                    account_id,
                    calendar_id,
                    cursor=cursor,
                    page_token=page_token,
                    window=None if cursor else window,
                ),
                self._policy,
                sleep=self._sleep,
            )
            for remote in page.events:
                self._merge(account_id, calendar_id, remote, result)
                seen.add(remote.id)
            if not page.has_more:
                break
            page_token = page.next_page_token

        if cursor is None:
            self._merge_absent(account_id, calendar_id, seen, window, result)
        return page.next_cursor

    def _merge_absent(
        self,
        account_id: str,
        calendar_id: str,
        seen: set[str],
        window: SyncWindow,
        result: _UnitResult,
    ) -> None:
        """Treat settled local events missing from a full listing as deleted remotely."""
        for event in self._store.list_events(account_id, calendar_id):
            if event.id in seen or is_local_id(event.id):
                continue
            if event.locally_modified or event.deleted or event.has_conflict:
                continue
            if event.is_exception:
                continue
            in_window = (
                event.start.to_datetime() <= window.end
                and event.end.to_datetime() >= window.start
            )
            if not (event.is_recurring or in_window):
                continue
            logger.debug(f"{event.key} no longer listed remotely")
            self._merge(account_id, calendar_id, RemoteEvent.absent(event.id), result)

    def _merge(
        self,
        account_id: str,
        calendar_id: str,
        remote: RemoteEvent,
        result: _UnitResult,
    ) -> None:
        """Merge one remote event state in its own transaction."""
        key = EventKey(account_id, calendar_id, remote.id)
        with self._store.transaction():
            local = self._store.get_event(key)
            tombstone = self._store.get_tombstone(key)
            decision = resolve(remote, local, tombstone)
            logger.debug(f"{key}: {decision.action.name} ({decision.reason})")

            if decision.action is MergeAction.IGNORE:
                if local is None and tombstone is None and remote.cancelled:
                    # A cancelled occurrence must still suppress its instance
                    self._store_cancelled_occurrence(account_id, calendar_id, remote)
                return

            if decision.action is MergeAction.APPLY_REMOTE_AND_CLEAR_TOMBSTONE:
                self._store.delete_pending_changes_for_event(key)
                self._store.delete_tombstone(key)
                if local is not None:
                    self._remove_event(local)
                    result.deleted += 1
                return

            if decision.action is MergeAction.APPLY_REMOTE:
                if remote.cancelled:
                    if local is not None:
                        self._remove_event(local)
                        self._store_cancelled_occurrence(account_id, calendar_id, remote)
                        if local.status != "cancelled":
                            result.deleted += 1
                    return
                now = time.time()
                if local is None:
                    self._store.save_event(Event.from_remote(remote, account_id, calendar_id, now))
                    result.created += 1
                else:
                    self._store.save_event(local.adopt_remote(remote, now))
                    result.updated += 1
                return

            # MARK_CONFLICT
            if local is None:
                if remote.cancelled:
                    return
                # Tombstone without a record: keep the remote copy, still deleted locally
                local = Event.from_remote(remote, account_id, calendar_id)
                local.deleted = True
                local.locally_modified = True
            newly_raised = not local.has_conflict
            local.has_conflict = True
            local.conflict_remote = remote
            self._store.save_event(local)
            if newly_raised:
                logger.warning(f"Conflict on {key}: {decision.reason}")
                self._store.add_error(
                    ErrorLogEntry(
                        kind=ErrorKind.CONFLICT,
                        account_id=account_id,
                        calendar_id=calendar_id,
                        event_id=remote.id,
                        message=decision.reason,
                    )
                )
                result.conflicts.append(key)

    def _store_cancelled_occurrence(
        self,
        account_id: str,
        calendar_id: str,
        remote: RemoteEvent,
    ) -> None:
        """Keep a cancelled occurrence of a recurring event as an exception record."""
        if remote.recurring_event_id is None or remote.original_start is None:
            return
        self._store.save_event(
            Event(
                account_id=account_id,
                calendar_id=calendar_id,
                id=remote.id,
                start=remote.start or remote.original_start,
                end=remote.end or remote.original_start,
                recurring_event_id=remote.recurring_event_id,
                instance_date=remote.original_start.as_date(),
                status=remote.status,
                remote_version=remote.version,
                last_synced_at=time.time(),
            )
        )

    def _remove_event(self, event: Event) -> None:
        if event.is_recurring:
            for exception in self._store.list_exceptions(*event.key):
                self._store.delete_event(exception.key)
        self._store.delete_event(event.key)

    def _prune(self, account_id: str, calendar_id: str, window: SyncWindow) -> None:
        pruned = self._store.prune_events(
            account_id,
            calendar_id,
            window.start.timestamp(),
            window.end.timestamp(),
        )
        cutoff = self._now().timestamp() - self._settings.tombstone_retention_days * DAY
        tombstones = self._store.prune_tombstones(account_id, calendar_id, cutoff)
        if pruned or tombstones:
            logger.debug(
                f"Pruned {pruned} events and {tombstones} tombstones "
                f"from {account_id}/{calendar_id}"
            )
