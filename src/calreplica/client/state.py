"""Local replica store.

This module provides:
- LocalStore: SQLite-backed store for accounts, calendars, events,
  pending changes, tombstones and the error log

Architecture:
    One connection is shared by every thread and guarded by an RLock.
    ``transaction()`` opens an explicit ``BEGIN IMMEDIATE`` transaction and
    holds the lock until it commits, so a merge or a queue mutation is seen
    by other threads either completely or not at all. Nested calls join the
    outer transaction.

    Accounts own calendars and calendars own events (foreign keys with
    cascade). Pending changes, tombstones and error log entries only hold
    ids; they reference the account so that deleting an account removes
    them too, but a calendar disappearing never silently drops queued work.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from calreplica.client.models import (
    Account,
    Calendar,
    ErrorKind,
    ErrorLogEntry,
    Event,
    EventKey,
    Operation,
    PendingChange,
    Tombstone,
)

logger = logging.getLogger(__name__)


def _account_from_row(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        email=row["email"],
        credential_handle=row["credential_handle"],
        token_expiry=row["token_expiry"],
        color=row["color"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _calendar_from_row(row: sqlite3.Row) -> Calendar:
    return Calendar(
        account_id=row["account_id"],
        id=row["id"],
        summary=row["summary"],
        color=row["color"],
        enabled=bool(row["enabled"]),
        primary=bool(row["is_primary"]),
        sync_cursor=row["sync_cursor"],
        last_sync_at=row["last_sync_at"],
        last_sync_status=row["last_sync_status"],
        last_error=row["last_error"],
    )


def _event_from_row(row: sqlite3.Row) -> Event:
    return Event.from_record(
        EventKey(row["account_id"], row["calendar_id"], row["id"]),
        json.loads(row["data"]),
        recurring_event_id=row["recurring_event_id"],
        instance_date=row["instance_date"],
        locally_modified=bool(row["locally_modified"]),
        deleted=bool(row["deleted"]),
        has_conflict=bool(row["has_conflict"]),
    )


def _change_from_row(row: sqlite3.Row) -> PendingChange:
    return PendingChange(
        id=row["id"],
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        operation=Operation(row["operation"]),
        payload=json.loads(row["payload"]) if row["payload"] else {},
        retry_count=row["retry_count"],
        created_at=row["created_at"],
        next_attempt_at=row["next_attempt_at"],
        last_error=row["last_error"],
    )


def _tombstone_from_row(row: sqlite3.Row) -> Tombstone:
    return Tombstone(
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        deleted_at=row["deleted_at"],
        base_version=row["base_version"],
    )


def _error_from_row(row: sqlite3.Row) -> ErrorLogEntry:
    return ErrorLogEntry(
        id=row["id"],
        timestamp=row["timestamp"],
        kind=ErrorKind(row["kind"]),
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        message=row["message"],
        details=json.loads(row["details"]) if row["details"] else {},
    )


class LocalStore:
    """SQLite-based durable replica."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (and create if needed) the replica database.

        Args:
            db_path: Path to SQLite database file, or ``":memory:"``.
        """
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        self._unit_locks: dict[tuple[str, str], threading.Lock] = {}
        self._unit_locks_guard = threading.Lock()

        self._conn = sqlite3.connect(
            str(db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL DEFAULT '',
                credential_handle TEXT,
                token_expiry REAL,
                color TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS calendars (
                account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                id TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                color TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                is_primary INTEGER NOT NULL DEFAULT 0,
                sync_cursor TEXT,
                last_sync_at REAL,
                last_sync_status TEXT,
                last_error TEXT,
                PRIMARY KEY (account_id, id)
            );

            CREATE TABLE IF NOT EXISTS events (
                account_id TEXT NOT NULL,
                calendar_id TEXT NOT NULL,
                id TEXT NOT NULL,
                recurring_event_id TEXT,
                instance_date TEXT,
                is_master INTEGER NOT NULL DEFAULT 0,
                start_key REAL NOT NULL,
                end_key REAL NOT NULL,
                locally_modified INTEGER NOT NULL DEFAULT 0,
                deleted INTEGER NOT NULL DEFAULT 0,
                has_conflict INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                PRIMARY KEY (account_id, calendar_id, id),
                FOREIGN KEY (account_id, calendar_id)
                    REFERENCES calendars(account_id, id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_events_master
                ON events(account_id, calendar_id, recurring_event_id);
            CREATE INDEX IF NOT EXISTS idx_events_conflict ON events(has_conflict);

            CREATE TABLE IF NOT EXISTS pending_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                calendar_id TEXT NOT NULL,
                event_id TEXT,
                operation TEXT NOT NULL,
                payload TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                next_attempt_at REAL,
                last_error TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_pending_event
                ON pending_changes(account_id, calendar_id, event_id);

            CREATE TABLE IF NOT EXISTS tombstones (
                account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                calendar_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                deleted_at REAL NOT NULL,
                base_version TEXT,
                PRIMARY KEY (account_id, calendar_id, event_id)
            );

            CREATE TABLE IF NOT EXISTS error_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                kind TEXT NOT NULL,
                account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                calendar_id TEXT,
                event_id TEXT,
                message TEXT NOT NULL,
                details TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block atomically.

        Nested calls join the outermost transaction; an exception anywhere
        rolls the whole transaction back.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self._conn.execute("COMMIT")

    def unit_lock(self, account_id: str, calendar_id: str) -> threading.Lock:
        """Lock serializing work on one (account, calendar) unit."""
        with self._unit_locks_guard:
            key = (account_id, calendar_id)
            if key not in self._unit_locks:
                self._unit_locks[key] = threading.Lock()
            return self._unit_locks[key]

    # === Accounts ===

    def save_account(self, account: Account) -> Account:
        """Insert or update an account (children are preserved)."""
        account.updated_at = time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO accounts (
                    id, email, credential_handle, token_expiry, color, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    credential_handle = excluded.credential_handle,
                    token_expiry = excluded.token_expiry,
                    color = excluded.color,
                    updated_at = excluded.updated_at
                """,
                (
                    account.id,
                    account.email,
                    account.credential_handle,
                    account.token_expiry,
                    account.color,
                    account.created_at,
                    account.updated_at,
                ),
            )
        return account

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def list_accounts(self) -> list[Account]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM accounts ORDER BY created_at, id"
            ).fetchall()
        return [_account_from_row(row) for row in rows]

    def delete_account(self, account_id: str) -> bool:
        """Delete an account and everything it owns.

        Returns:
            True if the account existed.
        """
        with self._lock:
            cursor = self._conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    def update_token_expiry(self, account_id: str, expiry: float) -> None:
        """Record a new token expiry; older values than the stored one are ignored."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE accounts SET token_expiry = ?, updated_at = ?
                WHERE id = ? AND (token_expiry IS NULL OR token_expiry < ?)
                """,
                (expiry, time.time(), account_id, expiry),
            )

    # === Calendars ===

    def save_calendar(self, calendar: Calendar) -> Calendar:
        """Insert or update a calendar (its events are preserved)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO calendars (
                    account_id, id, summary, color, enabled, is_primary,
                    sync_cursor, last_sync_at, last_sync_status, last_error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, id) DO UPDATE SET
                    summary = excluded.summary,
                    color = excluded.color,
                    enabled = excluded.enabled,
                    is_primary = excluded.is_primary,
                    sync_cursor = excluded.sync_cursor,
                    last_sync_at = excluded.last_sync_at,
                    last_sync_status = excluded.last_sync_status,
                    last_error = excluded.last_error
                """,
                (
                    calendar.account_id,
                    calendar.id,
                    calendar.summary,
                    calendar.color,
                    int(calendar.enabled),
                    int(calendar.primary),
                    calendar.sync_cursor,
                    calendar.last_sync_at,
                    calendar.last_sync_status,
                    calendar.last_error,
                ),
            )
        return calendar

    def get_calendar(self, account_id: str, calendar_id: str) -> Calendar | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM calendars WHERE account_id = ? AND id = ?",
                (account_id, calendar_id),
            ).fetchone()
        return _calendar_from_row(row) if row else None

    def list_calendars(
        self,
        account_id: str | None = None,
        *,
        enabled_only: bool = False,
    ) -> list[Calendar]:
        """List calendars, optionally for one account and/or enabled only."""
        query = "SELECT * FROM calendars WHERE 1 = 1"
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY account_id, is_primary DESC, summary, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_calendar_from_row(row) for row in rows]

    def delete_calendar(self, account_id: str, calendar_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM calendars WHERE account_id = ? AND id = ?",
                (account_id, calendar_id),
            )
        return cursor.rowcount > 0

    def set_calendar_enabled(self, account_id: str, calendar_id: str, enabled: bool) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE calendars SET enabled = ? WHERE account_id = ? AND id = ?",
                (int(enabled), account_id, calendar_id),
            )
        return cursor.rowcount > 0

    def set_sync_cursor(self, account_id: str, calendar_id: str, cursor: str | None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE calendars SET sync_cursor = ? WHERE account_id = ? AND id = ?",
                (cursor, account_id, calendar_id),
            )

    def record_calendar_sync(
        self,
        account_id: str,
        calendar_id: str,
        status: str,
        error: str | None = None,
    ) -> None:
        """Record the outcome of the latest sync of a calendar."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE calendars SET last_sync_at = ?, last_sync_status = ?, last_error = ?
                WHERE account_id = ? AND id = ?
                """,
                (time.time(), status, error, account_id, calendar_id),
            )

    # === Events ===

    def get_event(self, key: EventKey) -> Event | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM events WHERE account_id = ? AND calendar_id = ? AND id = ?",
                tuple(key),
            ).fetchone()
        return _event_from_row(row) if row else None

    def save_event(self, event: Event) -> Event:
        """Insert or replace an event record."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO events (
                    account_id, calendar_id, id, recurring_event_id, instance_date,
                    is_master, start_key, end_key, locally_modified, deleted,
                    has_conflict, data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.account_id,
                    event.calendar_id,
                    event.id,
                    event.recurring_event_id,
                    event.instance_date.isoformat() if event.instance_date else None,
                    int(event.is_recurring),
                    event.start.to_datetime().timestamp(),
                    event.end.to_datetime().timestamp(),
                    int(event.locally_modified),
                    int(event.deleted),
                    int(event.has_conflict),
                    json.dumps(event.to_record()),
                ),
            )
        return event

    def delete_event(self, key: EventKey) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM events WHERE account_id = ? AND calendar_id = ? AND id = ?",
                tuple(key),
            )
        return cursor.rowcount > 0

    def list_events(
        self,
        account_id: str | None = None,
        calendar_id: str | None = None,
        *,
        include_deleted: bool = True,
    ) -> list[Event]:
        """List events ordered by start."""
        query = "SELECT * FROM events WHERE 1 = 1"
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(calendar_id)
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY start_key, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_exceptions(self, account_id: str, calendar_id: str, master_id: str) -> list[Event]:
        """List stored modified occurrences of a recurring master."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM events
                WHERE account_id = ? AND calendar_id = ? AND recurring_event_id = ?
                ORDER BY instance_date
                """,
                (account_id, calendar_id, master_id),
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_conflicts(self, account_id: str | None = None) -> list[Event]:
        """List events awaiting conflict resolution."""
        query = "SELECT * FROM events WHERE has_conflict = 1"
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        query += " ORDER BY account_id, calendar_id, start_key"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_event_from_row(row) for row in rows]

    def rekey_event(self, key: EventKey, new_id: str) -> None:
        """Move an event and everything referencing it to a new id."""
        account_id, calendar_id, old_id = key
        with self.transaction():
            self._conn.execute(
                "UPDATE events SET id = ? WHERE account_id = ? AND calendar_id = ? AND id = ?",
                (new_id, account_id, calendar_id, old_id),
            )
            self._conn.execute(
                """
                UPDATE events SET recurring_event_id = ?
                WHERE account_id = ? AND calendar_id = ? AND recurring_event_id = ?
                """,
                (new_id, account_id, calendar_id, old_id),
            )
            self._conn.execute(
                """
                UPDATE pending_changes SET event_id = ?
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                """,
                (new_id, account_id, calendar_id, old_id),
            )
            self._conn.execute(
                """
                UPDATE tombstones SET event_id = ?
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                """,
                (new_id, account_id, calendar_id, old_id),
            )

    def prune_events(
        self,
        account_id: str,
        calendar_id: str,
        window_start: float,
        window_end: float,
    ) -> int:
        """Delete settled events that lie entirely outside a time window.

        Recurring masters, their stored occurrences and events carrying
        local intent (modified, deleted, conflicted or queued) are kept.

        Returns:
            Number of events removed.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM events
                WHERE account_id = ? AND calendar_id = ?
                  AND is_master = 0 AND recurring_event_id IS NULL
                  AND locally_modified = 0 AND deleted = 0 AND has_conflict = 0
                  AND (end_key < ? OR start_key > ?)
                  AND NOT EXISTS (
                      SELECT 1 FROM pending_changes p
                      WHERE p.account_id = events.account_id
                        AND p.calendar_id = events.calendar_id
                        AND p.event_id = events.id
                  )
                """,
                (account_id, calendar_id, window_start, window_end),
            )
        return cursor.rowcount

    # === Pending changes ===

    def add_pending_change(self, change: PendingChange) -> PendingChange:
        """Append a change to the queue, assigning its sequence id."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO pending_changes (
                    account_id, calendar_id, event_id, operation, payload,
                    retry_count, created_at, next_attempt_at, last_error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change.account_id,
                    change.calendar_id,
                    change.event_id,
                    change.operation.value,
                    change.payload_json(),
                    change.retry_count,
                    change.created_at,
                    change.next_attempt_at,
                    change.last_error,
                ),
            )
            change.id = cursor.lastrowid
        return change

    def get_pending_change(self, change_id: int) -> PendingChange | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pending_changes WHERE id = ?", (change_id,)
            ).fetchone()
        return _change_from_row(row) if row else None

    def list_pending_changes(
        self,
        account_id: str | None = None,
        calendar_id: str | None = None,
    ) -> list[PendingChange]:
        """List queued changes, oldest first."""
        query = "SELECT * FROM pending_changes WHERE 1 = 1"
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(calendar_id)
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_change_from_row(row) for row in rows]

    def pending_changes_for_event(self, key: EventKey) -> list[PendingChange]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM pending_changes
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                ORDER BY created_at, id
                """,
                tuple(key),
            ).fetchall()
        return [_change_from_row(row) for row in rows]

    def update_pending_change(self, change: PendingChange) -> None:
        """Persist payload, retry bookkeeping and target of a change."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE pending_changes SET
                    event_id = ?, payload = ?, retry_count = ?,
                    next_attempt_at = ?, last_error = ?
                WHERE id = ?
                """,
                (
                    change.event_id,
                    change.payload_json(),
                    change.retry_count,
                    change.next_attempt_at,
                    change.last_error,
                    change.id,
                ),
            )

    def delete_pending_change(self, change_id: int) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM pending_changes WHERE id = ?", (change_id,))

    def delete_pending_changes_for_event(self, key: EventKey) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM pending_changes
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                """,
                tuple(key),
            )
        return cursor.rowcount

    def count_pending_changes(self, account_id: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM pending_changes"
        params: tuple[object, ...] = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self._lock:
            return self._conn.execute(query, params).fetchone()[0]

    # === Tombstones ===

    def add_tombstone(self, tombstone: Tombstone) -> Tombstone:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO tombstones (
                    account_id, calendar_id, event_id, deleted_at, base_version
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    tombstone.account_id,
                    tombstone.calendar_id,
                    tombstone.event_id,
                    tombstone.deleted_at,
                    tombstone.base_version,
                ),
            )
        return tombstone

    def get_tombstone(self, key: EventKey) -> Tombstone | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM tombstones
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                """,
                tuple(key),
            ).fetchone()
        return _tombstone_from_row(row) if row else None

    def delete_tombstone(self, key: EventKey) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM tombstones
                WHERE account_id = ? AND calendar_id = ? AND event_id = ?
                """,
                tuple(key),
            )
        return cursor.rowcount > 0

    def list_tombstones(self, account_id: str | None = None) -> list[Tombstone]:
        query = "SELECT * FROM tombstones"
        params: tuple[object, ...] = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        query += " ORDER BY deleted_at"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_tombstone_from_row(row) for row in rows]

    def prune_tombstones(self, account_id: str, calendar_id: str, older_than: float) -> int:
        """Delete tombstones older than a cutoff whose delete is no longer queued.

        Returns:
            Number of tombstones removed.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM tombstones
                WHERE account_id = ? AND calendar_id = ? AND deleted_at < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM pending_changes p
                      WHERE p.account_id = tombstones.account_id
                        AND p.calendar_id = tombstones.calendar_id
                        AND p.event_id = tombstones.event_id
                  )
                """,
                (account_id, calendar_id, older_than),
            )
        return cursor.rowcount

    # === Error log ===

    def add_error(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO error_log (
                    timestamp, kind, account_id, calendar_id, event_id, message, details
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.timestamp,
                    entry.kind.value,
                    entry.account_id,
                    entry.calendar_id,
                    entry.event_id,
                    entry.message,
                    json.dumps(entry.details) if entry.details else None,
                ),
            )
            entry.id = cursor.lastrowid
        return entry

    def list_errors(
        self,
        account_id: str | None = None,
        kind: ErrorKind | None = None,
        limit: int = 100,
    ) -> list[ErrorLogEntry]:
        """List error log entries, newest first."""
        query = "SELECT * FROM error_log WHERE 1 = 1"
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_error_from_row(row) for row in rows]

    def clear_errors(self, account_id: str | None = None) -> int:
        query = "DELETE FROM error_log"
        params: tuple[object, ...] = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self._lock:
            cursor = self._conn.execute(query, params)
        return cursor.rowcount
