"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, SyncInProgressError, UnknownAccountError,
  ConflictResolutionError: Exception classes
- CalendarError: A calendar unit that failed during a run
- TerminalFailure: A pending change given up on
- FlushReport: Result of one queue flush
- SyncReport: Result of one sync run
"""

from __future__ import annotations

from dataclasses import dataclass, field

from calreplica.client.models import EventKey, Operation


class SyncError(Exception):
    """Base exception for sync errors."""


class SyncInProgressError(SyncError):
    """A sync run already holds one of the requested accounts."""

    def __init__(self, account_ids: list[str]) -> None:
        self.account_ids = account_ids
        super().__init__(f"Sync already running for: {', '.join(account_ids)}")


class UnknownAccountError(SyncError):
    """Requested account is not in the local store."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Unknown account: {account_id}")


class ConflictResolutionError(SyncError):
    """Resolution requested for an event that is not in conflict."""


@dataclass
class CalendarError:
    """Failure of one (account, calendar) unit."""

    account_id: str
    calendar_id: str | None
    message: str


@dataclass
class TerminalFailure:
    """Pending change that will not be retried."""

    change_id: int
    event_key: EventKey | None
    operation: Operation
    message: str


@dataclass
class FlushReport:
    """Result of processing the pending-change queue.

    Attributes:
        flushed: Changes confirmed by the remote side.
        failed: Changes given up on (see ``terminal``).
        skipped: Changes left queued (conflict open, backoff pending, halted).
        retried: Changes that failed and were rescheduled.
    """

    flushed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    terminal: list[TerminalFailure] = field(default_factory=list)
    errors: list[CalendarError] = field(default_factory=list)

    def merge(self, other: FlushReport) -> None:
        self.flushed += other.flushed
        self.failed += other.failed
        self.skipped += other.skipped
        self.retried += other.retried
        self.terminal.extend(other.terminal)
        self.errors.extend(other.errors)


@dataclass
class SyncReport:
    """Result of a sync run across accounts."""

    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts: list[EventKey] = field(default_factory=list)
    errors: list[CalendarError] = field(default_factory=list)
    cancelled_calendars: list[tuple[str, str]] = field(default_factory=list)
    calendars_synced: int = 0
    flush: FlushReport | None = None

    @property
    def conflicts_raised(self) -> int:
        return len(self.conflicts)

    @property
    def ok(self) -> bool:
        """No calendar failed and nothing was given up on."""
        return not self.errors and not (self.flush and self.flush.terminal)
