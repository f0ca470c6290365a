"""Synchronization core for the calendar replica.

Architecture:
    SyncEngine → (pull) → domain.decisions → LocalStore
    SyncEngine → (push) → QueueProcessor → RemoteGateway

Components:
- **LocalChangeQueue**: Applies user edits and queues them durably
- **SyncEngine**: Pulls remote deltas per (account, calendar) and merges them
- **QueueProcessor**: Pushes queued changes with bounded retry
- **ConflictResolver**: Applies the user's choice for a conflicted event
- **SyncScheduler**: Periodic runs on an APScheduler interval job
- **RetryPolicy**: Backoff schedule and failure classification

All public symbols are re-exported here.
"""

from calreplica.client.sync.conflict import ConflictResolver
from calreplica.client.sync.engine import SyncEngine
from calreplica.client.sync.processor import QueueProcessor
from calreplica.client.sync.queue import LocalChangeQueue, is_local_id
from calreplica.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_JITTER,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    NETWORK_EXCEPTIONS,
    ErrorClass,
    RetryPolicy,
    retry_with_backoff,
)
from calreplica.client.sync.scheduler import SyncScheduler
from calreplica.client.sync.types import (
    CalendarError,
    ConflictResolutionError,
    FlushReport,
    SyncError,
    SyncInProgressError,
    SyncReport,
    TerminalFailure,
    UnknownAccountError,
)

__all__ = [
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_JITTER",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "NETWORK_EXCEPTIONS",
    "ErrorClass",
    "RetryPolicy",
    "retry_with_backoff",
    # Types
    "CalendarError",
    "ConflictResolutionError",
    "FlushReport",
    "SyncError",
    "SyncInProgressError",
    "SyncReport",
    "TerminalFailure",
    "UnknownAccountError",
    # Components
    "ConflictResolver",
    "LocalChangeQueue",
    "QueueProcessor",
    "SyncEngine",
    "SyncScheduler",
    "is_local_id",
]
