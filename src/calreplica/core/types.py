"""Shared types for calreplica."""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Sync state reported by the scheduler.

    Used by the CLI watch loop to show what the background job is doing.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"
