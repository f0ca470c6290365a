"""Shared configuration classes for calreplica.

This module defines the connection settings for the remote calendar service
and the tunables of the sync core.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass
class GatewayConfig:
    """Configuration for connecting to the remote calendar API.

    Attributes:
        base_url: Base URL of the calendar API.
        token_url: OAuth2 token endpoint used for refresh-token grants.
        timeout: Per-request deadline in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    base_url: str = DEFAULT_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize base URL."""
        self.base_url = self.base_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if the API is reached over HTTPS."""
        return self.base_url.startswith("https://")


@dataclass(frozen=True)
class SyncWindow:
    """Time range the replica keeps in sync."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class SyncSettings:
    """Tunables for periodic sync and local pruning.

    Attributes:
        interval_minutes: Minutes between scheduled sync runs.
        auto_sync: Whether the scheduler runs at all.
        window_past_days: Days before now kept in the replica.
        window_future_days: Days after now kept in the replica.
        tombstone_retention_days: Age after which settled tombstones are pruned.
        max_workers: Concurrent (account, calendar) units.
    """

    interval_minutes: int = 20
    auto_sync: bool = True
    window_past_days: int = 45
    window_future_days: int = 45
    tombstone_retention_days: int = 45
    max_workers: int = 4

    def __post_init__(self) -> None:
        if self.interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    def sync_window(self, now: datetime | None = None) -> SyncWindow:
        """Compute the window centered on ``now`` (UTC)."""
        now = now or datetime.now(timezone.utc)
        return SyncWindow(
            start=now - timedelta(days=self.window_past_days),
            end=now + timedelta(days=self.window_future_days),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        """Build settings from a config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
