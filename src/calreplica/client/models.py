"""Records held by the local replica.

This module provides:
- EventTime: Date-only or date-time-with-zone value in the provider shape
- Account, Calendar, Event: The strict ownership tree
- PendingChange, Tombstone: Weak references into the tree (ids only)
- ErrorLogEntry: Persisted failure record surfaced to the user
- RemoteEvent, CalendarDelta: Normalized shapes returned by the gateway
- EventKey, InstanceKey: Composite identities

Event times keep the provider's string form so that a record written back
to the remote side round-trips unchanged. ``EventTime.to_datetime`` resolves
them to aware datetimes for ordering and window checks.
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone, tzinfo
from datetime import time as dt_time
from enum import Enum
from typing import Any, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CANCELLED = "cancelled"

EDITABLE_FIELDS = frozenset(
    {"summary", "description", "location", "start", "end", "recurrence"}
)


class Operation(str, Enum):
    """Remote mutation carried by a pending change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ErrorKind(str, Enum):
    """Category of a persisted error log entry."""

    SYNC_FAILURE = "sync_failure"
    TERMINAL_CHANGE = "terminal_change"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    CURSOR_RESET = "cursor_reset"


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp, accepting a trailing ``Z``."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _zone(name: str | None) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


class EventKey(NamedTuple):
    """Identity of an event within the replica."""

    account_id: str
    calendar_id: str
    event_id: str

    def __str__(self) -> str:
        return f"{self.account_id}/{self.calendar_id}/{self.event_id}"


class InstanceKey(NamedTuple):
    """Identity of one occurrence of a recurring master."""

    master_id: str
    instance_date: date

    @property
    def event_id(self) -> str:
        """Stable event id for this occurrence."""
        return f"{self.master_id}_{self.instance_date:%Y%m%d}"


@dataclass(frozen=True)
class EventTime:
    """Start or end of an event.

    Exactly one of ``date`` (all-day, ``YYYY-MM-DD``) or ``date_time``
    (RFC 3339) is set. ``time_zone`` is an IANA zone name.
    """

    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    def __post_init__(self) -> None:
        if (self.date is None) == (self.date_time is None):
            raise ValueError("EventTime needs exactly one of date or date_time")

    @property
    def is_all_day(self) -> bool:
        return self.date is not None

    @property
    def zone(self) -> tzinfo:
        return _zone(self.time_zone)

    def to_datetime(self) -> datetime:
        """Resolve to an aware datetime (all-day values are local midnight)."""
        if self.date is not None:
            return datetime.combine(date.fromisoformat(self.date), dt_time.min, tzinfo=self.zone)
        if self.date_time is None:
            raise ValueError("EventTime needs exactly one of date or date_time")
        value = parse_rfc3339(self.date_time)
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.zone)
        return value

    def as_date(self) -> date:
        """Calendar date of this value in its own zone."""
        if self.date is not None:
            return date.fromisoformat(self.date)
        value = self.to_datetime()
        if self.time_zone:
            value = value.astimezone(self.zone)
        return value.date()

    @classmethod
    def from_date(cls, value: date, time_zone: str | None = None) -> EventTime:
        return cls(date=value.isoformat(), time_zone=time_zone)

    @classmethod
    def from_datetime(cls, value: datetime, time_zone: str | None = None) -> EventTime:
        return cls(date_time=value.isoformat(), time_zone=time_zone)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> EventTime:
        return cls(
            date=data.get("date"),
            date_time=data.get("dateTime"),
            time_zone=data.get("timeZone"),
        )

    def to_api(self) -> dict[str, str]:
        result: dict[str, str] = {}
        if self.date is not None:
            result["date"] = self.date
        if self.date_time is not None:
            result["dateTime"] = self.date_time
        if self.time_zone:
            result["timeZone"] = self.time_zone
        return result


@dataclass
class RemoteEvent:
    """Event as reported by the remote service, normalized at the gateway.

    Attributes:
        id: Remote-issued event id.
        status: ``confirmed``, ``tentative`` or ``cancelled``.
        version: Optimistic-concurrency tag (etag).
        original_start: Original occurrence start for modified instances.
        updated: Remote last-modified timestamp (RFC 3339).
    """

    id: str
    status: str = "confirmed"
    version: str | None = None
    summary: str = ""
    description: str | None = None
    location: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    recurrence: tuple[str, ...] = ()
    recurring_event_id: str | None = None
    original_start: EventTime | None = None
    updated: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.status == CANCELLED

    @classmethod
    def absent(cls, event_id: str) -> RemoteEvent:
        """Represent an event the remote side no longer lists."""
        return cls(id=event_id, status=CANCELLED)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> RemoteEvent:
        """Create from an API event resource."""
        start = data.get("start")
        end = data.get("end")
        original = data.get("originalStartTime")
        return cls(
            id=data["id"],
            status=data.get("status", "confirmed"),
            version=data.get("etag"),
            summary=data.get("summary", ""),
            description=data.get("description"),
            location=data.get("location"),
            start=EventTime.from_api(start) if start else None,
            end=EventTime.from_api(end) if end else None,
            recurrence=tuple(data.get("recurrence") or ()),
            recurring_event_id=data.get("recurringEventId"),
            original_start=EventTime.from_api(original) if original else None,
            updated=data.get("updated"),
        )

    def to_api(self) -> dict[str, Any]:
        """Serialize back to the API resource shape."""
        data: dict[str, Any] = {"kind": "calendar#event", "id": self.id, "status": self.status}
        if self.version is not None:
            data["etag"] = self.version
        if self.summary:
            data["summary"] = self.summary
        if self.description is not None:
            data["description"] = self.description
        if self.location is not None:
            data["location"] = self.location
        if self.start is not None:
            data["start"] = self.start.to_api()
        if self.end is not None:
            data["end"] = self.end.to_api()
        if self.recurrence:
            data["recurrence"] = list(self.recurrence)
        if self.recurring_event_id is not None:
            data["recurringEventId"] = self.recurring_event_id
        if self.original_start is not None:
            data["originalStartTime"] = self.original_start.to_api()
        if self.updated is not None:
            data["updated"] = self.updated
        return data


@dataclass
class CalendarDelta:
    """Calendar list entry reported by the remote service."""

    id: str
    summary: str = ""
    color: str | None = None
    primary: bool = False
    deleted: bool = False

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> CalendarDelta:
        return cls(
            id=data["id"],
            summary=data.get("summaryOverride") or data.get("summary", ""),
            color=data.get("backgroundColor"),
            primary=bool(data.get("primary", False)),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class Account:
    """One authorized identity against the remote service.

    ``credential_handle`` is an opaque reference into the token vault; the
    replica never stores secrets itself.
    """

    id: str
    email: str = ""
    credential_handle: str | None = None
    token_expiry: float | None = None
    color: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class Calendar:
    """Named collection of events under one account."""

    account_id: str
    id: str
    summary: str = ""
    color: str | None = None
    enabled: bool = True
    primary: bool = False
    sync_cursor: str | None = None
    last_sync_at: float | None = None
    last_sync_status: str | None = None
    last_error: str | None = None


@dataclass
class Event:
    """Local replica record of one event.

    Attributes:
        remote_version: Version tag of the last remote state adopted. A local
            edit keeps it untouched, so it is also the edit's base version.
        locally_modified: A local write is waiting to reach the remote side.
        deleted: Soft-delete marker hiding the event from display.
        has_conflict: Concurrent edit awaiting user resolution.
        conflict_remote: Latest remote state seen while the conflict is open.
        sync_error: Terminal remote rejection requiring user attention.
    """

    account_id: str
    calendar_id: str
    id: str
    start: EventTime
    end: EventTime
    summary: str = ""
    description: str | None = None
    location: str | None = None
    recurrence: tuple[str, ...] = ()
    recurring_event_id: str | None = None
    instance_date: date | None = None
    status: str = "confirmed"
    remote_version: str | None = None
    locally_modified: bool = False
    deleted: bool = False
    has_conflict: bool = False
    conflict_remote: RemoteEvent | None = None
    sync_error: str | None = None
    updated_at: float = field(default_factory=time.time)
    last_synced_at: float | None = None

    @property
    def key(self) -> EventKey:
        return EventKey(self.account_id, self.calendar_id, self.id)

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence)

    @property
    def is_exception(self) -> bool:
        """Individually modified occurrence of a recurring master."""
        return self.recurring_event_id is not None and self.instance_date is not None

    @classmethod
    def from_remote(
        cls,
        remote: RemoteEvent,
        account_id: str,
        calendar_id: str,
        now: float | None = None,
    ) -> Event:
        """Build a fresh local record mirroring a remote event."""
        if remote.start is None or remote.end is None:
            raise ValueError(f"Remote event {remote.id} has no start/end")
        now = now if now is not None else time.time()
        instance_date = None
        if remote.recurring_event_id and remote.original_start is not None:
            instance_date = remote.original_start.as_date()
        return cls(
            account_id=account_id,
            calendar_id=calendar_id,
            id=remote.id,
            start=remote.start,
            end=remote.end,
            summary=remote.summary,
            description=remote.description,
            location=remote.location,
            recurrence=remote.recurrence,
            recurring_event_id=remote.recurring_event_id,
            instance_date=instance_date,
            status=remote.status,
            remote_version=remote.version,
            updated_at=now,
            last_synced_at=now,
        )

    def adopt_remote(self, remote: RemoteEvent, now: float | None = None) -> Event:
        """Return this record replaced by the remote truth, flags cleared."""
        fresh = Event.from_remote(remote, self.account_id, self.calendar_id, now=now)
        if fresh.instance_date is None:
            fresh.instance_date = self.instance_date
        return fresh

    def with_changes(self, changes: Mapping[str, Any]) -> Event:
        """Apply a local edit of editable fields."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        values = dict(changes)
        if "recurrence" in values:
            values["recurrence"] = tuple(values["recurrence"] or ())
        return replace(self, updated_at=time.time(), **values)

    def to_payload(self) -> dict[str, Any]:
        """Snapshot of the fields written to the remote side."""
        payload: dict[str, Any] = {
            "summary": self.summary,
            "start": self.start.to_api(),
            "end": self.end.to_api(),
        }
        if self.description is not None:
            payload["description"] = self.description
        if self.location is not None:
            payload["location"] = self.location
        if self.recurrence:
            payload["recurrence"] = list(self.recurrence)
        if self.recurring_event_id is not None:
            payload["recurringEventId"] = self.recurring_event_id
        if self.instance_date is not None and self.recurring_event_id is not None:
            payload["originalStartTime"] = {"date": self.instance_date.isoformat()}
        return payload

    def to_record(self) -> dict[str, Any]:
        """JSON-serializable form for the local store."""
        return {
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "start": self.start.to_api(),
            "end": self.end.to_api(),
            "recurrence": list(self.recurrence),
            "status": self.status,
            "remote_version": self.remote_version,
            "conflict_remote": self.conflict_remote.to_api() if self.conflict_remote else None,
            "sync_error": self.sync_error,
            "updated_at": self.updated_at,
            "last_synced_at": self.last_synced_at,
        }

    @classmethod
    def from_record(
        cls,
        key: EventKey,
        data: Mapping[str, Any],
        *,
        recurring_event_id: str | None,
        instance_date: str | None,
        locally_modified: bool,
        deleted: bool,
        has_conflict: bool,
    ) -> Event:
        shadow = data.get("conflict_remote")
        return cls(
            account_id=key.account_id,
            calendar_id=key.calendar_id,
            id=key.event_id,
            start=EventTime.from_api(data["start"]),
            end=EventTime.from_api(data["end"]),
            summary=data.get("summary", ""),
            description=data.get("description"),
            location=data.get("location"),
            recurrence=tuple(data.get("recurrence") or ()),
            recurring_event_id=recurring_event_id,
            instance_date=date.fromisoformat(instance_date) if instance_date else None,
            status=data.get("status", "confirmed"),
            remote_version=data.get("remote_version"),
            locally_modified=locally_modified,
            deleted=deleted,
            has_conflict=has_conflict,
            conflict_remote=RemoteEvent.from_api(shadow) if shadow else None,
            sync_error=data.get("sync_error"),
            updated_at=data.get("updated_at", 0.0),
            last_synced_at=data.get("last_synced_at"),
        )


@dataclass
class PendingChange:
    """Queued local mutation awaiting remote application.

    Attributes:
        id: Store-assigned sequence number (creation order).
        event_id: Target event; a local placeholder id for creates.
        payload: Snapshot of the fields to write. Updates carry
            ``base_version`` alongside the fields.
        next_attempt_at: Earliest time of the next attempt (backoff).
    """

    account_id: str
    calendar_id: str
    operation: Operation
    event_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)
    next_attempt_at: float | None = None
    last_error: str | None = None
    id: int | None = None

    @property
    def event_key(self) -> EventKey | None:
        if self.event_id is None:
            return None
        return EventKey(self.account_id, self.calendar_id, self.event_id)

    @property
    def base_version(self) -> str | None:
        return self.payload.get("base_version")

    @property
    def fields(self) -> dict[str, Any]:
        """Payload without bookkeeping keys."""
        return {k: v for k, v in self.payload.items() if k != "base_version"}

    def payload_json(self) -> str:
        return json.dumps(self.payload, sort_keys=True)


@dataclass
class Tombstone:
    """Local delete not yet confirmed by the remote side.

    ``base_version`` is the remote version the delete was issued against.
    """

    account_id: str
    calendar_id: str
    event_id: str
    deleted_at: float = field(default_factory=time.time)
    base_version: str | None = None

    @property
    def key(self) -> EventKey:
        return EventKey(self.account_id, self.calendar_id, self.event_id)


@dataclass
class ErrorLogEntry:
    """Failure recorded for the user."""

    kind: ErrorKind
    account_id: str
    message: str
    calendar_id: str | None = None
    event_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    id: int | None = None
