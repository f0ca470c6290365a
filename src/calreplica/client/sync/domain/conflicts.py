"""Conflict resolution rules.

Implements "Keep Both Until Asked":
1. A conflicting remote state never overwrites the local record
2. The latest remote state is kept as a shadow on the local record
3. The user picks a side; the pending change is re-armed or discarded

Resolution outcomes:
- Local wins: local record stays, its queued change is rebased onto the
  shadow's version (or turned into a re-create if the remote side deleted it,
  or sent unconditionally when the remote state is unknown)
- Remote wins: the shadow replaces the local record (or removes it when the
  remote side deleted it), queued changes and tombstone are dropped
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from calreplica.client.models import Event, RemoteEvent


class Resolution(str, Enum):
    """Side chosen by the user."""

    LOCAL_WINS = "local"
    REMOTE_WINS = "remote"


@dataclass
class ConflictPlan:
    """What a resolution does to the replica.

    Attributes:
        event: Record to store, or None to remove the local record.
        keep_pending: Re-arm queued changes (False discards them).
        base_version: Version queued changes are rebased onto.
        recreate: Queued update must become a create (remote side deleted).
        clear_tombstone: Drop the tombstone of the event.
    """

    event: Event | None
    keep_pending: bool
    base_version: str | None = None
    recreate: bool = False
    clear_tombstone: bool = False


def _remote_gone(shadow: RemoteEvent | None) -> bool:
    return shadow is not None and shadow.cancelled


def resolve_with_local(local: Event, shadow: RemoteEvent | None) -> ConflictPlan:
    """Keep the local version of a conflicted event.

    A missing shadow means the remote side rejected our write without telling
    us its state (version precondition failed). The queued change is then
    re-sent unconditionally.
    """
    remote_gone = _remote_gone(shadow)
    base_version = shadow.version if shadow is not None and not remote_gone else None
    if local.deleted:
        if remote_gone:
            # Both sides deleted it
            return ConflictPlan(event=None, keep_pending=False, clear_tombstone=True)
        return ConflictPlan(
            event=replace(local, has_conflict=False, conflict_remote=None),
            keep_pending=True,
            base_version=base_version,
        )
    return ConflictPlan(
        event=replace(
            local,
            has_conflict=False,
            conflict_remote=None,
            sync_error=None,
            remote_version=local.remote_version if shadow is None else base_version,
        ),
        keep_pending=True,
        base_version=base_version,
        recreate=remote_gone,
    )


def resolve_with_remote(local: Event, shadow: RemoteEvent | None) -> ConflictPlan:
    """Discard local changes in favor of the remote state.

    Without a shadow the record is kept unmodified so the next pull
    overwrites it with the remote state.
    """
    if _remote_gone(shadow):
        return ConflictPlan(event=None, keep_pending=False, clear_tombstone=True)
    if shadow is None:
        return ConflictPlan(
            event=replace(
                local,
                has_conflict=False,
                conflict_remote=None,
                locally_modified=False,
                deleted=False,
                sync_error=None,
            ),
            keep_pending=False,
            clear_tombstone=True,
        )
    return ConflictPlan(
        event=local.adopt_remote(shadow),
        keep_pending=False,
        clear_tombstone=True,
    )


def plan_resolution(local: Event, resolution: Resolution) -> ConflictPlan:
    """Dispatch to the rule for the chosen side."""
    if resolution is Resolution.LOCAL_WINS:
        return resolve_with_local(local, local.conflict_remote)
    return resolve_with_remote(local, local.conflict_remote)
