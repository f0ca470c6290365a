"""Merge decisions for incoming remote event states.

When the pull phase receives a remote event, this module decides what to
do with the local replica given the local record and any pending delete.
The decision is a pure function of its inputs.

Matrix (first matching rule wins):
| Remote          | Local state                         | Action                         |
|-----------------|-------------------------------------|--------------------------------|
| cancelled       | tombstone                           | Apply, clear tombstone         |
| cancelled       | none                                | Ignore                         |
| cancelled       | clean                               | Apply (local delete)           |
| cancelled       | locally modified                    | Mark conflict                  |
| present         | tombstone, version == delete base   | Ignore (delete still queued)   |
| present         | tombstone, version advanced         | Mark conflict                  |
| present         | none                                | Apply (create)                 |
| present         | clean                               | Apply (update)                 |
| present         | locally modified, version == base   | Ignore (own write echoed)      |
| present         | locally modified, version advanced  | Mark conflict                  |
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calreplica.client.models import Event, RemoteEvent, Tombstone


class MergeAction(Enum):
    """Action to take for an incoming remote state."""

    IGNORE = auto()  # Nothing to change locally
    APPLY_REMOTE = auto()  # Remote state replaces the local record
    MARK_CONFLICT = auto()  # Keep local, flag for the user
    APPLY_REMOTE_AND_CLEAR_TOMBSTONE = auto()  # Our delete is confirmed


@dataclass(frozen=True)
class MergeDecision:
    """Outcome of evaluating the merge rules."""

    action: MergeAction
    reason: str


@dataclass(frozen=True)
class MergeInput:
    """Inputs the rules are evaluated against."""

    remote: RemoteEvent
    local: Event | None
    tombstone: Tombstone | None

    @property
    def remote_gone(self) -> bool:
        return self.remote.cancelled

    @property
    def locally_modified(self) -> bool:
        return self.local is not None and self.local.locally_modified

    @property
    def version_matches_base(self) -> bool:
        """Remote version equals the version our local intent was based on."""
        if self.tombstone is not None:
            base = self.tombstone.base_version
        elif self.local is not None:
            base = self.local.remote_version
        else:
            return False
        return base is not None and self.remote.version == base


@dataclass(frozen=True)
class MergeRule:
    """A rule in the merge matrix."""

    matches: Callable[[MergeInput], bool]
    action: MergeAction
    reason: str


# Declarative merge rules, evaluated in order
MERGE_RULES: list[MergeRule] = [
    MergeRule(
        matches=lambda m: m.remote_gone and m.tombstone is not None,
        action=MergeAction.APPLY_REMOTE_AND_CLEAR_TOMBSTONE,
        reason="Remote confirms our delete",
    ),
    MergeRule(
        matches=lambda m: m.remote_gone and m.local is None,
        action=MergeAction.IGNORE,
        reason="Remote deleted an event we never had",
    ),
    MergeRule(
        matches=lambda m: m.remote_gone and not m.locally_modified,
        action=MergeAction.APPLY_REMOTE,
        reason="Remote deleted an unmodified event",
    ),
    MergeRule(
        matches=lambda m: m.remote_gone,
        action=MergeAction.MARK_CONFLICT,
        reason="Remote deleted an event with local changes",
    ),
    MergeRule(
        matches=lambda m: m.tombstone is not None and m.version_matches_base,
        action=MergeAction.IGNORE,
        reason="Our delete has not reached the remote side yet",
    ),
    MergeRule(
        matches=lambda m: m.tombstone is not None,
        action=MergeAction.MARK_CONFLICT,
        reason="Remote changed an event we deleted",
    ),
    MergeRule(
        matches=lambda m: m.local is None,
        action=MergeAction.APPLY_REMOTE,
        reason="New remote event",
    ),
    MergeRule(
        matches=lambda m: not m.locally_modified,
        action=MergeAction.APPLY_REMOTE,
        reason="Remote update of an unmodified event",
    ),
    MergeRule(
        matches=lambda m: m.version_matches_base,
        action=MergeAction.IGNORE,
        reason="Remote unchanged since our local edit",
    ),
    MergeRule(
        matches=lambda m: True,
        action=MergeAction.MARK_CONFLICT,
        reason="Both sides changed the event",
    ),
]


class MergeMatrix:
    """Evaluates merge rules for a remote event."""

    def __init__(self, rules: list[MergeRule] | None = None) -> None:
        self._rules = rules or MERGE_RULES

    def evaluate(self, merge_input: MergeInput) -> MergeDecision:
        for rule in self._rules:
            if rule.matches(merge_input):
                return MergeDecision(rule.action, rule.reason)

        # Unreachable with the default rules (last rule matches everything)
        return MergeDecision(MergeAction.IGNORE, "No matching rule, ignoring")


_DEFAULT_MATRIX = MergeMatrix()


def resolve(
    remote: RemoteEvent,
    local: Event | None,
    tombstone: Tombstone | None,
) -> MergeDecision:
    """Decide how to merge one remote event state.

    Args:
        remote: Incoming remote state (cancelled when deleted or absent).
        local: Local record with the same key, if any.
        tombstone: Pending local delete of that key, if any.

    Returns:
        The decision with a human-readable reason.
    """
    return _DEFAULT_MATRIX.evaluate(MergeInput(remote, local, tombstone))
