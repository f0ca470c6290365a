"""Domain modules for sync business rules.

This package centralizes business logic for the sync system:
- decisions: Merge matrix for incoming remote states
- conflicts: Conflict resolution rules
- recurrence: Recurrence expansion

Architecture:
    domain/ contains pure business logic without store or network access.
    Implementation details (store updates, API calls) stay in the engine,
    the processor and the conflict resolver.
"""

from calreplica.client.sync.domain.conflicts import (
    ConflictPlan,
    Resolution,
    plan_resolution,
    resolve_with_local,
    resolve_with_remote,
)
from calreplica.client.sync.domain.decisions import (
    MergeAction,
    MergeDecision,
    MergeMatrix,
    MergeRule,
    resolve,
)
from calreplica.client.sync.domain.recurrence import (
    MAX_INSTANCES,
    expand,
    expand_events,
)

__all__ = [
    # decisions
    "MergeAction",
    "MergeDecision",
    "MergeRule",
    "MergeMatrix",
    "resolve",
    # conflicts
    "Resolution",
    "ConflictPlan",
    "plan_resolution",
    "resolve_with_local",
    "resolve_with_remote",
    # recurrence
    "MAX_INSTANCES",
    "expand",
    "expand_events",
]
