"""Client-side execution state."""

from flowsync.state.store import (
    EntityExecutionState,
    EntityStateUpdate,
    EntityStatus,
    ExecutionStateStore,
    StateListener,
    merge_state,
    now_ms,
)

__all__ = [
    "EntityExecutionState",
    "EntityStateUpdate",
    "EntityStatus",
    "ExecutionStateStore",
    "StateListener",
    "merge_state",
    "now_ms",
]
