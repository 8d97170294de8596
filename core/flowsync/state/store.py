"""
Execution State Store - Per-node execution state for the running workflow.

Holds the authoritative mapping from node id to its execution state on the
client side. All writes go through update(), batch_update() or reset();
each of those commits a new immutable snapshot in one step, so readers see
either the state before a commit or the state after it, never a mix.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from flowsync.config import MAX_LOGS_PER_ENTITY

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in integer epoch milliseconds."""
    return int(time.time() * 1000)


class EntityStatus(StrEnum):
    """Execution status of a node."""

    IDLE = "idle"  # Not executed yet (only initial value)
    RUNNING = "running"
    COMPLETED = "completed"  # Terminal for the current run
    ERROR = "error"  # Terminal for the current run

    @property
    def is_terminal(self) -> bool:
        return self in (EntityStatus.COMPLETED, EntityStatus.ERROR)


@dataclass(frozen=True)
class EntityExecutionState:
    """Execution state of a single node. Instances are never mutated."""

    status: EntityStatus = EntityStatus.IDLE
    timestamp: int = field(default_factory=now_ms)  # last update, epoch ms
    start_time: float | None = None
    end_time: float | None = None
    logs: tuple[str, ...] = ()  # most recent MAX_LOGS_PER_ENTITY entries
    error: str | None = None  # only meaningful when status is ERROR
    error_stack: str | None = None
    result: Any = None  # only meaningful when status is COMPLETED
    progress: float | None = None  # 0..100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "logs": list(self.logs),
            "error": self.error,
            "errorStack": self.error_stack,
            "result": self.result,
            "progress": self.progress,
        }


@dataclass
class EntityStateUpdate:
    """
    Partial patch to an EntityExecutionState.

    Fields left as None do not touch the current value, except:
    - logs replaces the whole log list (then truncated)
    - timestamp defaults to "now" when not supplied
    """

    entity_id: str
    status: EntityStatus | None = None
    timestamp: int | None = None
    start_time: float | None = None
    end_time: float | None = None
    logs: list[str] | None = None
    error: str | None = None
    error_stack: str | None = None
    result: Any = None
    progress: float | None = None

    def changes(self) -> dict[str, Any]:
        """Fields present in this patch, excluding entity_id and timestamp."""
        fields = {
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "logs": self.logs,
            "error": self.error,
            "error_stack": self.error_stack,
            "result": self.result,
            "progress": self.progress,
        }
        return {k: v for k, v in fields.items() if v is not None}


# Called after every commit with the ids that changed and the new snapshot
StateListener = Callable[[frozenset[str], Mapping[str, EntityExecutionState]], None]

# Fields that may only be set while the node has the given status
_STATUS_OWNED_FIELDS = {
    EntityStatus.ERROR: ("error", "error_stack"),
    EntityStatus.COMPLETED: ("result",),
}


def merge_state(
    current: EntityExecutionState | None,
    patch: EntityStateUpdate,
    max_logs: int = MAX_LOGS_PER_ENTITY,
) -> EntityExecutionState:
    """
    Shallow-merge a patch over the current state (or the idle default).

    A node whose status is terminal keeps that status until the next reset.
    Patch fields owned by another status (error/error_stack for ERROR,
    result for COMPLETED) are dropped, so they never sit next to a status
    they do not belong to.
    """
    base = current if current is not None else EntityExecutionState()
    changes = patch.changes()

    status = changes.get("status")
    if status is not None:
        status = EntityStatus(status)
        if base.status.is_terminal and status != base.status:
            logger.debug(
                f"Ignoring {base.status} -> {status} for {patch.entity_id}: status is terminal",
                extra={"entity_id": patch.entity_id},
            )
            status = base.status
        changes["status"] = status
    else:
        status = base.status

    for owner, owned in _STATUS_OWNED_FIELDS.items():
        if status != owner:
            for name in owned:
                changes.pop(name, None)

    if "logs" in changes:
        logs = tuple(changes["logs"])
        if len(logs) > max_logs:
            logs = logs[-max_logs:]
        changes["logs"] = logs

    changes["timestamp"] = patch.timestamp if patch.timestamp is not None else now_ms()
    return replace(base, **changes)


class ExecutionStateStore:
    """
    Authoritative node id -> EntityExecutionState mapping.

    Writes build a new dict and swap it in under a lock, so a batch of
    updates becomes visible all at once and no other writer can interleave.

    Example:
        store = ExecutionStateStore()
        store.subscribe(lambda changed, snapshot: print(sorted(changed)))

        store.begin_workflow("workflow-1700000000000")
        store.batch_update([
            EntityStateUpdate(entity_id="1", status=EntityStatus.RUNNING),
            EntityStateUpdate(entity_id="2", status=EntityStatus.RUNNING),
        ])
        state = store.get("1")
    """

    def __init__(self, max_logs: int = MAX_LOGS_PER_ENTITY):
        self._states: Mapping[str, EntityExecutionState] = MappingProxyType({})
        self._max_logs = max_logs
        self._write_lock = threading.Lock()
        self._listeners: dict[str, StateListener] = {}
        self._listener_counter = 0
        self._version = 0

        # Workflow metadata
        self.workflow_id: str | None = None
        self.is_executing = False
        self.execution_start_time: int | None = None

    # === WRITES ===

    def update(
        self,
        entity_id: str,
        patch: EntityStateUpdate | Mapping[str, Any],
    ) -> None:
        """
        Merge a patch into one node's state.

        Args:
            entity_id: Node to update
            patch: EntityStateUpdate, or a mapping of EntityStateUpdate fields
        """
        self.batch_update([_as_update(entity_id, patch)])

    def batch_update(self, patches: Iterable[EntityStateUpdate]) -> None:
        """
        Apply several patches in order as one visible-at-once commit.

        Later patches for the same node see the result of earlier ones.
        """
        patches = list(patches)
        if not patches:
            return

        with self._write_lock:
            working = dict(self._states)
            changed: set[str] = set()
            for patch in patches:
                working[patch.entity_id] = merge_state(
                    working.get(patch.entity_id), patch, self._max_logs
                )
                changed.add(patch.entity_id)
            snapshot = self._commit(working)

        self._notify(frozenset(changed), snapshot)

    def reset(self) -> None:
        """Clear every node's state."""
        with self._write_lock:
            changed = frozenset(self._states)
            snapshot = self._commit({})

        logger.debug(f"State store reset ({len(changed)} entities cleared)")
        if changed:
            self._notify(changed, snapshot)

    def begin_workflow(self, workflow_id: str, start_time: int | None = None) -> None:
        """Reset state and record a new run; called before any of its node events."""
        self.reset()
        self.workflow_id = workflow_id
        self.is_executing = True
        self.execution_start_time = start_time if start_time is not None else now_ms()

    def set_executing(self, executing: bool) -> None:
        self.is_executing = executing

    def _commit(self, states: dict[str, EntityExecutionState]) -> Mapping[str, EntityExecutionState]:
        snapshot = MappingProxyType(states)
        self._states = snapshot
        self._version += 1
        return snapshot

    # === READS ===

    def get(self, entity_id: str) -> EntityExecutionState | None:
        """Current state of a node, or None if it has no state yet."""
        return self._states.get(entity_id)

    def get_or_default(self, entity_id: str) -> EntityExecutionState:
        """Current state of a node, or an idle placeholder (not stored)."""
        state = self._states.get(entity_id)
        return state if state is not None else EntityExecutionState()

    def snapshot(self) -> Mapping[str, EntityExecutionState]:
        """Read-only view of the states as of the last commit."""
        return self._states

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._states

    @property
    def version(self) -> int:
        return self._version

    # === SUBSCRIPTIONS ===

    def subscribe(self, listener: StateListener) -> str:
        """
        Register a listener called after every commit.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._listener_counter += 1
        sub_id = f"sub_{self._listener_counter}"
        self._listeners[sub_id] = listener
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._listeners.pop(subscription_id, None) is not None

    def _notify(
        self,
        changed: frozenset[str],
        snapshot: Mapping[str, EntityExecutionState],
    ) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(changed, snapshot)
            except Exception as e:
                logger.error(f"State listener error: {e}")

    def get_stats(self) -> dict:
        """Get state store statistics."""
        status_counts: dict[str, int] = {}
        for state in self._states.values():
            status_counts[state.status.value] = status_counts.get(state.status.value, 0) + 1

        return {
            "entities": len(self._states),
            "entities_by_status": status_counts,
            "version": self._version,
            "listeners": len(self._listeners),
            "workflow_id": self.workflow_id,
            "is_executing": self.is_executing,
        }


def _as_update(entity_id: str, patch: EntityStateUpdate | Mapping[str, Any]) -> EntityStateUpdate:
    if isinstance(patch, EntityStateUpdate):
        if patch.entity_id == entity_id:
            return patch
        return replace(patch, entity_id=entity_id)
    fields = {k: v for k, v in patch.items() if k != "entity_id"}
    return EntityStateUpdate(entity_id=entity_id, **fields)
