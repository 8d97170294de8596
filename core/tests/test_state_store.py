"""Tests for ExecutionStateStore.

Covers merge semantics, log truncation, batch atomicity as seen by
listeners, terminal statuses and workflow reset.
"""

from __future__ import annotations

import pytest

from flowsync.config import MAX_LOGS_PER_ENTITY
from flowsync.state.store import (
    EntityExecutionState,
    EntityStateUpdate,
    EntityStatus,
    ExecutionStateStore,
    merge_state,
)

# ---------------------------------------------------------------------------
# Single updates
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_get_absent_returns_none(self):
        store = ExecutionStateStore()
        assert store.get("missing") is None
        assert "missing" not in store

    def test_get_or_default_does_not_store(self):
        store = ExecutionStateStore()
        placeholder = store.get_or_default("n1")
        assert placeholder.status == EntityStatus.IDLE
        assert placeholder.logs == ()
        assert store.get("n1") is None

    def test_first_update_creates_from_idle_default(self):
        store = ExecutionStateStore()
        store.update("n1", EntityStateUpdate(entity_id="n1", progress=40))

        state = store.get("n1")
        assert state is not None
        assert state.status == EntityStatus.IDLE
        assert state.progress == 40
        assert state.logs == ()

    def test_absent_fields_keep_current_values(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.RUNNING, "start_time": 100, "progress": 10})
        store.update("n1", {"progress": 50})

        state = store.get("n1")
        assert state.status == EntityStatus.RUNNING
        assert state.start_time == 100
        assert state.progress == 50

    def test_logs_replace_whole_list(self):
        store = ExecutionStateStore()
        store.update("n1", {"logs": ["a", "b"]})
        store.update("n1", {"logs": ["c"]})
        assert store.get("n1").logs == ("c",)

    def test_explicit_timestamp_is_kept(self):
        store = ExecutionStateStore()
        store.update("n1", {"timestamp": 1234})
        assert store.get("n1").timestamp == 1234

    def test_timestamp_defaults_to_now(self, monkeypatch):
        monkeypatch.setattr("flowsync.state.store.time.time", lambda: 1700000000.5)
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.RUNNING})
        assert store.get("n1").timestamp == 1700000000500

    def test_entity_id_argument_wins(self):
        store = ExecutionStateStore()
        store.update("n2", EntityStateUpdate(entity_id="n1", progress=5))
        assert store.get("n1") is None
        assert store.get("n2").progress == 5

    def test_states_are_immutable(self):
        store = ExecutionStateStore()
        store.update("n1", {"logs": ["a"]})
        with pytest.raises(AttributeError):
            store.get("n1").status = EntityStatus.ERROR  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Log retention
# ---------------------------------------------------------------------------


class TestLogTruncation:
    def test_sequential_appends_keep_last_100(self):
        store = ExecutionStateStore()
        for i in range(150):
            current = store.get_or_default("n1").logs
            store.update("n1", {"logs": [*current, f"line {i}"]})

        logs = store.get("n1").logs
        assert len(logs) == MAX_LOGS_PER_ENTITY
        assert list(logs) == [f"line {i}" for i in range(50, 150)]

    def test_oversized_replacement_is_truncated(self):
        store = ExecutionStateStore()
        store.update("n1", {"logs": [str(i) for i in range(250)]})
        logs = store.get("n1").logs
        assert len(logs) == 100
        assert logs[0] == "150"
        assert logs[-1] == "249"

    def test_custom_cap(self):
        state = merge_state(None, EntityStateUpdate(entity_id="n1", logs=["a", "b", "c"]), max_logs=2)
        assert state.logs == ("b", "c")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_terminal_status_is_kept(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.RUNNING})
        store.update("n1", {"status": EntityStatus.COMPLETED, "result": {"ok": True}})
        store.update("n1", {"status": EntityStatus.RUNNING, "progress": 99})

        state = store.get("n1")
        assert state.status == EntityStatus.COMPLETED
        assert state.result == {"ok": True}
        assert state.progress == 99

    def test_error_after_completed_leaves_no_error_fields(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.COMPLETED, "result": {"ok": True}})
        store.update(
            "n1",
            {"status": EntityStatus.ERROR, "error": "boom", "error_stack": "Traceback..."},
        )

        state = store.get("n1")
        assert state.status == EntityStatus.COMPLETED
        assert state.result == {"ok": True}
        assert state.error is None
        assert state.error_stack is None

    def test_completed_after_error_leaves_no_result(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.ERROR, "error": "boom"})
        store.update("n1", {"status": EntityStatus.COMPLETED, "result": {"ok": True}})

        state = store.get("n1")
        assert state.status == EntityStatus.ERROR
        assert state.error == "boom"
        assert state.result is None

    def test_status_owned_fields_need_matching_status(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.RUNNING, "error": "early", "result": 1})
        store.update("n1", {"result": 2})

        state = store.get("n1")
        assert state.error is None
        assert state.result is None

    def test_error_status_records_error(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.RUNNING})
        store.update(
            "n1",
            {"status": EntityStatus.ERROR, "error": "boom", "error_stack": "Traceback..."},
        )
        state = store.get("n1")
        assert state.status == EntityStatus.ERROR
        assert state.error == "boom"
        assert state.error_stack == "Traceback..."

    def test_reset_clears_everything(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.ERROR})
        store.reset()
        assert len(store) == 0
        assert store.get("n1") is None

    def test_begin_workflow_resets_and_records_metadata(self):
        store = ExecutionStateStore()
        store.update("n1", {"status": EntityStatus.COMPLETED})

        store.begin_workflow("workflow-1", start_time=42)

        assert store.get("n1") is None
        assert store.workflow_id == "workflow-1"
        assert store.is_executing is True
        assert store.execution_start_time == 42

        # A fresh run may take the node through its lifecycle again
        store.update("n1", {"status": EntityStatus.RUNNING})
        assert store.get("n1").status == EntityStatus.RUNNING

    def test_status_is_terminal(self):
        assert EntityStatus.COMPLETED.is_terminal
        assert EntityStatus.ERROR.is_terminal
        assert not EntityStatus.RUNNING.is_terminal
        assert not EntityStatus.IDLE.is_terminal


# ---------------------------------------------------------------------------
# Batches and observers
# ---------------------------------------------------------------------------


class TestBatchUpdate:
    def test_batch_applies_in_order(self):
        store = ExecutionStateStore()
        store.batch_update(
            [
                EntityStateUpdate(entity_id="x", status=EntityStatus.RUNNING, progress=10),
                EntityStateUpdate(entity_id="y", status=EntityStatus.RUNNING),
                EntityStateUpdate(entity_id="x", progress=20),
            ]
        )
        assert store.get("x").progress == 20
        assert store.get("x").status == EntityStatus.RUNNING
        assert store.get("y").status == EntityStatus.RUNNING

    def test_batch_is_one_commit(self):
        store = ExecutionStateStore()
        before = store.version
        store.batch_update(
            [
                EntityStateUpdate(entity_id="x", status=EntityStatus.RUNNING),
                EntityStateUpdate(entity_id="y", status=EntityStatus.RUNNING),
            ]
        )
        assert store.version == before + 1

    def test_empty_batch_is_noop(self):
        store = ExecutionStateStore()
        calls = []
        store.subscribe(lambda changed, snapshot: calls.append(changed))
        store.batch_update([])
        assert calls == []
        assert store.version == 0

    def test_listener_never_sees_partial_batch(self):
        store = ExecutionStateStore()
        observed: list[tuple[EntityExecutionState | None, EntityExecutionState | None]] = []

        def listener(changed, snapshot):
            # Read through the store, not just the snapshot argument
            observed.append((store.get("x"), store.get("y")))

        store.subscribe(listener)
        store.batch_update(
            [
                EntityStateUpdate(entity_id="x", status=EntityStatus.RUNNING),
                EntityStateUpdate(entity_id="y", status=EntityStatus.RUNNING),
            ]
        )

        assert len(observed) == 1
        x, y = observed[0]
        assert x is not None and y is not None
        assert x.status == y.status == EntityStatus.RUNNING

    def test_snapshot_taken_before_batch_is_unchanged(self):
        store = ExecutionStateStore()
        store.update("x", {"status": EntityStatus.RUNNING})
        snapshot = store.snapshot()

        store.batch_update(
            [
                EntityStateUpdate(entity_id="x", status=EntityStatus.COMPLETED),
                EntityStateUpdate(entity_id="y", status=EntityStatus.RUNNING),
            ]
        )

        assert snapshot["x"].status == EntityStatus.RUNNING
        assert "y" not in snapshot
        assert store.snapshot()["x"].status == EntityStatus.COMPLETED

    def test_listener_receives_only_changed_ids(self):
        store = ExecutionStateStore()
        store.update("a", {"status": EntityStatus.RUNNING})

        calls = []
        store.subscribe(lambda changed, snapshot: calls.append(changed))
        store.batch_update(
            [
                EntityStateUpdate(entity_id="b", status=EntityStatus.RUNNING),
                EntityStateUpdate(entity_id="c", status=EntityStatus.RUNNING),
            ]
        )
        assert calls == [frozenset({"b", "c"})]

    def test_reset_notifies_cleared_ids(self):
        store = ExecutionStateStore()
        store.batch_update(
            [
                EntityStateUpdate(entity_id="a"),
                EntityStateUpdate(entity_id="b"),
            ]
        )
        calls = []
        store.subscribe(lambda changed, snapshot: calls.append((changed, dict(snapshot))))
        store.reset()
        assert calls == [(frozenset({"a", "b"}), {})]

    def test_failing_listener_is_isolated(self):
        store = ExecutionStateStore()
        seen = []

        def broken(changed, snapshot):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(lambda changed, snapshot: seen.append(changed))

        store.update("a", {"progress": 1})
        assert seen == [frozenset({"a"})]
        assert store.get("a").progress == 1

    def test_unsubscribe(self):
        store = ExecutionStateStore()
        calls = []
        sub_id = store.subscribe(lambda changed, snapshot: calls.append(changed))
        assert store.unsubscribe(sub_id) is True
        assert store.unsubscribe(sub_id) is False
        store.update("a", {"progress": 1})
        assert calls == []

    def test_stats(self):
        store = ExecutionStateStore()
        store.batch_update(
            [
                EntityStateUpdate(entity_id="a", status=EntityStatus.RUNNING),
                EntityStateUpdate(entity_id="b", status=EntityStatus.COMPLETED),
            ]
        )
        stats = store.get_stats()
        assert stats["entities"] == 2
        assert stats["entities_by_status"] == {"running": 1, "completed": 1}
        assert stats["version"] == 1
