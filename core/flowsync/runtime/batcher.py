"""
Event Batcher - Coalesces node lifecycle events per (session, workflow).

Each QueueKey owns a pending list and at most one armed window timer.
A key is flushed when either:
- the pending list reaches batch_size (synchronously, inside emit()), or
- the batch window expires (timer callback)

Both paths go through flush(), which pops the key's pending batch and
cancels its timer in the same step, so an accumulated set of events is
delivered exactly once. A timer that fires for a batch that is no longer
current is ignored.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from flowsync.config import BatcherConfig
from flowsync.protocol.codec import build_batch, validate_envelope
from flowsync.protocol.schemas import (
    ErrorCode,
    MessageType,
    NodeEventEnvelope,
    NodeEventMessage,
    RunStatus,
    WorkflowCancelled,
    WorkflowComplete,
    WorkflowErrorMessage,
    WorkflowStarted,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueKey:
    """Isolation unit for batching: one workflow run on one session."""

    session_id: str
    workflow_id: str

    def __str__(self) -> str:
        return f"{self.session_id}:{self.workflow_id}"


class BatchTransport(Protocol):
    """Delivers a server message to one session. Must not block."""

    def send(self, session_id: str, message_type: MessageType, message: Any) -> None: ...


@dataclass
class _PendingBatch:
    events: list[NodeEventEnvelope] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class EventBatcher:
    """
    Per-key batching of node events with a count-or-time flush policy.

    Example:
        batcher = EventBatcher(transport, BatcherConfig(batch_size=10, batch_window_ms=100))
        key = QueueKey(session_id="s1", workflow_id="workflow-1")

        batcher.emit(key, {"nodeId": "1", "eventType": "start", "timestamp": 1700000000000})
        ...
        batcher.cleanup(key)  # exactly once when the run ends
    """

    def __init__(
        self,
        transport: BatchTransport,
        config: BatcherConfig | None = None,
    ):
        self._transport = transport
        self._config = config or BatcherConfig()
        self._pending: dict[QueueKey, _PendingBatch] = {}

        # Counters for get_stats()
        self._batches_flushed = 0
        self._events_flushed = 0
        self._immediate_sent = 0

    @property
    def config(self) -> BatcherConfig:
        return self._config

    # === NODE EVENTS ===

    def emit(self, key: QueueKey, event: NodeEventEnvelope | dict[str, Any]) -> None:
        """
        Queue a node event for batched delivery.

        Raises:
            ProtocolError: if the event is malformed (it is not queued)
        """
        envelope = validate_envelope(event)

        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingBatch()
            self._pending[key] = pending
        pending.events.append(envelope)

        if len(pending.events) >= self._config.batch_size:
            self.flush(key)
        elif pending.timer is None:
            loop = asyncio.get_running_loop()
            pending.timer = loop.call_later(
                self._config.batch_window,
                self._on_window_expired,
                key,
                pending,
            )

    def emit_immediate(self, key: QueueKey, event: NodeEventEnvelope | dict[str, Any]) -> None:
        """
        Deliver one event right away as a node-event message (count 1).

        No ordering is guaranteed relative to events still pending for the
        same key through emit().
        """
        envelope = validate_envelope(event)
        message = NodeEventMessage(workflow_id=key.workflow_id, event=envelope)
        self._transport.send(key.session_id, MessageType.NODE_EVENT, message)
        self._immediate_sent += 1

    def flush(self, key: QueueKey) -> int:
        """
        Deliver everything pending for a key as one batch.

        Returns:
            Number of events delivered (0 if nothing was pending)
        """
        pending = self._pending.pop(key, None)
        if pending is None:
            return 0

        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

        if not pending.events:
            return 0

        batch = build_batch(key.workflow_id, pending.events)
        self._transport.send(key.session_id, MessageType.NODE_EVENTS_BATCH, batch)

        self._batches_flushed += 1
        self._events_flushed += batch.count
        logger.debug(
            f"Flushed batch of {batch.count} events for {key}",
            extra={"batch_size": batch.count, "queue_key": str(key)},
        )
        return batch.count

    def cleanup(self, key: QueueKey) -> None:
        """Flush the remainder and release the key's timer. Safe to call repeatedly."""
        self.flush(key)

    def cleanup_session(self, session_id: str) -> None:
        """Clean up every key belonging to a session (e.g. on disconnect)."""
        for key in [k for k in self._pending if k.session_id == session_id]:
            self.cleanup(key)

    def _on_window_expired(self, key: QueueKey, pending: _PendingBatch) -> None:
        # The batch this timer was armed for has already been flushed
        if self._pending.get(key) is not pending:
            return
        pending.timer = None
        try:
            self.flush(key)
        except Exception:
            logger.exception(f"Timed flush failed for {key}")

    # === WORKFLOW LIFECYCLE (unbatched) ===

    def emit_workflow_started(self, session_id: str, workflow_id: str) -> None:
        self._transport.send(
            session_id,
            MessageType.STARTED,
            WorkflowStarted(workflow_id=workflow_id),
        )

    def emit_workflow_complete(
        self,
        session_id: str,
        workflow_id: str,
        total_time: float,
        status: RunStatus = RunStatus.SUCCESS,
        failed_nodes: list[str] | None = None,
    ) -> None:
        """Emit workflow completion. Flushes the run's pending events first."""
        self.cleanup(QueueKey(session_id, workflow_id))
        self._transport.send(
            session_id,
            MessageType.COMPLETE,
            WorkflowComplete(
                workflow_id=workflow_id,
                total_time=total_time,
                status=status,
                failed_nodes=failed_nodes or [],
            ),
        )

    def emit_workflow_error(
        self,
        session_id: str,
        workflow_id: str | None,
        code: ErrorCode | str = ErrorCode.WORKFLOW_ERROR,
        error: str = "Unknown error",
    ) -> None:
        """Emit a workflow error. Flushes the run's pending events first, if any."""
        if workflow_id is not None:
            self.cleanup(QueueKey(session_id, workflow_id))
        self._transport.send(
            session_id,
            MessageType.ERROR,
            WorkflowErrorMessage(workflow_id=workflow_id, code=str(code), error=error),
        )

    def emit_workflow_cancelled(self, session_id: str, workflow_id: str) -> None:
        self.cleanup(QueueKey(session_id, workflow_id))
        self._transport.send(
            session_id,
            MessageType.CANCELLED,
            WorkflowCancelled(workflow_id=workflow_id),
        )

    # === QUERY OPERATIONS ===

    def pending_count(self, key: QueueKey) -> int:
        pending = self._pending.get(key)
        return len(pending.events) if pending else 0

    def has_timer(self, key: QueueKey) -> bool:
        pending = self._pending.get(key)
        return pending is not None and pending.timer is not None

    def get_stats(self) -> dict:
        """Get batcher statistics."""
        return {
            "pending_keys": len(self._pending),
            "pending_events": sum(len(p.events) for p in self._pending.values()),
            "armed_timers": sum(1 for p in self._pending.values() if p.timer is not None),
            "batches_flushed": self._batches_flushed,
            "events_flushed": self._events_flushed,
            "immediate_sent": self._immediate_sent,
        }
