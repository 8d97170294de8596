"""
Execution drivers - the boundary between the server and whatever actually
runs workflow nodes.

A driver receives a RunContext, reports node lifecycle events through it,
and returns a RunOutcome. The server owns batching, cleanup and the
terminal complete/error message; drivers only describe node progress.
"""

import logging
import traceback
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowsync.protocol.schemas import (
    EventType,
    NodeEventEnvelope,
    RunStatus,
    WorkflowEdge,
    WorkflowNode,
)
from flowsync.runtime.batcher import EventBatcher, QueueKey
from flowsync.state.store import EntityStatus, now_ms

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Result of one workflow run."""

    status: RunStatus = RunStatus.SUCCESS
    failed_nodes: list[str] = field(default_factory=list)


@dataclass
class RunContext:
    """Everything a driver needs for one run."""

    session_id: str
    workflow_id: str
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    batcher: EventBatcher

    @property
    def key(self) -> QueueKey:
        return QueueKey(self.session_id, self.workflow_id)

    def emit(self, event: NodeEventEnvelope | dict[str, Any]) -> None:
        """Report a node event through the batched path."""
        self.batcher.emit(self.key, event)

    def emit_immediate(self, event: NodeEventEnvelope | dict[str, Any]) -> None:
        """Report a node event unbatched. Do not mix with emit() for ordering-sensitive events."""
        self.batcher.emit_immediate(self.key, event)


class ExecutionDriver(ABC):
    """Runs the nodes of a workflow."""

    @abstractmethod
    async def run(self, ctx: RunContext) -> RunOutcome:
        """Execute the workflow, reporting node events through ctx."""


# Executes one node and returns its result; raising marks the node as failed
NodeRunner = Callable[[WorkflowNode, RunContext], Awaitable[Any]]


async def complete_immediately(node: WorkflowNode, ctx: RunContext) -> Any:
    """Default node runner: succeed without doing any work."""
    return {"message": f"{node.label or node.type} executed successfully"}


class SequentialDriver(ExecutionDriver):
    """
    Runs nodes one after another in declaration order.

    Each node gets a ``start`` event before its runner is awaited and a
    ``complete`` or ``error`` event afterwards. A failing node does not stop
    the run; it is listed in the outcome's failed_nodes.
    """

    def __init__(self, node_runner: NodeRunner | None = None):
        self._node_runner = node_runner or complete_immediately

    async def run(self, ctx: RunContext) -> RunOutcome:
        failed: list[str] = []

        for node in ctx.nodes:
            start_time = now_ms()
            ctx.emit(
                NodeEventEnvelope(
                    entity_id=node.id,
                    event_type=EventType.START,
                    timestamp=start_time,
                    payload={"status": EntityStatus.RUNNING, "start_time": start_time},
                )
            )

            try:
                result = await self._node_runner(node, ctx)
            except Exception as e:
                end_time = now_ms()
                logger.warning(f"Node {node.id} failed: {e}", extra={"entity_id": node.id})
                failed.append(node.id)
                ctx.emit(
                    NodeEventEnvelope(
                        entity_id=node.id,
                        event_type=EventType.ERROR,
                        timestamp=end_time,
                        payload={
                            "status": EntityStatus.ERROR,
                            "start_time": start_time,
                            "end_time": end_time,
                            "error": str(e) or type(e).__name__,
                            "error_stack": traceback.format_exc(),
                        },
                    )
                )
                continue

            end_time = now_ms()
            ctx.emit(
                NodeEventEnvelope(
                    entity_id=node.id,
                    event_type=EventType.COMPLETE,
                    timestamp=end_time,
                    payload={
                        "status": EntityStatus.COMPLETED,
                        "start_time": start_time,
                        "end_time": end_time,
                        "result": result,
                    },
                )
            )

        status = RunStatus.FAILED if failed else RunStatus.SUCCESS
        return RunOutcome(status=status, failed_nodes=failed)
