"""Server-side runtime: event batching, execution drivers and the WebSocket server."""

from flowsync.runtime.batcher import BatchTransport, EventBatcher, QueueKey
from flowsync.runtime.driver import (
    ExecutionDriver,
    NodeRunner,
    RunContext,
    RunOutcome,
    SequentialDriver,
)
from flowsync.runtime.server import WorkflowServer

__all__ = [
    "BatchTransport",
    "EventBatcher",
    "ExecutionDriver",
    "NodeRunner",
    "QueueKey",
    "RunContext",
    "RunOutcome",
    "SequentialDriver",
    "WorkflowServer",
]
