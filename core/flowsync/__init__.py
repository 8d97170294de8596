"""
flowsync - real-time workflow execution event streaming.

Server side batches per-node lifecycle events for each (session, workflow)
pair; client side keeps a reconnecting transport session and merges the
batches into an in-memory per-node state store.
"""

from flowsync.client.session import ConnectionState, TransportSession
from flowsync.config import (
    MAX_LOGS_PER_ENTITY,
    BatcherConfig,
    ServerConfig,
    SessionConfig,
)
from flowsync.runtime.batcher import EventBatcher, QueueKey
from flowsync.runtime.server import WorkflowServer
from flowsync.state.store import (
    EntityExecutionState,
    EntityStateUpdate,
    EntityStatus,
    ExecutionStateStore,
)

__all__ = [
    "MAX_LOGS_PER_ENTITY",
    "BatcherConfig",
    "ConnectionState",
    "EntityExecutionState",
    "EntityStateUpdate",
    "EntityStatus",
    "EventBatcher",
    "ExecutionStateStore",
    "QueueKey",
    "ServerConfig",
    "SessionConfig",
    "TransportSession",
    "WorkflowServer",
]
