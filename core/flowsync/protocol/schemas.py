"""
Wire Schemas - Message shapes shared by the workflow server and clients.

Every frame on the WebSocket is a JSON object ``{"event": <name>, "data": {...}}``.
Field names on the wire are camelCase; the models expose snake_case
attributes and accept either spelling on input.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    StrictInt,
    StrictStr,
    model_validator,
)

from flowsync.state.store import EntityStatus


class MessageType(StrEnum):
    """Frame event names."""

    # Client -> Server commands
    EXECUTE = "workflow:execute"
    CANCEL = "workflow:cancel"

    # Server -> Client events
    STARTED = "workflow:started"
    NODE_EVENT = "workflow:node-event"
    NODE_EVENTS_BATCH = "workflow:node-events-batch"
    COMPLETE = "workflow:complete"
    ERROR = "workflow:error"
    CANCELLED = "workflow:cancelled"


class ErrorCode(StrEnum):
    """Stable machine codes carried by workflow:error messages."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    WORKFLOW_ERROR = "WORKFLOW_ERROR"


class NodeType(StrEnum):
    START = "start"
    API = "api"
    RESULT = "result"


class EventType(StrEnum):
    """Node lifecycle event kinds."""

    START = "start"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class RunStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class WireModel(BaseModel):
    """Base for wire models: accept both field names and camelCase aliases."""

    model_config = {"populate_by_name": True}


# ============ Client -> Server ============


class WorkflowNode(WireModel):
    id: StrictStr
    type: NodeType
    label: StrictStr | None = None
    data: dict[str, Any] | None = None


class WorkflowEdge(WireModel):
    id: StrictStr
    source: StrictStr
    target: StrictStr


class ExecuteWorkflowCommand(WireModel):
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]


class CancelWorkflowCommand(WireModel):
    workflow_id: StrictStr = Field(alias="workflowId")


# ============ Server -> Client ============


class EventPayload(WireModel):
    """State fields carried by a node event."""

    status: EntityStatus | None = None
    start_time: float | None = Field(default=None, alias="startTime")
    end_time: float | None = Field(default=None, alias="endTime")
    logs: list[StrictStr] | None = None
    error: StrictStr | None = None
    error_stack: StrictStr | None = Field(default=None, alias="errorStack")
    result: Any = None
    progress: float | None = Field(default=None, ge=0, le=100)


class NodeEventEnvelope(WireModel):
    """One lifecycle event for one node."""

    entity_id: StrictStr = Field(
        validation_alias=AliasChoices("nodeId", "entityId", "entity_id"),
        serialization_alias="nodeId",
    )
    event_type: EventType = Field(alias="eventType")
    timestamp: StrictInt = Field(gt=0)
    payload: EventPayload | None = None


class WorkflowStarted(WireModel):
    workflow_id: StrictStr = Field(alias="workflowId")


class NodeEventMessage(WireModel):
    """Unbatched single event (immediate path)."""

    workflow_id: StrictStr = Field(alias="workflowId")
    event: NodeEventEnvelope
    count: Literal[1] = 1


class NodeEventsBatch(WireModel):
    """
    Batch of node events for one workflow.

    ``events`` is left loosely typed so that one malformed envelope can be
    dropped on its own by the codec instead of rejecting the whole frame.
    """

    workflow_id: StrictStr = Field(alias="workflowId")
    events: list[Any]
    count: StrictInt = Field(ge=1)

    @model_validator(mode="after")
    def _count_matches_events(self) -> "NodeEventsBatch":
        if self.count != len(self.events):
            raise ValueError(f"count {self.count} does not match {len(self.events)} events")
        return self


class WorkflowComplete(WireModel):
    workflow_id: StrictStr = Field(alias="workflowId")
    total_time: float = Field(alias="totalTime", gt=0)
    status: RunStatus
    failed_nodes: list[StrictStr] | None = Field(default=None, alias="failedNodes")


class WorkflowErrorMessage(WireModel):
    workflow_id: StrictStr | None = Field(default=None, alias="workflowId")
    code: StrictStr
    error: StrictStr


class WorkflowCancelled(WireModel):
    workflow_id: StrictStr = Field(alias="workflowId")


class Frame(BaseModel):
    """Outer framing of every WebSocket message."""

    event: StrictStr
    data: Any = None


SERVER_MESSAGE_MODELS: dict[str, type[WireModel]] = {
    MessageType.STARTED: WorkflowStarted,
    MessageType.NODE_EVENT: NodeEventMessage,
    MessageType.NODE_EVENTS_BATCH: NodeEventsBatch,
    MessageType.COMPLETE: WorkflowComplete,
    MessageType.ERROR: WorkflowErrorMessage,
    MessageType.CANCELLED: WorkflowCancelled,
}
