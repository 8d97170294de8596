"""Wire protocol shared by the workflow server and clients."""

from flowsync.protocol.codec import (
    ProtocolError,
    build_batch,
    decode_frame,
    encode_frame,
    envelope_to_update,
    format_validation_error,
    parse_batch,
    parse_server_message,
    to_wire,
    validate_cancel,
    validate_command,
    validate_envelope,
    validate_execute,
)
from flowsync.protocol.schemas import (
    CancelWorkflowCommand,
    ErrorCode,
    EventPayload,
    EventType,
    ExecuteWorkflowCommand,
    Frame,
    MessageType,
    NodeEventEnvelope,
    NodeEventMessage,
    NodeEventsBatch,
    NodeType,
    RunStatus,
    WorkflowCancelled,
    WorkflowComplete,
    WorkflowEdge,
    WorkflowErrorMessage,
    WorkflowNode,
    WorkflowStarted,
)

__all__ = [
    "CancelWorkflowCommand",
    "ErrorCode",
    "EventPayload",
    "EventType",
    "ExecuteWorkflowCommand",
    "Frame",
    "MessageType",
    "NodeEventEnvelope",
    "NodeEventMessage",
    "NodeEventsBatch",
    "NodeType",
    "ProtocolError",
    "RunStatus",
    "WorkflowCancelled",
    "WorkflowComplete",
    "WorkflowEdge",
    "WorkflowErrorMessage",
    "WorkflowNode",
    "WorkflowStarted",
    "build_batch",
    "decode_frame",
    "encode_frame",
    "envelope_to_update",
    "format_validation_error",
    "parse_batch",
    "parse_server_message",
    "to_wire",
    "validate_cancel",
    "validate_command",
    "validate_envelope",
    "validate_execute",
]
