"""
Protocol codec - framing and validation of wire messages.

Stateless functions used by both sides:
- outbound commands are validated before they are queued or sent
- inbound envelopes are validated before they reach the state store;
  a malformed envelope inside a batch is dropped on its own
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from flowsync.protocol.schemas import (
    SERVER_MESSAGE_MODELS,
    CancelWorkflowCommand,
    ErrorCode,
    EventPayload,
    ExecuteWorkflowCommand,
    Frame,
    MessageType,
    NodeEventEnvelope,
    NodeEventsBatch,
)
from flowsync.state.store import EntityStateUpdate, EntityStatus

logger = logging.getLogger(__name__)


class ProtocolError(ValueError):
    """A message failed validation. ``code`` is reported back to the peer."""

    def __init__(self, message: str, code: ErrorCode | str = ErrorCode.VALIDATION_ERROR):
        super().__init__(message)
        self.code = str(code)


def format_validation_error(exc: ValidationError) -> str:
    """Human-readable summary built from the first validation issue."""
    errors = exc.errors()
    if not errors:
        return "Validation error: Unknown"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Unknown")
    if location:
        return f"Validation error: {location}: {message}"
    return f"Validation error: {message}"


# === FRAMING ===


def to_wire(model: BaseModel) -> dict[str, Any]:
    """Dump a wire model using camelCase names, omitting unset optionals."""
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def encode_frame(event: MessageType | str, data: BaseModel | Mapping[str, Any]) -> str:
    """Serialize one frame to JSON text."""
    if isinstance(data, BaseModel):
        body = to_wire(data)
    else:
        body = dict(data)
    return json.dumps({"event": str(event), "data": body})


def decode_frame(raw: str | bytes) -> Frame:
    """Parse JSON text into a Frame. Raises ProtocolError on malformed input."""
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed frame: {e}", ErrorCode.INVALID_REQUEST) from e

    if not isinstance(obj, dict):
        raise ProtocolError("Malformed frame: expected a JSON object", ErrorCode.INVALID_REQUEST)

    try:
        return Frame.model_validate(obj)
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e), ErrorCode.INVALID_REQUEST) from e


# === COMMANDS (client -> server) ===


def validate_execute(payload: Any) -> ExecuteWorkflowCommand:
    """Validate a workflow:execute body. Raises ProtocolError (VALIDATION_ERROR)."""
    if isinstance(payload, ExecuteWorkflowCommand):
        return payload
    try:
        return ExecuteWorkflowCommand.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e), ErrorCode.VALIDATION_ERROR) from e


def validate_cancel(payload: Any) -> CancelWorkflowCommand:
    """Validate a workflow:cancel body. Raises ProtocolError (INVALID_REQUEST)."""
    if isinstance(payload, CancelWorkflowCommand):
        return payload
    try:
        return CancelWorkflowCommand.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError("Invalid cancel request", ErrorCode.INVALID_REQUEST) from e


def validate_command(name: str, payload: Any) -> BaseModel:
    """
    Validate an outbound/inbound command payload by command name.

    Returns:
        ExecuteWorkflowCommand or CancelWorkflowCommand

    Raises:
        ProtocolError: VALIDATION_ERROR for execute, INVALID_REQUEST for
            cancel payloads and unknown command names
    """
    if name == MessageType.EXECUTE:
        return validate_execute(payload)
    if name == MessageType.CANCEL:
        return validate_cancel(payload)
    raise ProtocolError(f"Unknown command: {name}", ErrorCode.INVALID_REQUEST)


# === EVENTS (server -> client) ===


def validate_envelope(data: Any) -> NodeEventEnvelope:
    """Validate a single node event envelope."""
    if isinstance(data, NodeEventEnvelope):
        return data
    try:
        return NodeEventEnvelope.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e), ErrorCode.VALIDATION_ERROR) from e


def build_batch(workflow_id: str, events: list[NodeEventEnvelope]) -> NodeEventsBatch:
    """Assemble an outbound batch; raises ProtocolError if ``events`` is empty."""
    try:
        return NodeEventsBatch(
            workflow_id=workflow_id,
            events=[to_wire(e) for e in events],
            count=len(events),
        )
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e)) from e


def parse_batch(data: Any) -> tuple[str, list[NodeEventEnvelope]]:
    """
    Validate a node-events-batch body.

    Returns:
        (workflow_id, valid envelopes in arrival order). Malformed envelopes
        are logged and skipped.

    Raises:
        ProtocolError: if the batch frame itself is malformed
    """
    try:
        batch = NodeEventsBatch.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e)) from e

    envelopes: list[NodeEventEnvelope] = []
    for index, raw in enumerate(batch.events):
        try:
            envelopes.append(validate_envelope(raw))
        except ProtocolError as e:
            logger.warning(f"Dropping malformed event #{index} in batch for {batch.workflow_id}: {e}")
    return batch.workflow_id, envelopes


def parse_server_message(event: str, data: Any) -> BaseModel:
    """Validate a non-batch server message body against its schema."""
    model = SERVER_MESSAGE_MODELS.get(event)
    if model is None:
        raise ProtocolError(f"Unknown server event: {event}", ErrorCode.INVALID_REQUEST)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(format_validation_error(e)) from e


def envelope_to_update(envelope: NodeEventEnvelope) -> EntityStateUpdate:
    """
    Convert an event envelope into a state patch.

    A payload without status parses as idle and one without logs as an
    empty log list; the envelope timestamp becomes the state timestamp.
    """
    payload = envelope.payload or EventPayload()
    return EntityStateUpdate(
        entity_id=envelope.entity_id,
        status=payload.status or EntityStatus.IDLE,
        timestamp=envelope.timestamp,
        start_time=payload.start_time,
        end_time=payload.end_time,
        logs=list(payload.logs) if payload.logs is not None else [],
        error=payload.error,
        error_stack=payload.error_stack,
        result=payload.result,
        progress=payload.progress,
    )
