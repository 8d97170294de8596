"""
Transport Session - Client side of the workflow WebSocket.

Owns the live connection, reconnects with capped backoff after unexpected
drops, queues commands while not connected and replays them in FIFO order
once connected again. Inbound node events are validated and merged into an
ExecutionStateStore; a batch message becomes a single batch_update() call.
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from flowsync.config import SessionConfig
from flowsync.observability import set_trace_context
from flowsync.protocol.codec import (
    ProtocolError,
    decode_frame,
    encode_frame,
    envelope_to_update,
    parse_batch,
    parse_server_message,
    to_wire,
    validate_command,
)
from flowsync.protocol.schemas import (
    MessageType,
    NodeEventMessage,
    WorkflowEdge,
    WorkflowErrorMessage,
    WorkflowNode,
    WorkflowStarted,
)
from flowsync.state.store import ExecutionStateStore

logger = logging.getLogger(__name__)

# Errors that mean "could not reach the server"
CONNECT_ERRORS = (OSError, TimeoutError, WebSocketException)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class QueuedCommand:
    """A command waiting for a live connection."""

    name: str
    payload: dict[str, Any]


# Opens a connection to a URL. The result must support send(), close() and
# async iteration over inbound text frames.
Connector = Callable[[str], Awaitable[Any]]

# Called with the parsed message model for a server event
MessageHandler = Callable[[Any], None]


async def websocket_connector(url: str) -> Any:
    return await websockets.connect(url)


class TransportSession:
    """
    Reconnecting WebSocket session feeding an ExecutionStateStore.

    Example:
        store = ExecutionStateStore()
        session = TransportSession(SessionConfig(url="ws://localhost:3000/ws"), store)
        await session.connect()
        await session.execute_workflow(nodes, edges)
        ...
        await session.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        store: ExecutionStateStore | None = None,
        connector: Connector | None = None,
    ):
        self._config = config
        self._store = store if store is not None else ExecutionStateStore()
        self._connector = connector or websocket_connector
        self._session_id = uuid.uuid4().hex

        self._state = ConnectionState.DISCONNECTED
        self._queueing = True
        self._connection: Any = None
        self._queue: deque[QueuedCommand] = deque()
        self._reconnect_attempts = 0
        self._closing = False
        self._failed = False

        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._handlers: dict[str, list[MessageHandler]] = {}

    # === PROPERTIES ===

    @property
    def session_id(self) -> str:
        """Client-side id used to correlate this session's log lines."""
        return self._session_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def queueing(self) -> bool:
        """True whenever commands are being held instead of sent."""
        return self._queueing

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_failed(self) -> bool:
        """True once the reconnect attempt limit has been exhausted."""
        return self._failed

    @property
    def store(self) -> ExecutionStateStore:
        return self._store

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def queued_commands(self) -> list[QueuedCommand]:
        return list(self._queue)

    # === CONNECTION LIFECYCLE ===

    async def connect(self) -> None:
        """
        Open the connection and replay any queued commands.

        Raises:
            ConnectionError: if the connection attempt fails
        """
        if self._state is ConnectionState.CONNECTED:
            return

        # An explicit connect supersedes any background reconnection
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None

        # The background task may have installed a connection before it stopped
        if self._state is ConnectionState.CONNECTED and self._connection is not None:
            if self._queueing:
                await self._replay_queue(self._connection)
            return

        self._closing = False
        self._state = ConnectionState.CONNECTING
        try:
            connection = await self._connector(self._config.url)
        except CONNECT_ERRORS as e:
            if self._connection is None:
                self._state = ConnectionState.DISCONNECTED
            self._log(logging.ERROR, f"Connection error: {e}")
            raise ConnectionError(f"Could not connect to {self._config.url}: {e}") from e

        if self._connection is not None:
            # A concurrent connect() finished first; keep its connection
            self._log(logging.DEBUG, "Already connected; closing duplicate connection")
            await self._close_quietly(connection)
            return

        await self._on_connected(connection)

    async def _close_quietly(self, connection: Any) -> None:
        try:
            await connection.close()
        except CONNECT_ERRORS as e:
            logger.debug(f"Error while closing connection: {e}")

    async def disconnect(self) -> None:
        """Close the connection. No reconnection is scheduled."""
        self._closing = True

        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
        self._reconnect_task = None

        connection = self._connection
        self._connection = None
        self._state = ConnectionState.DISCONNECTED
        self._queueing = True

        if connection is not None:
            await self._close_quietly(connection)

        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None

        self._log(logging.INFO, "WebSocket disconnected")

    async def _on_connected(self, connection: Any) -> None:
        self._connection = connection
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self._failed = False
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        set_trace_context(session_id=self._session_id)
        self._log(logging.INFO, "WebSocket connected")
        await self._replay_queue(connection)

    async def _replay_queue(self, connection: Any) -> None:
        """Send queued commands in FIFO order, then stop queueing."""
        if self._queue:
            self._log(logging.INFO, f"Replaying {len(self._queue)} queued commands")

        while self._queue:
            if self._connection is not connection:
                return
            command = self._queue[0]
            try:
                await connection.send(encode_frame(command.name, command.payload))
            except ConnectionClosed:
                # The reader notices the drop and starts reconnecting
                return
            self._queue.popleft()
            self._log(logging.DEBUG, f"Replayed: {command.name}")

        if self._connection is connection:
            self._queueing = False

    def _on_connection_lost(self, connection: Any) -> None:
        if self._connection is not connection or self._closing:
            return

        self._connection = None
        self._state = ConnectionState.DISCONNECTED
        self._queueing = True
        self._log(logging.WARNING, "WebSocket disconnected - queueing commands until reconnect")
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Retry with a capped, doubling delay up to max_reconnect_attempts."""
        while self._reconnect_attempts < self._config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = self._config.reconnect_delay(self._reconnect_attempts)
            await asyncio.sleep(delay)
            if self._closing:
                return

            self._log(logging.INFO, f"Reconnection attempt {self._reconnect_attempts}")
            self._state = ConnectionState.CONNECTING
            try:
                connection = await self._connector(self._config.url)
            except CONNECT_ERRORS as e:
                self._state = ConnectionState.DISCONNECTED
                self._log(logging.WARNING, f"Reconnection attempt failed: {e}")
                continue

            self._reconnect_task = None
            self._log(logging.INFO, "Reconnected to WebSocket")
            await self._on_connected(connection)
            return

        self._failed = True
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_task = None
        self._log(
            logging.ERROR,
            f"Giving up after {self._reconnect_attempts} reconnection attempts; "
            f"{len(self._queue)} commands remain queued",
        )

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.debug(f"Connection closed: {e}")
        finally:
            self._on_connection_lost(connection)

    # === OUTBOUND ===

    async def send_command(self, name: str, payload: Any) -> None:
        """
        Send a command now if connected, otherwise queue it for replay.

        Raises:
            ProtocolError: if the command is malformed (it is not queued)
        """
        command = validate_command(name, payload)
        body = to_wire(command)

        if self._queueing or self._connection is None:
            self._log(logging.DEBUG, f"Queueing command: {name}")
            self._queue.append(QueuedCommand(name=name, payload=body))
            return

        try:
            await self._connection.send(encode_frame(name, body))
        except ConnectionClosed:
            self._log(logging.WARNING, f"Send failed, queueing command: {name}")
            self._queueing = True
            self._queue.append(QueuedCommand(name=name, payload=body))
            return
        self._log(logging.DEBUG, f"Sent: {name}")

    async def execute_workflow(
        self,
        nodes: list[WorkflowNode | dict[str, Any]],
        edges: list[WorkflowEdge | dict[str, Any]],
    ) -> None:
        await self.send_command(MessageType.EXECUTE, {"nodes": nodes, "edges": edges})

    async def cancel_workflow(self, workflow_id: str) -> None:
        await self.send_command(MessageType.CANCEL, {"workflowId": workflow_id})

    # === INBOUND ===

    def on(self, event: MessageType | str, handler: MessageHandler) -> None:
        """Register a handler for a server event (called after the store is updated)."""
        self._handlers.setdefault(str(event), []).append(handler)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
            message = self._apply(frame.event, frame.data)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed server message: {e}")
            return

        if message is None:
            return

        for handler in self._handlers.get(frame.event, []):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Handler error for {frame.event}: {e}")

    def _is_stale(self, event: str, workflow_id: str | None) -> bool:
        """True for a message about a run other than the one the store tracks."""
        current = self._store.workflow_id
        if workflow_id is None or current is None or workflow_id == current:
            return False
        logger.debug(f"Dropping {event} for {workflow_id}: store is tracking {current}")
        return True

    def _apply(self, event: str, data: Any) -> Any:
        """
        Validate one server message and apply it to the store.

        Returns the parsed message, or None when it belongs to a run that
        has since been superseded by a later workflow:started.
        """
        if event == MessageType.NODE_EVENTS_BATCH:
            workflow_id, envelopes = parse_batch(data)
            if self._is_stale(event, workflow_id):
                return None
            self._log(logging.DEBUG, f"Received batch of {len(envelopes)} events for {workflow_id}")
            if envelopes:
                self._store.batch_update([envelope_to_update(e) for e in envelopes])
            return envelopes

        message = parse_server_message(event, data)

        if isinstance(message, WorkflowStarted):
            self._log(logging.INFO, f"Workflow started: {message.workflow_id}")
            self._store.begin_workflow(message.workflow_id)
            return message

        if self._is_stale(event, message.workflow_id):
            return None

        if isinstance(message, NodeEventMessage):
            update = envelope_to_update(message.event)
            self._store.update(update.entity_id, update)
        elif isinstance(message, WorkflowErrorMessage):
            self._log(logging.WARNING, f"Workflow error [{message.code}]: {message.error}")
            # Errors without a workflow id are rejected commands, not run failures
            if message.workflow_id is not None:
                self._store.set_executing(False)
        elif event in (MessageType.COMPLETE, MessageType.CANCELLED):
            self._log(logging.INFO, f"Workflow {event.split(':')[-1]}: {message.workflow_id}")
            self._store.set_executing(False)

        return message

    def _log(self, level: int, message: str) -> None:
        """Session log line; demoted to DEBUG when enable_logging is off."""
        if not self._config.enable_logging:
            level = logging.DEBUG
        logger.log(level, message)
