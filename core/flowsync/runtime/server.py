"""
Workflow Server - WebSocket endpoint that runs workflows and streams their
node events back to the requesting client.

Uses aiohttp for an embedded HTTP/WebSocket server inside the running
asyncio loop. Each connection is a session; every workflow it starts is
batched under its own QueueKey so concurrent runs never share a queue.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSMsgType, web

from flowsync.config import BatcherConfig, ServerConfig
from flowsync.observability import set_trace_context
from flowsync.protocol.codec import (
    ProtocolError,
    decode_frame,
    encode_frame,
    validate_cancel,
    validate_execute,
)
from flowsync.protocol.schemas import (
    ErrorCode,
    ExecuteWorkflowCommand,
    MessageType,
)
from flowsync.runtime.batcher import EventBatcher, QueueKey
from flowsync.runtime.driver import ExecutionDriver, RunContext, SequentialDriver
from flowsync.state.store import now_ms

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    """One connected client."""

    session_id: str
    ws: web.WebSocketResponse
    outbox: asyncio.Queue[str | None] = field(default_factory=asyncio.Queue)
    runs: dict[str, asyncio.Task] = field(default_factory=dict)
    writer: asyncio.Task | None = None
    writable: bool = True  # False once a socket write has failed


class WorkflowServer:
    """
    Embedded WebSocket server for workflow execution.

    The server's job is: validate commands -> start/cancel runs -> deliver
    batched node events and terminal messages to the owning session.

    Lifecycle:
        server = WorkflowServer(ServerConfig(port=3000))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        batcher_config: BatcherConfig | None = None,
        driver: ExecutionDriver | None = None,
    ):
        self._config = config or ServerConfig()
        self._driver = driver or SequentialDriver()
        self._batcher = EventBatcher(self, batcher_config)
        self._sessions: dict[str, _Session] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def batcher(self) -> EventBatcher:
        return self._batcher

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = web.Application()
        self._app.router.add_get(self._config.path, self._handle_ws)
        self._app.router.add_get("/health", self._handle_health)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await self._site.start()
        logger.info(
            f"Workflow server started on {self._config.host}:{self.port}{self._config.path}"
        )

    async def stop(self) -> None:
        """Stop the server, cancelling every active run."""
        for session in list(self._sessions.values()):
            await self._close_session(session)
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Workflow server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    @property
    def active_runs(self) -> int:
        return sum(len(s.runs) for s in self._sessions.values())

    # === BatchTransport ===

    def send(self, session_id: str, message_type: MessageType, message: Any) -> None:
        """Queue a message for a session's writer task."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(f"Dropping {message_type} for closed session {session_id}")
            return
        if not session.writable:
            logger.debug(f"Dropping {message_type} for unwritable session {session_id}")
            return
        session.outbox.put_nowait(encode_frame(message_type, message))

    # === HTTP handlers ===

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "sessions": len(self._sessions),
                "active_runs": self.active_runs,
            }
        )

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        session = _Session(session_id=uuid.uuid4().hex, ws=ws)
        self._sessions[session.session_id] = session
        session.writer = asyncio.create_task(self._write_loop(session))
        set_trace_context(session_id=session.session_id)
        logger.info(f"Client connected: {session.session_id}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._dispatch(session, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._dispatch(session, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"WebSocket error: {ws.exception()}")
        finally:
            await self._close_session(session)
            logger.info(f"Client disconnected: {session.session_id}")

        return ws

    async def _write_loop(self, session: _Session) -> None:
        """Drain the session outbox onto the socket in FIFO order."""
        while True:
            frame = await session.outbox.get()
            if frame is None:
                return
            try:
                await session.ws.send_str(frame)
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Write failed for session {session.session_id}: {e}")
                # Nothing will drain the outbox any more
                session.writable = False
                while not session.outbox.empty():
                    session.outbox.get_nowait()
                return

    async def _close_session(self, session: _Session) -> None:
        if self._sessions.get(session.session_id) is not session:
            return

        runs = list(session.runs.values())
        for task in runs:
            task.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
        self._batcher.cleanup_session(session.session_id)

        del self._sessions[session.session_id]
        session.outbox.put_nowait(None)
        if session.writer is not None:
            await asyncio.gather(session.writer, return_exceptions=True)
        if not session.ws.closed:
            await session.ws.close()

    # === Command handling ===

    async def _dispatch(self, session: _Session, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            self._batcher.emit_workflow_error(session.session_id, None, e.code, str(e))
            return

        if frame.event == MessageType.EXECUTE:
            self._handle_execute(session, frame.data)
        elif frame.event == MessageType.CANCEL:
            await self._handle_cancel(session, frame.data)
        else:
            self._batcher.emit_workflow_error(
                session.session_id,
                None,
                ErrorCode.INVALID_REQUEST,
                f"Unknown command: {frame.event}",
            )

    def _handle_execute(self, session: _Session, data: Any) -> None:
        try:
            command = validate_execute(data)
        except ProtocolError as e:
            logger.warning(f"Rejected execute request: {e}")
            self._batcher.emit_workflow_error(session.session_id, None, e.code, str(e))
            return

        workflow_id = self._new_workflow_id(session)
        logger.info(f"Starting {workflow_id} with {len(command.nodes)} nodes")

        self._batcher.emit_workflow_started(session.session_id, workflow_id)
        session.runs[workflow_id] = asyncio.create_task(
            self._run_workflow(session, workflow_id, command)
        )

    async def _handle_cancel(self, session: _Session, data: Any) -> None:
        try:
            command = validate_cancel(data)
        except ProtocolError as e:
            self._batcher.emit_workflow_error(session.session_id, None, e.code, str(e))
            return

        workflow_id = command.workflow_id
        logger.info(f"Cancel requested for {workflow_id}")

        task = session.runs.get(workflow_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._batcher.emit_workflow_cancelled(session.session_id, workflow_id)

    def _new_workflow_id(self, session: _Session) -> str:
        workflow_id = f"workflow-{now_ms()}"
        suffix = 1
        candidate = workflow_id
        while candidate in session.runs:
            suffix += 1
            candidate = f"{workflow_id}-{suffix}"
        return candidate

    async def _run_workflow(
        self,
        session: _Session,
        workflow_id: str,
        command: ExecuteWorkflowCommand,
    ) -> None:
        set_trace_context(workflow_id=workflow_id)
        key = QueueKey(session.session_id, workflow_id)
        ctx = RunContext(
            session_id=session.session_id,
            workflow_id=workflow_id,
            nodes=command.nodes,
            edges=command.edges,
            batcher=self._batcher,
        )
        started = time.monotonic()

        try:
            outcome = await self._driver.run(ctx)
        except asyncio.CancelledError:
            self._batcher.cleanup(key)
            logger.info(f"{workflow_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"{workflow_id} execution error")
            self._batcher.emit_workflow_error(
                session.session_id,
                workflow_id,
                ErrorCode.EXECUTION_ERROR,
                str(e) or "Unknown error",
            )
        else:
            total_time = max((time.monotonic() - started) * 1000, 0.001)
            self._batcher.emit_workflow_complete(
                session.session_id,
                workflow_id,
                total_time=total_time,
                status=outcome.status,
                failed_nodes=outcome.failed_nodes,
            )
            logger.info(
                f"{workflow_id} finished: {outcome.status}",
                extra={"latency_ms": round(total_time, 3)},
            )
        finally:
            session.runs.pop(workflow_id, None)
