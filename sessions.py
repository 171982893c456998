"""Session registry for the streamable HTTP MCP transport.

Every MCP client connection gets its own transport, identified by the
``mcp-session-id`` header. The registry creates a transport for each
initialize request, routes later requests to the transport that owns the
session, and closes sessions that go idle, overflow the session cap, or are
still open at shutdown.

Session lifecycle: initializing -> active -> closing -> closed.
"""

import contextlib
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import anyio
from anyio.abc import TaskGroup
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

SESSION_IDLE_TIMEOUT_SECONDS = 30 * 60
SESSION_SWEEP_INTERVAL_SECONDS = 5 * 60
MAX_SESSIONS = 1000
SHUTDOWN_TIMEOUT_SECONDS = 5

# Session ids are truncated to this many characters in logs
SESSION_ID_DISPLAY_LENGTH = 8


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class McpSession:
    session_id: str
    transport: Any
    created_at: float
    last_activity: float
    state: SessionState = SessionState.INITIALIZING
    cancel_scope: Optional[anyio.CancelScope] = field(default=None, repr=False)

    @property
    def display_id(self) -> str:
        return self.session_id[:SESSION_ID_DISPLAY_LENGTH]


def default_transport_factory(session_id: str) -> StreamableHTTPServerTransport:
    return StreamableHTTPServerTransport(
        mcp_session_id=session_id,
        is_json_response_enabled=False,
        event_store=None,
    )


def jsonrpc_error_response(status_code: int, code: int, message: str) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": None, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def is_initialize_request(body: bytes) -> bool:
    """True if the body is a JSON-RPC initialize request (or a batch containing one)."""
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    messages = payload if isinstance(payload, list) else [payload]
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


class SessionRegistry:
    """Maps MCP session ids to running transports.

    ``server_factory`` returns the low-level MCP server that is run over each
    session's streams. ``transport_factory`` builds the transport for a new
    session id. The registry must be running (``async with registry.run()``)
    before it can serve requests.
    """

    def __init__(
        self,
        server_factory: Callable[[], Any],
        transport_factory: Callable[[str], Any] = default_transport_factory,
        idle_timeout: float = SESSION_IDLE_TIMEOUT_SECONDS,
        sweep_interval: Optional[float] = SESSION_SWEEP_INTERVAL_SECONDS,
        max_sessions: int = MAX_SESSIONS,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.server_factory = server_factory
        self.transport_factory = transport_factory
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.max_sessions = max_sessions
        self.shutdown_timeout = shutdown_timeout
        self._clock = clock

        # Ordered by last activity, least recent first
        self._sessions: "OrderedDict[str, McpSession]" = OrderedDict()
        self._task_group: Optional[TaskGroup] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> Optional[McpSession]:
        return self._sessions.get(session_id)

    @contextlib.asynccontextmanager
    async def run(self):
        """Run the registry: owns the session tasks and the idle sweep."""
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry is already running")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            if self.sweep_interval:
                tg.start_soon(self._sweep_loop)
            try:
                yield self
            finally:
                logger.info(f"[SHUTDOWN] Closing {len(self._sessions)} MCP session(s)")
                with anyio.move_on_after(self.shutdown_timeout, shield=True) as scope:
                    await self.close_all()
                if scope.cancelled_caught:
                    logger.warning("[SHUTDOWN] Timed out closing sessions; cancelling remaining tasks")
                tg.cancel_scope.cancel()
                self._task_group = None

    # ============== Request Dispatch ==============

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("SessionRegistry is not running")

        response_started = False

        async def tracked_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._dispatch(scope, receive, tracked_send)
        except Exception:
            logger.exception("[SESSION] Error handling MCP request")
            if not response_started:
                response = jsonrpc_error_response(500, INTERNAL_ERROR, "Internal server error")
                await response(scope, receive, send)

    async def _dispatch(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "POST" and not session_id:
            body = await request.body()
            if not is_initialize_request(body):
                response = jsonrpc_error_response(400, INVALID_REQUEST, "Bad Request: No valid session ID provided")
                await response(scope, receive, send)
                return
            await self._initialize_session(scope, _replay_body(body, receive), send)
            return

        if not session_id:
            response = jsonrpc_error_response(400, INVALID_REQUEST, "Bad Request: Missing session ID")
            await response(scope, receive, send)
            return

        session = self._lookup(session_id)
        if session is None:
            response = jsonrpc_error_response(404, INVALID_REQUEST, "Session not found")
            await response(scope, receive, send)
            return

        await session.transport.handle_request(scope, receive, send)

        if request.method == "DELETE" and session.transport.is_terminated:
            logger.info(f"[SESSION] Session {session.display_id} terminated by client")
            await self.close_session(session.session_id)

    def _lookup(self, session_id: str) -> Optional[McpSession]:
        session = self._sessions.get(session_id)
        if session is None or session.state != SessionState.ACTIVE:
            return None
        session.last_activity = self._clock()
        self._sessions.move_to_end(session_id)
        return session

    # ============== Session Lifecycle ==============

    async def _initialize_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Run an initialize request on a fresh transport.

        The session is registered only if the transport answers with a 2xx
        status; otherwise it is closed and never becomes reachable.
        """
        session = await self._start_session()
        status = None

        async def status_send(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, status_send)
        except Exception:
            await self._close(session)
            raise

        if status is None or not 200 <= status < 300 or session.state != SessionState.INITIALIZING:
            logger.info(f"[SESSION] Initialize rejected by transport (status {status}); discarding {session.display_id}")
            await self._close(session)
            return

        await self._register(session)

    async def _start_session(self) -> McpSession:
        now = self._clock()
        session_id = uuid.uuid4().hex
        session = McpSession(
            session_id=session_id,
            transport=self.transport_factory(session_id),
            created_at=now,
            last_activity=now,
        )
        await self._task_group.start(self._run_session, session)
        return session

    async def _register(self, session: McpSession) -> None:
        while len(self._sessions) >= self.max_sessions:
            _, oldest = self._sessions.popitem(last=False)
            logger.warning(f"[SESSION] Session cap reached; evicting {oldest.display_id}")
            await self._close(oldest)

        session.state = SessionState.ACTIVE
        session.last_activity = self._clock()
        self._sessions[session.session_id] = session
        logger.info(f"[SESSION] Session {session.display_id} initialized ({len(self._sessions)} active)")

    async def _run_session(self, session: McpSession, *, task_status=anyio.TASK_STATUS_IGNORED):
        server = self.server_factory()
        with anyio.CancelScope() as cancel_scope:
            session.cancel_scope = cancel_scope
            try:
                async with session.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await server.run(read_stream, write_stream, server.create_initialization_options())
            except Exception:
                logger.exception(f"[SESSION] Session {session.display_id} crashed")
            finally:
                self._on_transport_closed(session)

    def _on_transport_closed(self, session: McpSession) -> None:
        if self._sessions.get(session.session_id) is session:
            self._remove(session)
            logger.info(f"[SESSION] Session {session.display_id} closed by transport")
        session.state = SessionState.CLOSED

    def _remove(self, session: McpSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        session.state = SessionState.CLOSED

    async def _close(self, session: McpSession) -> None:
        if session.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        session.state = SessionState.CLOSING
        try:
            await session.transport.terminate()
        except Exception:
            logger.exception(f"[SESSION] Failed to terminate session {session.display_id}")
        finally:
            if session.cancel_scope is not None:
                session.cancel_scope.cancel()
            session.state = SessionState.CLOSED

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await self._close(session)
        logger.info(f"[SESSION] Session {session.display_id} closed")
        return True

    async def close_all(self) -> None:
        while self._sessions:
            _, session = self._sessions.popitem(last=False)
            await self._close(session)

    async def evict_idle_sessions(self) -> int:
        """Close every session idle for longer than ``idle_timeout``."""
        now = self._clock()
        idle = [s for s in self._sessions.values() if now - s.last_activity > self.idle_timeout]
        for session in idle:
            self._sessions.pop(session.session_id, None)
            logger.info(f"[SESSION] Evicting idle session {session.display_id}")
            await self._close(session)
        return len(idle)

    async def _sweep_loop(self) -> None:
        while True:
            await anyio.sleep(self.sweep_interval)
            try:
                await self.evict_idle_sessions()
            except Exception:
                logger.exception("[SESSION] Idle sweep failed")


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """A receive callable that yields an already-read body once, then defers."""
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay
