"""
SSE session management

A GET establishes a session and holds an event stream open; JSON-RPC messages
POSTed with ``?sessionId=`` are answered on that stream as ``event: message``
frames carrying strictly increasing per-session ids.

All table mutations and event-id assignments happen without an intervening
await, so they are atomic with respect to the event loop.
"""

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from loguru import logger


HEARTBEAT_FRAME = ":\n\n"


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionLimitError(RuntimeError):
    pass


class _CloseSignal:
    pass


_CLOSE = _CloseSignal()


def format_message_frame(event_id: int, payload: Any) -> str:
    return f"id: {event_id}\nevent: message\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


@dataclass
class SSESession:
    session_id: str
    queue: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue, repr=False)
    next_event_id: int = 1
    closed: bool = False
    created_at: float = field(default_factory=time.time)

    def take_event_id(self) -> int:
        event_id = self.next_event_id
        self.next_event_id += 1
        return event_id


class SSESessionManager:
    """Owns the session table: sessionId -> SSESession"""

    def __init__(self, heartbeat_seconds: float = 15.0, max_sessions: int = 1000, message_path: str = "/mcp"):
        self.heartbeat_seconds = heartbeat_seconds
        self.max_sessions = max_sessions
        self.message_path = message_path
        self._sessions: Dict[str, SSESession] = {}

    def create(self) -> SSESession:
        if len(self._sessions) >= self.max_sessions:
            raise SessionLimitError(f"Too many open sessions ({self.max_sessions})")
        session_id = secrets.token_hex(16)
        while session_id in self._sessions:
            session_id = secrets.token_hex(16)
        session = SSESession(session_id=session_id)
        self._sessions[session_id] = session
        logger.info(f"[MCP SSE] Session opened: {session_id} (open={len(self._sessions)})")
        return session

    def get(self, session_id: Optional[str]) -> Optional[SSESession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.closed:
            return None
        return session

    def send(self, session_id: str, payload: Any) -> int:
        """Queue ``payload`` as a message frame; returns the event id used"""
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        event_id = session.take_event_id()
        session.queue.put_nowait(format_message_frame(event_id, payload))
        return event_id

    def close(self, session_id: str) -> bool:
        """Remove the session and wake its stream; only the first call has an effect"""
        session = self._sessions.pop(session_id, None)
        if session is None or session.closed:
            return False
        session.closed = True
        session.queue.put_nowait(_CLOSE)
        logger.info(f"[MCP SSE] Session closed: {session_id} (open={len(self._sessions)})")
        return True

    def close_all(self) -> int:
        closed = 0
        for session_id in list(self._sessions):
            if self.close(session_id):
                closed += 1
        return closed

    def count(self) -> int:
        return len(self._sessions)

    def endpoint_for(self, session: SSESession, message_path: Optional[str] = None) -> str:
        return f"{message_path or self.message_path}?sessionId={session.session_id}"

    async def stream(
        self,
        session: SSESession,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        message_path: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Event stream for one session.

        Emits a comment frame, the ``endpoint`` event, then queued message
        frames with heartbeats in between. The session is closed exactly once
        when the generator finishes, is cancelled or is closed by the server.
        """
        try:
            yield HEARTBEAT_FRAME
            yield f"event: endpoint\ndata: {self.endpoint_for(session, message_path)}\n\n"
            while not session.closed:
                try:
                    item = await asyncio.wait_for(session.queue.get(), timeout=self.heartbeat_seconds)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.debug(f"[MCP SSE] Client went away: {session.session_id}")
                        break
                    yield HEARTBEAT_FRAME
                    continue
                if item is _CLOSE:
                    break
                yield item
        finally:
            self.close(session.session_id)


_session_manager: Optional[SSESessionManager] = None


def get_session_manager() -> SSESessionManager:
    global _session_manager
    if _session_manager is None:
        from .config import get_config
        config = get_config()
        _session_manager = SSESessionManager(
            heartbeat_seconds=config.sse_heartbeat_seconds,
            max_sessions=config.sse_max_sessions,
        )
    return _session_manager


def reset_session_manager():
    global _session_manager
    if _session_manager is not None:
        _session_manager.close_all()
    _session_manager = None
