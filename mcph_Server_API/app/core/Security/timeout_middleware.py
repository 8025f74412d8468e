"""
Per-request deadline.

Pure ASGI so it can see whether the response has started: a request that has
not sent its headers when the deadline passes gets a 408 JSON-RPC error and
the handler is abandoned; anything it sends afterwards is dropped. Responses
that already started (SSE streams) run to completion.
"""

import asyncio
import json
from typing import Iterable, Mapping, Optional

from loguru import logger
from starlette.types import ASGIApp, Message, Receive, Scope, Send


TIMEOUT_MESSAGE = "Request timeout - operation took too long to complete"


def timeout_body(timeout_ms: int, request_id: str) -> bytes:
    return json.dumps({
        "jsonrpc": "2.0",
        "error": {
            "code": -32603,
            "message": TIMEOUT_MESSAGE,
            "data": {"timeoutMs": timeout_ms, "requestId": request_id},
        },
        "id": None,
    }).encode("utf-8")


class _ResponseGuard:
    def __init__(self, send: Send):
        self._send = send
        self.started = False
        self.abandoned = False

    async def send(self, message: Message) -> None:
        if self.abandoned:
            return
        if message["type"] == "http.response.start":
            self.started = True
        await self._send(message)


class TimeoutMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        timeout_ms: int = 30000,
        exempt_paths: Iterable[str] = (),
        path_timeouts: Optional[Mapping[str, int]] = None,
    ):
        self.app = app
        self.timeout_ms = timeout_ms
        self.exempt_paths = set(exempt_paths)
        self.path_timeouts = dict(path_timeouts or {})

    @staticmethod
    def _request_id(scope: Scope) -> str:
        for name, value in scope.get("headers") or []:
            if name == b"x-request-id":
                return value.decode("latin-1")
        state = scope.get("state") or {}
        return str(state.get("request_id") or "unknown")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        timeout_ms = self.path_timeouts.get(scope.get("path"), self.timeout_ms)
        guard = _ResponseGuard(send)
        task = asyncio.create_task(self.app(scope, receive, guard.send))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            task.result()
            return

        if guard.started:
            await task
            return

        guard.abandoned = True
        request_id = self._request_id(scope)
        logger.warning(
            f"Request timed out after {timeout_ms}ms: {scope.get('method')} {scope.get('path')} "
            f"(request_id={request_id})"
        )
        await self._send_timeout(send, timeout_ms, request_id)

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned handler raised after timeout: {e}")

    async def _send_timeout(self, send: Send, timeout_ms: int, request_id: str) -> None:
        body = timeout_body(timeout_ms, request_id)
        await send({
            "type": "http.response.start",
            "status": 408,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode("latin-1")),
            ],
        })
        await send({"type": "http.response.body", "body": body})
