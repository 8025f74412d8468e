from __future__ import annotations

from typing import Callable, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


DEFAULT_EXPOSE_HEADERS = ("mcp-session-id", "MCP-Protocol-Version")


class CORSMiddleware(BaseHTTPMiddleware):
    """CORS headers on every response; preflight ``OPTIONS`` is answered with 204 before anything else runs."""

    def __init__(
        self,
        app,
        *,
        allow_origins: Iterable[str] = ("*",),
        allow_methods: Iterable[str] = ("GET", "POST", "OPTIONS", "DELETE"),
        allow_headers: Iterable[str] = ("Content-Type", "Authorization", "mcp-session-id"),
        expose_headers: Iterable[str] = DEFAULT_EXPOSE_HEADERS,
        max_age: int = 86400,
    ) -> None:
        super().__init__(app)
        self.allow_origins = list(allow_origins)
        self.allow_all = "*" in self.allow_origins
        self.allow_methods = ", ".join(allow_methods)
        self.allow_headers = ", ".join(allow_headers)
        self.expose_headers = ", ".join(expose_headers)
        self.max_age = str(max_age)

    def allowed_origin(self, origin: Optional[str]) -> Optional[str]:
        if self.allow_all:
            return "*"
        if origin and origin in self.allow_origins:
            return origin
        return None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "OPTIONS":
            response = Response(status_code=204)
            response.headers["Access-Control-Max-Age"] = self.max_age
        else:
            response = await call_next(request)

        origin = self.allowed_origin(request.headers.get("origin"))
        if origin is not None:
            response.headers["Access-Control-Allow-Origin"] = origin
            if origin != "*":
                response.headers["Vary"] = "Origin"
        response.headers["Access-Control-Allow-Methods"] = self.allow_methods
        response.headers["Access-Control-Allow-Headers"] = self.allow_headers
        response.headers["Access-Control-Expose-Headers"] = self.expose_headers
        return response
