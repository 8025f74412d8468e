"""
Response hardening headers for every MCP, OAuth, health and metrics reply.

Headers already set by a route win; the ``Server`` banner is dropped.
"""

from typing import Callable, List, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


DEFAULT_CSP = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"

# /docs and /redoc pull swagger assets from a CDN
DOCS_CSP = (
    "default-src 'self'; script-src 'self' 'unsafe-inline' https:; style-src 'self' 'unsafe-inline' https:; "
    "img-src 'self' data: https:; frame-ancestors 'none'; base-uri 'self'"
)
DOCS_PREFIXES = ("/docs", "/redoc")

PERMISSIONS_POLICY = "geolocation=(), microphone=(), camera=(), payment=(), usb=()"


def hardening_headers(content_security_policy: Optional[str] = None) -> List[Tuple[str, str]]:
    return [
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "strict-origin-when-cross-origin"),
        ("Content-Security-Policy", content_security_policy or DEFAULT_CSP),
        ("Permissions-Policy", PERMISSIONS_POLICY),
    ]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enabled: bool = True, content_security_policy: Optional[str] = None):
        super().__init__(app)
        self.enabled = enabled
        self.headers = hardening_headers(content_security_policy)
        self.docs_headers = hardening_headers(DOCS_CSP)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        if not self.enabled:
            return response

        if "server" in response.headers:
            del response.headers["server"]
        headers = self.docs_headers if request.url.path.startswith(DOCS_PREFIXES) else self.headers
        for name, value in headers:
            response.headers.setdefault(name, value)
        return response
