import re
from typing import Callable, Optional

from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mcph_Server_API.app.core.Logging.log_context import new_request_id


REQUEST_ID_HEADER = "X-Request-ID"
_ACCEPTED_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def accept_request_id(value: Optional[str]) -> str:
    """A caller-supplied id when it is short and log-safe, else a fresh one"""
    candidate = (value or "").strip()
    if candidate and _ACCEPTED_REQUEST_ID.fullmatch(candidate):
        return candidate
    return new_request_id()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Every request gets an id on ``request.state.request_id`` and in the loguru
    context; the response echoes it in ``X-Request-ID``.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = accept_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        with logger.contextualize(request_id=request_id):
            response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
