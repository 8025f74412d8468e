"""
Per-request loguru fields for the MCP transports.

``log_context`` pushes ``request_id``/``session_id``/``caller_id`` into the
loguru context for the duration of a dispatch, so tool, store and throttle
logs emitted underneath carry them without threading a logger around:

    with log_context(request_id=rid, session_id=sid) as log:
        log.debug("dispatching {}", method)

Fields whose value is ``None`` are left out of the record.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Any, Iterator, Optional
import uuid

from loguru import logger


_BEARER_RE = re.compile(r"(Bearer)\s+[A-Za-z0-9._\-~+/=]+", re.IGNORECASE)
_SECRET_FIELD_RES = [
    re.compile(r"(api[_-]?key)\s*[:=]\s*([^\s,;]+)", re.IGNORECASE),
    re.compile(r"(access[_-]?token)\s*[:=]\s*([^\s,;]+)", re.IGNORECASE),
    re.compile(r"(client[_-]?secret)\s*[:=]\s*([^\s,;]+)", re.IGNORECASE),
    re.compile(r"(password)\s*[:=]\s*([^\s,;]+)", re.IGNORECASE),
    re.compile(r"(token)\s*[:=]\s*([^\s,;]+)", re.IGNORECASE),
]


def new_request_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    present = {name: value for name, value in fields.items() if value is not None}
    with logger.contextualize(**present):
        yield logger.bind(**present)


def ensure_request_id(request: Any) -> str:
    """Id assigned by RequestIDMiddleware, else the raw header, else a new one stored on state."""
    state = getattr(request, "state", None)
    request_id = getattr(state, "request_id", None)
    if request_id:
        return str(request_id)
    headers = getattr(request, "headers", None) or {}
    request_id = headers.get("x-request-id") or new_request_id()
    if state is not None:
        state.request_id = request_id
    return str(request_id)


def mask_secrets(text: Optional[str]) -> Optional[str]:
    """Best-effort masking of bearer tokens, API keys and passwords in strings."""
    if not text:
        return text
    text = _BEARER_RE.sub(r"\1 ****", text)
    for pattern in _SECRET_FIELD_RES:
        text = pattern.sub(lambda m: f"{m.group(1)}=****", text)
    return text


def client_ip(request: Any, trust_forwarded: bool = False) -> str:
    """Resolve the caller IP for logging and throttling."""
    if trust_forwarded:
        headers = getattr(request, "headers", None) or {}
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    client = getattr(request, "client", None)
    host = getattr(client, "host", None)
    return host or "unknown"
