"""
Timeout and availability errors for downstream store calls.

Blob operations are bounded at ``blob_operation_timeout_seconds`` (10s by default)
and metadata operations at ``metadata_operation_timeout_seconds`` (5s).
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class StoreUnavailableError(Exception):
    """A blob or metadata store could not be reached"""

    def __init__(self, store: str, message: Optional[str] = None):
        self.store = store
        super().__init__(message or f"{store} store unavailable")


class OperationTimeoutError(StoreUnavailableError):
    """A downstream call exceeded its time budget"""

    def __init__(self, message: str, timeout_seconds: float, store: str = "downstream"):
        self.timeout_seconds = timeout_seconds
        super().__init__(store, message)


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    message: str = "Operation timed out",
    store: str = "downstream",
) -> T:
    """Await ``awaitable`` for at most ``seconds``; raise OperationTimeoutError on expiry."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"{message} after {seconds}s")
        raise OperationTimeoutError(message, seconds, store) from e
