# throttle.py
# Description: Fixed-window request throttling per identifier (IP by default)
#
# Imports
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set
#
# 3rd-party imports
from loguru import logger
from redis import asyncio as redis_async
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.exceptions import RateLimitError
from mcph_Server_API.app.core.Logging.log_context import client_ip
from mcph_Server_API.app.core.MCP_unified.config import MCPConfig, get_config
from mcph_Server_API.app.core.MCP_unified.transport_headers import is_mcp_transport, protocol_headers

#######################################################################################################################
#
# Types


@dataclass
class ThrottleWindow:
    """Request counter for one identifier inside one fixed window"""
    count: int
    window_start: float


@dataclass(frozen=True)
class ThrottleDecision:
    limited: bool
    remaining: int
    reset_at: float
    count: int
    limit: int

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at - time.time() + 0.999))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }

    def to_error(self) -> RateLimitError:
        return RateLimitError(
            limit=self.limit,
            remaining=self.remaining,
            reset_at=self.reset_at,
            retry_after=self.retry_after,
        )


#######################################################################################################################
#
# Throttle Guard Class

class ThrottleGuard:
    """
    Fixed-window request counter keyed by identifier.

    - The first request of a window initializes the counter at 1 and is allowed
    - Requests beyond ``max_requests`` inside the window are limited
    - When the window elapses the counter restarts at 1 for the triggering request
    - Optional Redis backend; on backend errors the guard degrades to process-local
      counting and never rejects because of the failure (fail-open)
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        config: Optional[MCPConfig] = None,
        redis_client: Optional[redis_async.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self.max_requests = max_requests or self.config.throttle_max_requests
        self.window_seconds = float(window_seconds or self.config.throttle_window_seconds)
        self.redis_client = redis_client
        self._clock = clock
        self._windows: Dict[str, ThrottleWindow] = {}
        self._lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()
        self._initialized = False

    async def initialize(self):
        """Connect the Redis backend when configured"""
        if self._initialized:
            return
        if self.redis_client is None and self.config.throttle_backend == "redis":
            params = self.config.get_redis_connection_params()
            if params:
                try:
                    url = params.pop("url")
                    self.redis_client = redis_async.from_url(url, **params)
                    await self.redis_client.ping()
                    logger.debug("Redis connected for throttling")
                except (RedisError, OSError) as e:
                    logger.warning(f"Redis unavailable for throttling, using in-memory windows: {e}")
                    self.redis_client = None
        self._initialized = True
        logger.info(
            f"ThrottleGuard initialized (max={self.max_requests}, window={self.window_seconds}s, "
            f"backend={'redis' if self.redis_client else 'memory'})"
        )

    async def check(
        self,
        identifier: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> ThrottleDecision:
        """
        Count one request for ``identifier`` and decide whether it is limited.

        Args:
            identifier: Caller key (IP address, user id, ...)
            max_requests: Override of the per-window limit
            window_seconds: Override of the window length

        Returns:
            ThrottleDecision with limited flag, remaining budget and reset timestamp
        """
        limit = max_requests or self.max_requests
        window = float(window_seconds or self.window_seconds)

        if self.redis_client is not None:
            try:
                return await self._check_redis(identifier, limit, window)
            except (RedisError, OSError) as e:
                logger.warning(f"Redis error in throttle check, falling back to memory: {e}")

        return await self._check_memory(identifier, limit, window)

    async def _check_memory(self, identifier: str, limit: int, window: float) -> ThrottleDecision:
        async with self._lock:
            now = self._clock()
            entry = self._windows.get(identifier)
            if entry is None or now - entry.window_start >= window:
                entry = ThrottleWindow(count=1, window_start=now)
                self._windows[identifier] = entry
            else:
                entry.count += 1
            count = entry.count
            reset_at = entry.window_start + window

        return ThrottleDecision(
            limited=count > limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            count=count,
            limit=limit,
        )

    async def _check_redis(self, identifier: str, limit: int, window: float) -> ThrottleDecision:
        now = self._clock()
        bucket = int(now // window)
        key = f"throttle:{identifier}:{bucket}"
        pipe = self.redis_client.pipeline()
        pipe.incr(key)
        pipe.expire(key, int(window) + 1)
        results = await pipe.execute()
        count = int(results[0])
        reset_at = (bucket + 1) * window
        return ThrottleDecision(
            limited=count > limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            count=count,
            limit=limit,
        )

    async def sweep(self) -> int:
        """Remove windows whose reset time has passed. Returns the number removed."""
        async with self._lock:
            now = self._clock()
            expired = [
                ident for ident, entry in self._windows.items()
                if now - entry.window_start >= self.window_seconds
            ]
            for ident in expired:
                del self._windows[ident]
        if expired:
            logger.debug(f"Throttle sweep removed {len(expired)} windows")
        return len(expired)

    async def reset(self, identifier: Optional[str] = None):
        async with self._lock:
            if identifier is None:
                self._windows.clear()
            else:
                self._windows.pop(identifier, None)

    def tracked_identifiers(self) -> int:
        return len(self._windows)

    def start(self):
        """Start the periodic sweep task"""
        if self._background_tasks:
            return
        task = asyncio.create_task(self._sweep_loop())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.window_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Throttle sweep failed: {e}")

    async def shutdown(self):
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        if self.redis_client is not None:
            try:
                await self.redis_client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Redis close error: {e}")


#######################################################################################################################
#
# Middleware

def throttle_rejection_response(decision: ThrottleDecision, extra_headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    error = decision.to_error()
    headers = error.headers()
    headers.update(extra_headers or {})
    return JSONResponse(
        status_code=error.status_code,
        content={
            "jsonrpc": "2.0",
            "error": {
                "code": -32000,
                "message": error.message,
            },
            "id": None,
        },
        headers=headers,
    )


class ThrottleMiddleware(BaseHTTPMiddleware):
    """Reject callers exceeding the per-IP request window with HTTP 429."""

    def __init__(self, app, guard: Optional[ThrottleGuard] = None, config: Optional[MCPConfig] = None):
        super().__init__(app)
        self.config = config or get_config()
        self._guard = guard
        self.exempt_paths = set(self.config.throttle_exempt_paths)

    @property
    def guard(self) -> ThrottleGuard:
        return self._guard or get_throttle_guard()

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self.config.throttle_enabled or request.url.path in self.exempt_paths:
            return await call_next(request)

        ip = client_ip(request, self.config.trust_x_forwarded_for)
        decision = await self.guard.check(ip)
        if decision.limited:
            logger.warning(f"Rate limit exceeded for IP: {ip} (count={decision.count}, limit={decision.limit})")
            extra = protocol_headers(request.headers, self.config) if is_mcp_transport(request.url.path) else None
            return throttle_rejection_response(decision, extra)

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)
        return response


#######################################################################################################################
#
# Module Functions

_throttle_guard: Optional[ThrottleGuard] = None


def get_throttle_guard() -> ThrottleGuard:
    """Get throttle guard singleton instance"""
    global _throttle_guard
    if _throttle_guard is None:
        _throttle_guard = ThrottleGuard()
    return _throttle_guard


async def reset_throttle_guard():
    """Reset the ThrottleGuard singleton (mainly for testing)."""
    global _throttle_guard
    if _throttle_guard is not None:
        await _throttle_guard.shutdown()
    _throttle_guard = None

#
# End of throttle.py
#######################################################################################################################
