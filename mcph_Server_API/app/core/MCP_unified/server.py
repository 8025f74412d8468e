"""
Main MCP Server implementation

Owns every process-wide service the transports need (tool registry, protocol
dispatcher, SSE sessions, throttle guard, OAuth broker, identity resolver,
metrics and health) and their lifecycle: constructed once, started by the
FastAPI lifespan, torn down at shutdown with their background sweeps cancelled.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from loguru import logger

from mcph_Server_API.app.core.AuthNZ.api_key_manager import APIKeyManager
from mcph_Server_API.app.core.AuthNZ.exceptions import AuthenticationError
from mcph_Server_API.app.core.AuthNZ.identity import (
    AuthContext,
    IdentityResolver,
    anonymous,
    extract_bearer,
    is_anonymous_allowed,
)
from mcph_Server_API.app.core.AuthNZ.oauth_broker import OAuthBroker, get_oauth_broker
from mcph_Server_API.app.core.AuthNZ.throttle import ThrottleGuard, get_throttle_guard
from mcph_Server_API.app.core.Health.checker import HealthChecker
from mcph_Server_API.app.core.Logging.log_context import log_context, mask_secrets
from mcph_Server_API.app.core.Metrics.metrics_manager import RequestMetricsCollector, get_metrics_collector
from mcph_Server_API.app.core.Storage.blob_store import BlobStore
from mcph_Server_API.app.core.Storage.metadata_store import MetadataStore
from mcph_Server_API.app.core.Storage.stores import get_blob_store, get_metadata_store
from mcph_Server_API.app.core.Storage.usage import UsageTracker

from .config import MCPConfig, get_config, validate_config
from .protocol import MCPProtocol, MCPResponse, RequestContext
from .registry import ToolRegistry
from .sessions import SSESessionManager, get_session_manager
from .tools.crates import register_crate_tools


METRICS_LOG_INTERVAL_SECONDS = 300

WireBody = Union[Dict[str, Any], List[Dict[str, Any]]]


def client_name_from(body: Any) -> Optional[str]:
    """``params.name`` of the (first) envelope, or ``params.clientInfo.name`` on initialize"""
    envelope = body[0] if isinstance(body, list) and body else body
    if not isinstance(envelope, dict):
        return None
    params = envelope.get("params")
    if not isinstance(params, dict):
        return None
    name = params.get("name")
    if isinstance(name, str) and name:
        return name
    client_info = params.get("clientInfo")
    if isinstance(client_info, dict) and isinstance(client_info.get("name"), str):
        return client_info["name"]
    return None


class MCPServer:
    """
    MCP server for the crates tool set.

    Features:
    - Stateless HTTP and SSE transports over one protocol dispatcher
    - Bearer identity (API keys, exchanged OAuth tokens) with an anonymous allow-list
    - Per-identity usage accounting on every tool call
    - Dependency health probes and request metrics
    - Graceful shutdown of sessions and background sweeps
    """

    def __init__(
        self,
        config: Optional[MCPConfig] = None,
        blob_store: Optional[BlobStore] = None,
        metadata_store: Optional[MetadataStore] = None,
        throttle: Optional[ThrottleGuard] = None,
        broker: Optional[OAuthBroker] = None,
        sessions: Optional[SSESessionManager] = None,
        identity: Optional[IdentityResolver] = None,
        metrics: Optional[RequestMetricsCollector] = None,
        health: Optional[HealthChecker] = None,
    ):
        self.config = config or get_config()
        self.blob_store = blob_store or get_blob_store()
        self.metadata_store = metadata_store or get_metadata_store()
        self.throttle = throttle or get_throttle_guard()
        self.broker = broker or get_oauth_broker()
        self.sessions = sessions or get_session_manager()
        self.metrics = metrics or get_metrics_collector()

        self.api_keys = APIKeyManager(self.metadata_store, self.config)
        self.identity = identity or IdentityResolver(self.api_keys, self.broker.tokens)

        self.usage = UsageTracker(self.metadata_store, self.config.monthly_tool_call_limit)
        self.registry = ToolRegistry(usage_tracker=self.usage)
        self.crates = register_crate_tools(self.registry, self.blob_store, self.metadata_store, self.config)
        self.protocol = MCPProtocol(self.registry, self.config)

        self.health = health or HealthChecker(
            timeout_seconds=self.config.health_probe_timeout_seconds,
            metrics=self.metrics,
            version=self.config.server_version,
            environment=self.config.environment,
        )
        if not self.health.probe_names:
            self.health.register_probe("metadata_store", self.metadata_store.ping)
            self.health.register_probe("blob_store", self.blob_store.ping)

        # Server state
        self.initialized = False
        self.startup_time = datetime.now(timezone.utc)
        self.shutdown_event = asyncio.Event()

        # Background tasks
        self.background_tasks: Set[asyncio.Task] = set()

        logger.info(f"MCP Server created with {len(self.registry)} tools")

    async def initialize(self):
        """Start throttling, the OAuth sweep and the metrics log loop"""
        if self.initialized:
            logger.warning("Server already initialized")
            return

        logger.info("Initializing MCP Server")
        try:
            if not validate_config(self.config) and not self.config.debug_mode:
                raise RuntimeError("MCP configuration validation failed; refusing to start")

            await self.throttle.initialize()
            self.throttle.start()
            self.broker.start()

            if self.config.metrics_enabled:
                task = asyncio.create_task(self._metrics_log_loop())
                self.background_tasks.add(task)
                task.add_done_callback(self.background_tasks.discard)

            self.initialized = True
            logger.info("MCP Server initialized successfully")
        except Exception as e:
            logger.error(f"Server initialization failed: {mask_secrets(str(e))}")
            raise

    async def shutdown(self):
        """Gracefully shutdown the server"""
        logger.info("Shutting down MCP Server")
        self.shutdown_event.set()

        closed = self.sessions.close_all()
        if closed:
            logger.info(f"Closed {closed} SSE sessions")

        for task in self.background_tasks:
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)

        await self.throttle.shutdown()
        await self.broker.shutdown()

        self.initialized = False
        logger.info("MCP Server shutdown complete")

    async def _metrics_log_loop(self):
        """Periodically log a request summary"""
        while not self.shutdown_event.is_set():
            try:
                await asyncio.sleep(METRICS_LOG_INTERVAL_SECONDS)
                self._log_metrics()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in metrics collection: {e}")

    def _log_metrics(self):
        requests = self.metrics.summary()["requests"]
        logger.info(
            f"Server metrics: requests={requests['total']}, errors={requests['errors']}, "
            f"errorRate={requests['errorRate']}%, sseSessions={self.sessions.count()}"
        )

    # ------------------------
    # Identity
    # ------------------------

    def anonymous_allowed(self, body: Any) -> bool:
        """Every envelope in ``body`` targets an allow-listed operation"""
        envelopes = body if isinstance(body, list) else [body]
        if not envelopes:
            return False
        for envelope in envelopes:
            if not isinstance(envelope, dict):
                return False
            params = envelope.get("params")
            if not is_anonymous_allowed(
                envelope.get("method"),
                params if isinstance(params, dict) else None,
                self.config.anonymous_tools,
            ):
                return False
        return True

    async def authenticate(self, headers: Mapping[str, str], body: Any) -> AuthContext:
        """
        Identity for one transport message.

        A presented credential must resolve; without one the message is served
        anonymously only when every envelope is allow-listed.

        Raises:
            AuthenticationError: missing or invalid credential
            StoreUnavailableError: the key store could not be reached
        """
        client_name = client_name_from(body)
        credential = extract_bearer(headers)
        if credential:
            return await self.identity.resolve(credential, client_name)
        if self.anonymous_allowed(body):
            return anonymous(client_name)
        raise AuthenticationError()

    # ------------------------
    # Dispatch
    # ------------------------

    async def handle_message(
        self,
        body: Any,
        auth: Optional[AuthContext] = None,
        request_id: str = "http_request",
        session_id: Optional[str] = None,
    ) -> Optional[WireBody]:
        """
        Dispatch one parsed JSON-RPC body.

        Returns:
            The wire response (object, or array for batches), or None when
            nothing is owed (notifications)
        """
        context = RequestContext(request_id=request_id, auth=auth, session_id=session_id)
        with log_context(request_id=request_id, session_id=session_id, caller_id=auth.caller_id if auth else None):
            response = await self.protocol.process_request(body, context)
        if response is None:
            return None
        if isinstance(response, list):
            return [item.to_wire() for item in response]
        if isinstance(response, MCPResponse):
            return response.to_wire()
        return response

    def get_status(self) -> Dict[str, Any]:
        uptime = (datetime.now(timezone.utc) - self.startup_time).total_seconds()
        return {
            "status": "running" if self.initialized else "initializing",
            "version": self.config.server_version,
            "uptime_seconds": uptime,
            "tools": len(self.registry),
            "sse_sessions": self.sessions.count(),
        }


# Singleton instance management
_server: Optional[MCPServer] = None


def get_mcp_server() -> MCPServer:
    """Get or create MCP server singleton"""
    global _server
    if _server is None:
        _server = MCPServer()
    return _server


async def reset_mcp_server() -> None:
    """Reset MCP server singleton for test environments."""
    global _server
    if _server is not None and _server.initialized:
        await _server.shutdown()
    _server = None


@asynccontextmanager
async def lifespan(app):
    """
    FastAPI lifespan manager for server initialization and shutdown.

    Uses ``app.state.mcp_server`` when the application factory installed one,
    otherwise the process singleton.
    """
    server = getattr(app.state, "mcp_server", None)
    if server is None:
        server = get_mcp_server()
        app.state.mcp_server = server
    await server.initialize()
    logger.info("MCP Server started")

    yield

    await server.shutdown()
    logger.info("MCP Server stopped")
