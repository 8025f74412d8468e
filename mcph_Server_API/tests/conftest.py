"""
Pytest configuration for the MCP server test suite.

Every test gets fresh service instances (stores, throttle, broker, sessions,
metrics) wired into its own MCPServer; nothing touches the process singletons
except the import of ``app.main`` itself.
"""

import asyncio
import os
import tempfile

# Settings must be in place before anything imports the config module
os.environ.setdefault("MCP_API_KEY_PEPPER", "test-pepper-0123456789abcdef")
os.environ.setdefault(
    "MCP_OAUTH_CLIENT_REGISTRY_PATH",
    os.path.join(tempfile.mkdtemp(prefix="mcph-tests-"), "oauth_clients.json"),
)
os.environ.setdefault("MCP_LOG_LEVEL", "WARNING")
os.environ.setdefault("MCP_DEBUG_MODE", "true")

import pytest
from fastapi.testclient import TestClient

from mcph_Server_API.app.core.AuthNZ.oauth_broker import build_oauth_broker
from mcph_Server_API.app.core.AuthNZ.throttle import ThrottleGuard
from mcph_Server_API.app.core.MCP_unified.config import MCPConfig, get_config
from mcph_Server_API.app.core.MCP_unified.server import MCPServer
from mcph_Server_API.app.core.MCP_unified.sessions import SSESessionManager
from mcph_Server_API.app.core.Metrics.metrics_manager import RequestMetricsCollector
from mcph_Server_API.app.core.Storage.blob_store import InMemoryBlobStore
from mcph_Server_API.app.core.Storage.metadata_store import InMemoryMetadataStore

ADMIN_KEY = "test-admin-key-0123456789"


def run(coro):
    """Drive a coroutine from a synchronous test or fixture"""
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> MCPConfig:
        values = {
            "api_key_pepper": "test-pepper-0123456789abcdef",
            "oauth_client_registry_path": str(tmp_path / "oauth_clients.json"),
            "admin_key": ADMIN_KEY,
            "debug_mode": True,
            "public_base_url": "https://crates.example.test",
        }
        values.update(overrides)
        return MCPConfig(**values)

    return _make


@pytest.fixture
def config(make_config) -> MCPConfig:
    return make_config()


@pytest.fixture
def metadata_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore(base_url="https://crates.example.test/blobs", signing_key=b"k" * 32)


@pytest.fixture
def make_server(blob_store, metadata_store):
    def _make(config: MCPConfig) -> MCPServer:
        return MCPServer(
            config=config,
            blob_store=blob_store,
            metadata_store=metadata_store,
            throttle=ThrottleGuard(config=config),
            broker=build_oauth_broker(config),
            sessions=SSESessionManager(
                heartbeat_seconds=config.sse_heartbeat_seconds,
                max_sessions=config.sse_max_sessions,
            ),
            metrics=RequestMetricsCollector(max_samples=config.metrics_max_samples),
        )

    return _make


@pytest.fixture
def mcp_server(make_server, config) -> MCPServer:
    return make_server(config)


@pytest.fixture
def make_client():
    """TestClient around a fresh app; the lifespan is not run unless used as a context manager"""
    from mcph_Server_API.app.main import create_app

    def _make(server: MCPServer) -> TestClient:
        return TestClient(create_app(server))

    return _make


@pytest.fixture
def client(make_client, mcp_server) -> TestClient:
    return make_client(mcp_server)


@pytest.fixture
def api_key(mcp_server) -> str:
    record = run(mcp_server.api_keys.create_api_key("user-1", name="tests"))
    return record["key"]


@pytest.fixture
def auth_headers(api_key):
    return {"Authorization": f"Bearer {api_key}"}
