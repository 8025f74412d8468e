"""
MCP (Model Context Protocol) request-serving core for the crates server.

JSON-RPC 2.0 dispatch over stateless HTTP and SSE, a tool registry with usage
accounting, and the crate tools. Import the server lazily from
``MCP_unified.server``; this package init stays light so the AuthNZ and
Storage layers can import the configuration without cycles.
"""

from .config import MCPConfig, get_config, validate_config

__version__ = "1.0.0"

__all__ = [
    "MCPConfig",
    "get_config",
    "validate_config",
]
