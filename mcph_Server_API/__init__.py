"""
Top-level package for mcph_Server_API.

An MCP (Model Context Protocol) server exposing crate tools over JSON-RPC,
with OAuth brokering, throttling, timeouts, health checks and metrics.
"""

__version__ = "1.0.0"
