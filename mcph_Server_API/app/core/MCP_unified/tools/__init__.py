"""Tools exposed through the MCP registry."""

from .crates import CrateTools, register_crate_tools

__all__ = ["CrateTools", "register_crate_tools"]
