# transport_headers.py
# Description: Headers every response on the MCP transport paths carries
#
# Imports
from typing import Dict, Mapping
#
# Local imports
from .config import MCPConfig

#######################################################################################################################

PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
SESSION_HEADER = "mcp-session-id"
MCP_TRANSPORT_PATHS = frozenset({"/mcp", "/sse"})


def is_mcp_transport(path: str) -> bool:
    return path.rstrip("/") in MCP_TRANSPORT_PATHS


def protocol_headers(request_headers: Mapping[str, str], config: MCPConfig) -> Dict[str, str]:
    """Echo the caller's protocol version, or advertise ours when none was sent"""
    return {PROTOCOL_VERSION_HEADER: request_headers.get(PROTOCOL_VERSION_HEADER) or config.protocol_version}

#
# End of transport_headers.py
#######################################################################################################################
