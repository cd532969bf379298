"""External tool servers over the Model Context Protocol."""

from toolpilot.mcp.client import (
    ExternalServerConnection,
    ExternalTool,
    MCPClient,
    ServerInitResult,
)
from toolpilot.mcp.config_loader import load_mcp_servers, substitute_env_vars
from toolpilot.mcp.transports import (
    HTTPTransport,
    StdioTransport,
    Transport,
    WebSocketTransport,
    create_transport,
    validate_server_config,
)

__all__ = [
    "ExternalServerConnection",
    "ExternalTool",
    "HTTPTransport",
    "MCPClient",
    "ServerInitResult",
    "StdioTransport",
    "Transport",
    "WebSocketTransport",
    "create_transport",
    "load_mcp_servers",
    "substitute_env_vars",
    "validate_server_config",
]
