"""Connections to external MCP tool servers and their registry entries."""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Literal

import aiohttp
import httpx
from pydantic import ValidationError

from toolpilot.config import ApprovalMode, MCPServerConfig, TransportType
from toolpilot.events import EventCallback, ServerConnectionChanged, resolve_callback
from toolpilot.exceptions import (
    ExternalServerConnectionError,
    ExternalServerError,
    ExternalServerRPCError,
    ExternalToolCallError,
)
from toolpilot.logging import get_logger
from toolpilot.mcp.protocol import MCPToolSpec, flatten_content, parse_tool_list
from toolpilot.mcp.transports import Transport, create_transport
from toolpilot.tools.registry import Tool, ToolOrigin, ToolRegistry, get_tool_registry

log = get_logger(__name__)

ConnectionStatus = Literal["connecting", "ready", "disconnected"]


@dataclass
class ExternalServerConnection:
    """Live state of one configured server."""

    name: str
    transport: TransportType
    config: MCPServerConfig
    status: ConnectionStatus = "connecting"
    tool_names: set[str] = field(default_factory=set)
    tools: list[MCPToolSpec] = field(default_factory=list)
    client_transport: Transport | None = None
    error: str | None = None


@dataclass
class ServerInitResult:
    server_name: str
    success: bool
    tool_count: int = 0
    error: str | None = None


class ExternalTool(Tool):
    """Registry entry that forwards execution to an MCP server."""

    def __init__(self, client: "MCPClient", server_name: str, spec: MCPToolSpec, auto_approved: bool = False):
        self._client = client
        self.remote_name = spec.name
        self.name = spec.name
        self.description = (
            f"[MCP:{server_name}] {spec.description}" if spec.description else f"MCP tool from {server_name}"
        )
        self.parameters = spec.input_schema or {"type": "object", "properties": {}}
        self.origin = ToolOrigin.external(server_name)
        self.auto_approved = auto_approved

    def needs_approval(self, arguments: dict[str, Any], mode: ApprovalMode) -> bool:
        if self.auto_approved:
            return False
        return mode != "auto-accept"

    async def execute(self, arguments: dict[str, Any]) -> str:
        return await self._client.call_tool(self.origin.server_name or "", self.remote_name, arguments)


class MCPClient:
    """Bring up external servers, publish their tools, tear them down.

    The client only adds and removes registry entries; executing those tools
    is the orchestrator's business.
    """

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        *,
        on_event: EventCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_session: aiohttp.ClientSession | None = None,
    ):
        self.registry = registry or get_tool_registry()
        self._emit = resolve_callback(on_event)
        self._http_client = http_client
        self._ws_session = ws_session
        self._connections: dict[str, ExternalServerConnection] = {}

    async def register_external_servers(self, configs: Iterable[MCPServerConfig]) -> list[ServerInitResult]:
        """Connect every enabled server concurrently; one failure never blocks the others."""
        servers = [config for config in configs if config.enabled]
        if not servers:
            log.debug("No MCP servers to connect")
            return []

        log.info("Starting MCP server connections", servers=[s.name for s in servers])
        results = await asyncio.gather(*(self._bring_up(config) for config in servers))
        succeeded = sum(1 for result in results if result.success)
        log.info(
            "MCP server connections completed",
            total=len(results),
            successful=succeeded,
            failed=len(results) - succeeded,
        )
        return list(results)

    async def connect_server(self, config: MCPServerConfig) -> ServerInitResult:
        return await self._bring_up(config)

    async def reconnect_server(self, name: str) -> ServerInitResult:
        connection = self._connections.get(name)
        if connection is None:
            raise ExternalServerError(name, f"Unknown MCP server: {name}")
        log.info("Reconnecting MCP server", server=name)
        return await self._bring_up(connection.config)

    async def _bring_up(self, config: MCPServerConfig) -> ServerInitResult:
        existing = self._connections.get(config.name)
        if existing is not None:
            await self._teardown(existing)

        connection = ExternalServerConnection(name=config.name, transport=config.transport, config=config)
        self._connections[config.name] = connection
        log.info("Connecting to MCP server", server=config.name, transport=config.transport)
        self._emit(ServerConnectionChanged(server_name=config.name, status="connecting"))

        try:
            transport = create_transport(config, http_client=self._http_client, ws_session=self._ws_session)
            connection.client_transport = transport
            await transport.start()
            await transport.handshake()
            specs = parse_tool_list(await transport.request("tools/list", {}))
        except (ExternalServerError, ValidationError) as e:
            return await self._mark_failed(connection, e)

        if self._connections.get(config.name) is not connection:
            # Disconnected or replaced while coming up.
            await transport.close()
            return ServerInitResult(server_name=config.name, success=False, error="Connection superseded")

        transport.set_connection_lost_handler(partial(self._handle_connection_lost, config.name, transport))
        tools = [
            ExternalTool(self, config.name, spec, auto_approved=spec.name in config.always_allow)
            for spec in specs
        ]
        self.registry.register_many(tools)
        connection.tools = specs
        connection.tool_names = {tool.name for tool in tools}
        connection.status = "ready"

        log.info("MCP server connected", server=config.name, tool_count=len(tools))
        self._emit(ServerConnectionChanged(server_name=config.name, status="ready", tool_count=len(tools)))
        return ServerInitResult(server_name=config.name, success=True, tool_count=len(tools))

    async def _mark_failed(self, connection: ExternalServerConnection, error: Exception) -> ServerInitResult:
        connection.status = "disconnected"
        connection.error = str(error)
        transport = connection.client_transport
        if transport is not None:
            await transport.close()
        log.error("Failed to connect to MCP server", server=connection.name, error=str(error))
        self._emit(
            ServerConnectionChanged(server_name=connection.name, status="disconnected", error=str(error))
        )
        return ServerInitResult(server_name=connection.name, success=False, error=str(error))

    def _handle_connection_lost(
        self,
        server_name: str,
        transport: Transport,
        error: ExternalServerConnectionError,
    ) -> None:
        connection = self._connections.get(server_name)
        if connection is None or connection.client_transport is not transport:
            return
        removed = self.registry.unregister_server(server_name)
        connection.status = "disconnected"
        connection.error = str(error)
        connection.tool_names = set()
        log.warning("MCP server lost, tools unregistered", server=server_name, tools=removed)
        self._emit(ServerConnectionChanged(server_name=server_name, status="disconnected", error=str(error)))

    async def call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool on its server and flatten the result to text.

        Raises:
            ExternalServerConnectionError: server unreachable or lost mid-call
            ExternalToolCallError: server reported the call as failed
        """
        connection = self._connections.get(server_name)
        if connection is None or connection.status != "ready" or connection.client_transport is None:
            raise ExternalServerConnectionError(server_name, f"MCP server '{server_name}' is not connected")

        log.info("Executing MCP tool", server=server_name, tool=tool_name, argument_count=len(arguments))
        try:
            result = await connection.client_transport.request(
                "tools/call", {"name": tool_name, "arguments": arguments}
            )
        except ExternalServerRPCError as e:
            log.error("MCP tool execution failed", server=server_name, tool=tool_name, error=str(e))
            raise ExternalToolCallError(server_name, tool_name, f"MCP tool execution failed: {e}") from e

        text = flatten_content(result)
        if isinstance(result, dict) and result.get("isError"):
            log.error("MCP tool reported an error", server=server_name, tool=tool_name, error=text)
            raise ExternalToolCallError(server_name, tool_name, f"MCP tool execution failed: {text}")

        log.info("MCP tool execution completed", server=server_name, tool=tool_name, response_length=len(text))
        return text

    async def _teardown(self, connection: ExternalServerConnection) -> None:
        # Registry entries go first so nothing resolves to a closing transport.
        removed = self.registry.unregister_server(connection.name)
        connection.tool_names = set()
        connection.status = "disconnected"
        transport = connection.client_transport
        connection.client_transport = None
        if transport is not None:
            transport.set_connection_lost_handler(None)
            await transport.close()
        log.debug("MCP server torn down", server=connection.name, tools=removed)

    async def disconnect_server(self, name: str) -> bool:
        connection = self._connections.pop(name, None)
        if connection is None:
            return False
        await self._teardown(connection)
        log.info("Disconnected from MCP server", server=name)
        self._emit(ServerConnectionChanged(server_name=name, status="disconnected"))
        return True

    async def disconnect_external_servers(self) -> None:
        names = list(self._connections)
        if not names:
            log.debug("No MCP servers to disconnect from")
            return
        log.info("Disconnecting from MCP servers", servers=names)
        await asyncio.gather(*(self.disconnect_server(name) for name in names))

    def get_connection(self, name: str) -> ExternalServerConnection | None:
        return self._connections.get(name)

    def get_connections(self) -> list[ExternalServerConnection]:
        return list(self._connections.values())

    def get_connected_servers(self) -> list[str]:
        return [name for name, conn in self._connections.items() if conn.status == "ready"]

    def is_server_connected(self, name: str) -> bool:
        connection = self._connections.get(name)
        return connection is not None and connection.status == "ready"

    def get_server_tools(self, name: str) -> list[MCPToolSpec]:
        connection = self._connections.get(name)
        if connection is None or connection.status != "ready":
            return []
        return list(connection.tools)

    def get_server_info(self, name: str) -> dict[str, Any] | None:
        """Summary of a server for status displays."""
        connection = self._connections.get(name)
        if connection is None:
            return None
        return {
            "name": name,
            "transport": connection.transport,
            "url": connection.config.url or None,
            "status": connection.status,
            "tool_count": len(connection.tool_names),
            "description": connection.config.description or None,
            "auto_approved_tools": list(connection.config.always_allow),
            "error": connection.error,
        }
