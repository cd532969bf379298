import asyncio
import sys
from pathlib import Path

import pytest

from toolpilot.config import MCPServerConfig
from toolpilot.events import ServerConnectionChanged
from toolpilot.exceptions import ExternalServerConnectionError, ExternalServerError, ExternalToolCallError
from toolpilot.llm import Message, ToolCall
from toolpilot.mcp import MCPClient
from toolpilot.orchestrator import ToolExecutionOrchestrator
from toolpilot.tools.registry import ToolRegistry

FAKE_SERVER = Path(__file__).resolve().parents[1] / "fixtures" / "fake_mcp_server.py"


def server(name: str, **overrides) -> MCPServerConfig:
    return MCPServerConfig(
        name=name,
        transport="stdio",
        command=sys.executable,
        args=[str(FAKE_SERVER), "--prefix", name],
        timeout=10,
        **overrides,
    )


async def connect(*configs: MCPServerConfig, events=None):
    registry = ToolRegistry()
    client = MCPClient(registry, on_event=events.append if events is not None else None)
    results = await client.register_external_servers(configs)
    return client, registry, results


@pytest.mark.asyncio
async def test_servers_publish_tools_with_origin():
    client, registry, results = await connect(server("alpha"), server("beta"))
    try:
        assert [(r.server_name, r.success, r.tool_count) for r in results] == [
            ("alpha", True, 3),
            ("beta", True, 3),
        ]
        assert sorted(registry.names()) == [
            "alpha_echo", "alpha_exit", "alpha_fail", "beta_echo", "beta_exit", "beta_fail",
        ]
        tool = registry.get("alpha_echo")
        assert tool.origin.is_external and tool.origin.server_name == "alpha"
        assert tool.description.startswith("[MCP:alpha] ")
        assert tool.parameters["required"] == ["text"]
        assert client.get_connected_servers() == ["alpha", "beta"]
        assert [spec.name for spec in client.get_server_tools("beta")] == ["beta_echo", "beta_fail", "beta_exit"]
    finally:
        await client.disconnect_external_servers()

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_call_tool_returns_flattened_text():
    client, registry, _ = await connect(server("alpha"))
    try:
        assert await client.call_tool("alpha", "alpha_echo", {"text": "hello"}) == "hello"
        assert await registry.get("alpha_echo").execute({"text": "via registry"}) == "via registry"
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_concurrent_calls_are_matched_by_id_out_of_order():
    client, _, _ = await connect(server("alpha"))
    finished: list[str] = []

    async def call(text: str, delay: float) -> str:
        result = await client.call_tool("alpha", "alpha_echo", {"text": text, "delay": delay})
        finished.append(result)
        return result

    try:
        slow, fast = await asyncio.gather(call("slow", 0.5), call("fast", 0))
    finally:
        await client.disconnect_external_servers()

    assert (slow, fast) == ("slow", "fast")
    assert finished == ["fast", "slow"]


@pytest.mark.asyncio
async def test_tool_error_results_raise_tool_call_error():
    client, _, _ = await connect(server("alpha"))
    try:
        with pytest.raises(ExternalToolCallError, match="MCP tool execution failed: boom"):
            await client.call_tool("alpha", "alpha_fail", {})
        with pytest.raises(ExternalToolCallError, match="Unknown tool"):
            await client.call_tool("alpha", "alpha_missing", {})
        assert client.is_server_connected("alpha")
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_server_exit_mid_call_only_affects_its_own_tools():
    events = []
    client, registry, _ = await connect(server("alpha"), server("beta"), events=events)
    orchestrator = ToolExecutionOrchestrator(registry, mode="auto-accept")
    calls = [
        ToolCall(id="1", name="alpha_exit"),
        ToolCall(id="2", name="beta_echo", arguments={"text": "still here"}),
    ]
    assistant = Message(role="assistant", tool_calls=tuple(calls))

    try:
        outcome = await orchestrator.start_tool_confirmation_flow(
            calls, [Message(role="user", content="go")], assistant, Message(role="system", content="sys")
        )

        assert outcome.status == "completed"
        first, second = outcome.results
        assert first.is_error is True
        assert first.content.startswith("Error: Connection to MCP server 'alpha' lost")
        assert "exited with code 3" in first.content
        assert second.content == "still here"

        assert registry.names_for_server("alpha") == []
        assert sorted(registry.names_for_server("beta")) == ["beta_echo", "beta_exit", "beta_fail"]
        assert client.is_server_connected("alpha") is False
        assert client.get_server_info("alpha")["status"] == "disconnected"
        assert ServerConnectionChanged(
            server_name="alpha", status="disconnected", error=client.get_connection("alpha").error
        ) in events

        assert await client.call_tool("beta", "beta_echo", {"text": "again"}) == "again"
        with pytest.raises(ExternalServerConnectionError):
            await client.call_tool("alpha", "alpha_echo", {"text": "gone"})
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_reconnect_restores_tools_after_loss():
    client, registry, _ = await connect(server("alpha"))
    try:
        with pytest.raises(ExternalServerConnectionError):
            await client.call_tool("alpha", "alpha_exit", {})
        assert "alpha_echo" not in registry

        result = await client.reconnect_server("alpha")

        assert result.success is True
        assert "alpha_echo" in registry
        assert await client.call_tool("alpha", "alpha_echo", {"text": "back"}) == "back"
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_failing_server_does_not_block_others():
    broken = MCPServerConfig(name="broken", command="/nonexistent/toolpilot-mcp-server")
    invalid = MCPServerConfig(name="invalid", transport="stdio", command="")
    disabled = server("gamma", enabled=False)

    client, registry, results = await connect(broken, server("beta"), invalid, disabled)
    try:
        by_name = {result.server_name: result for result in results}
        assert set(by_name) == {"broken", "beta", "invalid"}
        assert by_name["beta"].success is True
        assert by_name["broken"].success is False
        assert "Failed to start MCP server 'broken'" in by_name["broken"].error
        assert by_name["invalid"].success is False
        assert "stdio transport requires a command" in by_name["invalid"].error
        assert registry.names_for_server("beta")
        assert client.get_connected_servers() == ["beta"]
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_disconnect_server_unregisters_only_its_tools():
    client, registry, _ = await connect(server("alpha"), server("beta"))
    try:
        assert await client.disconnect_server("alpha") is True
        assert await client.disconnect_server("alpha") is False

        assert registry.names_for_server("alpha") == []
        assert len(registry.names_for_server("beta")) == 3
        assert client.get_server_info("alpha") is None
        with pytest.raises(ExternalServerError):
            await client.reconnect_server("alpha")
    finally:
        await client.disconnect_external_servers()


@pytest.mark.asyncio
async def test_always_allow_skips_confirmation_for_listed_tools():
    client, registry, _ = await connect(server("alpha", always_allow=["alpha_echo"]))
    try:
        assert registry.get("alpha_echo").needs_approval({}, "normal") is False
        assert registry.get("alpha_fail").needs_approval({}, "normal") is True
        assert registry.get("alpha_fail").needs_approval({}, "auto-accept") is False
    finally:
        await client.disconnect_external_servers()
