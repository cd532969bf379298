"""JSON-RPC 2.0 framing and MCP payload shapes."""

import itertools
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolpilot-mcp-client", "version": "1.0.0"}

NO_OUTPUT_CONTENT = "Tool executed successfully (no output)"

_request_ids = itertools.count(1)


def next_request_id() -> int:
    """Process-wide monotonically increasing correlation id."""
    return next(_request_ids)


def make_request(request_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def initialize_params() -> dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": dict(CLIENT_INFO),
    }


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


def decode_message(raw: str | bytes) -> dict[str, Any] | None:
    """Parse one frame; returns None for blank or non-object payloads."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw = raw.strip()
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def is_response(message: dict[str, Any]) -> bool:
    return "id" in message and message.get("id") is not None and (
        "result" in message or "error" in message
    )


def error_message(error: Any) -> str:
    """Human-readable text for a JSON-RPC error member."""
    if isinstance(error, dict):
        message = str(error.get("message") or "Unknown error")
        code = error.get("code")
        return f"{message} (code {code})" if code is not None else message
    return str(error)


class MCPToolSpec(BaseModel):
    """One entry of a ``tools/list`` response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


def parse_tool_list(result: Any) -> list[MCPToolSpec]:
    if not isinstance(result, dict):
        return []
    tools = result.get("tools") or []
    specs: list[MCPToolSpec] = []
    for item in tools:
        if isinstance(item, dict) and item.get("name"):
            specs.append(MCPToolSpec.model_validate(item))
    return specs


def flatten_content(result: Any) -> str:
    """Collapse a ``tools/call`` result into the text handed to the model.

    Text items are joined with newlines; other items are serialized as JSON.
    """
    if not isinstance(result, dict):
        return NO_OUTPUT_CONTENT if result is None else str(result)
    content = result.get("content")
    if not isinstance(content, list) or not content:
        return NO_OUTPUT_CONTENT
    parts: list[str] = []
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text") or ""))
        else:
            parts.append(json.dumps(item))
    return "\n".join(parts)
