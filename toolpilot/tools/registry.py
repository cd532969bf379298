"""Tool registry and base tool class."""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any, Literal

from pydantic import BaseModel, model_validator

from toolpilot.config import ApprovalMode
from toolpilot.llm import ToolCall
from toolpilot.logging import get_logger

log = get_logger(__name__)


class ToolOrigin(BaseModel):
    """Where a tool definition came from."""

    kind: Literal["builtin", "external"] = "builtin"
    server_name: str | None = None

    @property
    def is_external(self) -> bool:
        return self.kind == "external"

    @classmethod
    def external(cls, server_name: str) -> "ToolOrigin":
        return cls(kind="external", server_name=server_name)


BUILTIN_ORIGIN = ToolOrigin()


class ValidationResult(BaseModel):
    """Outcome of a tool's argument validator."""

    valid: bool = True
    error: str = ""

    @model_validator(mode="after")
    def _normalize_invalid_error(self) -> "ValidationResult":
        """Ensure invalid results always explain themselves."""
        if not self.valid and not self.error.strip():
            self.error = "Invalid tool arguments"
        return self

    @classmethod
    def invalid(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


class ToolResult(BaseModel):
    """Answer to exactly one tool call."""

    tool_call_id: str
    name: str
    content: str = ""
    is_error: bool = False

    @model_validator(mode="after")
    def _normalize_failure_content(self) -> "ToolResult":
        """Ensure failed results always carry a message."""
        if self.is_error and not self.content.strip():
            self.content = "Tool execution failed"
        return self

    @classmethod
    def for_call(cls, call: ToolCall, content: str, is_error: bool = False) -> "ToolResult":
        return cls(tool_call_id=call.id, name=call.name, content=content, is_error=is_error)


class Tool(ABC):
    """Base class for all tools, built-in or proxied from an external server."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    origin: ToolOrigin = BUILTIN_ORIGIN

    @abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> str:
        """Execute the tool.

        Args:
            arguments: Tool-specific arguments

        Returns:
            Content handed back to the model

        Raises:
            Any exception on failure; the orchestrator turns it into a result
        """
        pass

    async def validate(self, arguments: dict[str, Any]) -> ValidationResult:
        """Check arguments before execution. Override to install a validator."""
        return ValidationResult()

    @property
    def has_validator(self) -> bool:
        return type(self).validate is not Tool.validate

    def needs_approval(self, arguments: dict[str, Any], mode: ApprovalMode) -> bool:
        """Whether the user must confirm this call before it runs."""
        return False

    def missing_required_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """Return required schema fields absent from arguments."""
        required = self.parameters.get("required", []) or []
        return [field for field in required if field not in arguments]

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


class ToolRegistry:
    """Name-keyed table of built-in and external tools.

    Writers build a new map and swap it in under the lock; readers grab the
    current map reference, so a lookup never observes half of a bulk update.
    """

    def __init__(self, tools: Iterable[Tool] | None = None):
        self._lock = threading.Lock()
        self._tools: dict[str, Tool] = {}
        if tools:
            self.register_many(tools)

    def register(self, tool: Tool) -> None:
        """Register a tool; an existing entry with the same name is replaced.

        Args:
            tool: Tool instance to register
        """
        self.register_many([tool])

    def register_many(self, tools: Iterable[Tool]) -> None:
        """Register several tools as one atomic update."""
        incoming = list(tools)
        for tool in incoming:
            if not tool.name:
                raise ValueError("Tool must have a name")

        with self._lock:
            updated = dict(self._tools)
            for tool in incoming:
                previous = updated.get(tool.name)
                if previous is not None and previous.origin != tool.origin:
                    log.warning(
                        "Tool name collision, last registration wins",
                        tool=tool.name,
                        previous_origin=previous.origin.kind,
                        previous_server=previous.origin.server_name,
                        new_origin=tool.origin.kind,
                        new_server=tool.origin.server_name,
                    )
                updated[tool.name] = tool
                log.debug("Registering tool", tool=tool.name, origin=tool.origin.kind)
            self._tools = updated

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self.unregister_many([name])

    def unregister_many(self, names: Iterable[str]) -> list[str]:
        """Remove several tools as one atomic update; returns removed names."""
        targets = list(names)
        with self._lock:
            updated = dict(self._tools)
            removed = [name for name in targets if updated.pop(name, None) is not None]
            self._tools = updated
        if removed:
            log.debug("Unregistered tools", tools=removed)
        return removed

    def unregister_server(self, server_name: str) -> list[str]:
        """Atomically remove every tool currently owned by one external server."""
        with self._lock:
            removed = [
                name
                for name, tool in self._tools.items()
                if tool.origin.is_external and tool.origin.server_name == server_name
            ]
            self._tools = {name: tool for name, tool in self._tools.items() if name not in removed}
        if removed:
            log.debug("Unregistered server tools", server=server_name, tools=removed)
        return removed

    def get(self, name: str) -> Tool | None:
        """Get a tool by name, or None when unknown."""
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def describe_origin(self, name: str) -> ToolOrigin | None:
        """Return origin of a registered tool (external server name included)."""
        tool = self._tools.get(name)
        return tool.origin if tool is not None else None

    def names_for_server(self, server_name: str) -> list[str]:
        """Names currently registered from one external server."""
        return [
            tool.name
            for tool in self._tools.values()
            if tool.origin.is_external and tool.origin.server_name == server_name
        ]

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM.

        Returns:
            List of OpenAI function-style definitions
        """
        return [tool.get_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
