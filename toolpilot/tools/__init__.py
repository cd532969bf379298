"""Tools package for toolpilot."""

from pathlib import Path

from toolpilot.config import Config, get_config
from toolpilot.tools.read import ReadFileTool
from toolpilot.tools.registry import (
    BUILTIN_ORIGIN,
    Tool,
    ToolOrigin,
    ToolRegistry,
    ToolResult,
    ValidationResult,
    get_tool_registry,
    set_tool_registry,
)
from toolpilot.tools.write import WriteFileTool

_BUILTIN_FACTORIES = {
    "read_file": ReadFileTool,
    "write_file": WriteFileTool,
}


def builtin_tools(config: Config | None = None, base_path: Path | str | None = None) -> list[Tool]:
    """Instantiate the built-in tools enabled in config."""
    cfg = config or get_config()
    workspace = base_path if base_path is not None else cfg.resolved_workspace_path()
    tools: list[Tool] = []
    for tool_name in cfg.tools.enabled:
        factory = _BUILTIN_FACTORIES.get(tool_name)
        if factory is not None:
            tools.append(factory(workspace))
    return tools


__all__ = [
    "BUILTIN_ORIGIN",
    "ReadFileTool",
    "Tool",
    "ToolOrigin",
    "ToolRegistry",
    "ToolResult",
    "ValidationResult",
    "WriteFileTool",
    "builtin_tools",
    "get_tool_registry",
    "set_tool_registry",
]
