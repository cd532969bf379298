"""Discover MCP server descriptors from project files or the main config."""

import json
import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolpilot.config import Config, MCPServerConfig, get_config
from toolpilot.logging import get_logger

log = get_logger(__name__)

# Highest priority first.
PROJECT_CONFIG_FILES = (
    Path(".toolpilot") / "mcp.local.json",
    Path(".mcp.json"),
    Path("mcp.json"),
    Path(".toolpilot") / "mcp.json",
)

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def _replace_env(match: re.Match[str]) -> str:
    braced, default, bare = match.group(1), match.group(2), match.group(3)
    name = braced or bare
    value = os.environ.get(name)
    if value is not None:
        return value
    return default if default is not None else ""


def substitute_env_vars(value: Any) -> Any:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``$VAR`` in nested strings."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(_replace_env, value)
    if isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: substitute_env_vars(item) for key, item in value.items()}
    return value


def extract_server_entries(data: Any) -> list[dict[str, Any]]:
    """Accept a list, ``{"mcpServers": [...]}`` or ``{"mcpServers": {name: {...}}}``."""
    if isinstance(data, list):
        servers = data
    elif isinstance(data, dict):
        raw = data.get("mcpServers")
        if isinstance(raw, list):
            servers = raw
        elif isinstance(raw, dict):
            servers = [{"name": name, **(entry or {})} for name, entry in raw.items()]
        else:
            servers = []
    else:
        servers = []
    return [entry for entry in servers if isinstance(entry, dict)]


def parse_server_configs(entries: list[dict[str, Any]], source: str) -> list[MCPServerConfig]:
    configs: list[MCPServerConfig] = []
    for entry in substitute_env_vars(entries):
        try:
            configs.append(MCPServerConfig.model_validate(entry))
        except ValidationError as e:
            log.warning("Skipping invalid MCP server entry", source=source, name=entry.get("name"), error=str(e))
    return configs


def load_project_mcp_config(cwd: Path | str | None = None) -> tuple[list[MCPServerConfig], Path | None]:
    """Return servers from the first project file that defines any, and that file."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    for relative in PROJECT_CONFIG_FILES:
        path = base / relative
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.error("Failed to load MCP config", path=str(path), error=str(e))
            continue
        servers = parse_server_configs(extract_server_entries(data), str(path))
        if servers:
            log.debug("Loaded MCP servers from project file", path=str(path), count=len(servers))
            return servers, path
    return [], None


def load_mcp_servers(config: Config | None = None, cwd: Path | str | None = None) -> list[MCPServerConfig]:
    """Project files win; otherwise fall back to ``mcp_servers`` in the main config."""
    servers, _ = load_project_mcp_config(cwd)
    if servers:
        return servers
    cfg = config or get_config()
    return [MCPServerConfig.model_validate(substitute_env_vars(s.model_dump(by_alias=True))) for s in cfg.mcp_servers]
