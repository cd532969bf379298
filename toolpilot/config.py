"""Configuration management for toolpilot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from toolpilot.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.toolpilot/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

CompressionMode = Literal["default", "conservative", "aggressive"]
ApprovalMode = Literal["normal", "auto-accept", "plan"]
TransportType = Literal["stdio", "http", "websocket"]


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.1"


class AutoCompactConfig(BaseModel):
    """Automatic context compaction configuration."""

    enabled: bool = True
    threshold: int = Field(default=80, ge=1, le=100)
    mode: CompressionMode = "default"
    notify_user: bool = True
    keep_recent_messages: int = Field(default=2, ge=0)
    context_limits: dict[str, int] = Field(default_factory=dict)
    models_dev_lookup: bool = False
    models_dev_url: str = "https://models.dev/api.json"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    approval_mode: ApprovalMode = "normal"
    enabled: list[str] = ["read_file", "write_file"]
    workspace_path: str = "."


class MCPServerConfig(BaseModel):
    """Descriptor of one external tool server."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    transport: TransportType = "stdio"
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    always_allow: list[str] = Field(default_factory=list, alias="alwaysAllow")
    timeout: float | None = 60.0
    enabled: bool = True
    description: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for toolpilot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: AutoCompactConfig = Field(default_factory=AutoCompactConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TOOLPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; pydantic-settings layers env vars on top."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True, by_alias=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.tools.workspace_path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
