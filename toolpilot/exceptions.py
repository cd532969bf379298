"""Custom exceptions for toolpilot."""


class ToolpilotError(Exception):
    """Base exception for toolpilot."""

    pass


class ConfigurationError(ToolpilotError):
    """Configuration-related errors."""

    pass


class ToolError(ToolpilotError):
    """Tool execution errors."""

    pass


class ExternalServerError(ToolError):
    """Errors raised while talking to an external tool server."""

    def __init__(self, server_name: str, message: str):
        super().__init__(message)
        self.server_name = server_name


class TransportConfigError(ExternalServerError):
    """Server descriptor cannot be turned into a transport."""

    def __init__(self, server_name: str, errors: list[str]):
        joined = ", ".join(errors) if errors else "unknown error"
        super().__init__(
            server_name,
            f'Invalid MCP server configuration for "{server_name}": {joined}',
        )
        self.errors = list(errors)


class ExternalServerConnectionError(ExternalServerError):
    """Server unreachable, or the connection dropped mid-request."""

    pass


class ExternalServerRPCError(ExternalServerError):
    """Server answered a request with a JSON-RPC error member."""

    def __init__(self, server_name: str, message: str, code: int | None = None):
        super().__init__(server_name, message)
        self.code = code


class ExternalToolCallError(ExternalServerError):
    """Server answered a tool invocation with an error."""

    def __init__(self, server_name: str, tool_name: str, message: str):
        super().__init__(server_name, message)
        self.tool_name = tool_name


class ConversationInvariantError(ToolpilotError):
    """Message sequence would violate the function-calling contract."""

    pass


class OrchestratorBusyError(ToolpilotError):
    """A tool batch is already in progress."""

    pass


class ContextError(ToolpilotError):
    """Context window errors."""

    pass


class TokenizerError(ContextError):
    """Tokenizer could not be created for a provider/model pair."""

    def __init__(self, provider: str, model: str, message: str):
        super().__init__(f"Tokenizer unavailable for {provider}/{model}: {message}")
        self.provider = provider
        self.model = model
