"""Structured display events emitted to the UI layer.

Events carry data only. Rendering, wording and layout belong to whoever
subscribes through an ``on_event`` callback.
"""

from dataclasses import dataclass
from typing import Callable, Union

from toolpilot.llm import ToolCall


@dataclass(frozen=True)
class ConfirmationRequest:
    """A tool call is waiting for the user to confirm or deny it."""

    tool_call: ToolCall
    index: int
    total: int
    server_name: str | None = None


@dataclass(frozen=True)
class ToolExecuting:
    tool_name: str
    tool_call_id: str
    server_name: str | None = None


@dataclass(frozen=True)
class ToolCompleted:
    tool_name: str
    tool_call_id: str
    content: str


@dataclass(frozen=True)
class ToolValidationFailed:
    tool_name: str
    tool_call_id: str
    error: str


@dataclass(frozen=True)
class ToolExecutionFailed:
    tool_name: str
    tool_call_id: str
    error: str
    batch_aborted: bool = True


@dataclass(frozen=True)
class UnknownToolRequested:
    tool_name: str
    tool_call_id: str


@dataclass(frozen=True)
class BatchCancelled:
    cancelled_calls: int
    completed_calls: int


@dataclass(frozen=True)
class CompactionOccurred:
    usage_percent: float
    original_tokens: int
    compressed_tokens: int
    reduction_percent: int

    def describe(self) -> str:
        """Plain-text summary suitable for an info line."""
        return (
            f"Context at {round(self.usage_percent)}% capacity - auto-compacting...\n"
            f"Context Compacted: {self.original_tokens:,} tokens -> "
            f"{self.compressed_tokens:,} tokens ({self.reduction_percent}% reduction)"
        )


@dataclass(frozen=True)
class ServerConnectionChanged:
    server_name: str
    status: str
    tool_count: int = 0
    error: str | None = None


Event = Union[
    ConfirmationRequest,
    ToolExecuting,
    ToolCompleted,
    ToolValidationFailed,
    ToolExecutionFailed,
    UnknownToolRequested,
    BatchCancelled,
    CompactionOccurred,
    ServerConnectionChanged,
]

EventCallback = Callable[[Event], None]


def _discard(event: Event) -> None:
    return None


def resolve_callback(callback: EventCallback | None) -> EventCallback:
    """Return callback or a no-op sink."""
    return callback if callable(callback) else _discard
