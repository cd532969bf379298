"""Append-only construction of conversation message lists."""

from collections.abc import Iterable, Sequence

from toolpilot.exceptions import ConversationInvariantError
from toolpilot.llm import Message
from toolpilot.tools.registry import ToolResult


class MessageBuilder:
    """Build a new message list on top of an untouched base sequence.

    The assistant message announcing tool calls must be followed directly by
    their tool results, so callers add them in that order:

        MessageBuilder(before).add_assistant_message(msg).add_tool_results(results).build()
    """

    def __init__(self, base: Sequence[Message] | None = None):
        self._base: tuple[Message, ...] = tuple(base or ())
        self._appended: list[Message] = []

    def add_assistant_message(self, message: Message) -> "MessageBuilder":
        if message.role != "assistant":
            raise ConversationInvariantError(
                f'add_assistant_message requires a message with role "assistant", got "{message.role}"'
            )
        self._appended.append(message)
        return self

    def add_tool_results(self, results: Iterable[ToolResult]) -> "MessageBuilder":
        for result in results:
            self._appended.append(
                Message(
                    role="tool",
                    content=result.content or "",
                    tool_call_id=result.tool_call_id,
                    name=result.name,
                )
            )
        return self

    def add_user_message(self, text: str) -> "MessageBuilder":
        self._appended.append(Message(role="user", content=text))
        return self

    def add_error_message(self, text: str) -> "MessageBuilder":
        """Record an error note for the model as a user-role message."""
        return self.add_user_message(text)

    def add_auto_executed_messages(self, messages: Iterable[Message]) -> "MessageBuilder":
        """Append already-paired assistant/tool messages produced elsewhere."""
        self._appended.extend(messages)
        return self

    def build(self) -> list[Message]:
        return [*self._base, *self._appended]
