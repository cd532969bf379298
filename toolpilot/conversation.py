"""Reference conversation loop wiring the model, budget check and tool batches."""

import asyncio

from toolpilot.config import Config, get_config
from toolpilot.context import AutoCompactSession, ContextBudgetManager
from toolpilot.events import EventCallback
from toolpilot.llm import LLMProvider, Message
from toolpilot.logging import get_logger
from toolpilot.message_builder import MessageBuilder
from toolpilot.orchestrator import BatchOutcome, MessagesUpdated, ToolExecutionOrchestrator
from toolpilot.tools.registry import ToolRegistry

log = get_logger(__name__)


class ConversationLoop:
    """Drive model turns until the model answers without tool calls.

    The budget check runs before every model call, including the call made
    when a tool batch completes and continues the conversation.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        config: Config | None = None,
        budget: ContextBudgetManager | None = None,
        session: AutoCompactSession | None = None,
        on_event: EventCallback | None = None,
        on_messages_updated: MessagesUpdated | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider
        self.registry = registry
        self.budget = budget or ContextBudgetManager(self.config.context, on_event=on_event)
        self.session = session or AutoCompactSession()
        self._on_messages_updated = on_messages_updated
        self._messages: list[Message] = []
        self._active_batch: asyncio.Task[BatchOutcome] | None = None
        self.orchestrator = ToolExecutionOrchestrator(
            registry,
            mode=self.config.tools.approval_mode,
            on_event=on_event,
            on_messages_updated=self._set_messages,
            continue_conversation=self._continue,
        )

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def _set_messages(self, messages: list[Message]) -> None:
        self._messages = list(messages)
        if self._on_messages_updated is not None:
            self._on_messages_updated(self.messages)

    async def submit_user_message(self, system_message: Message, text: str) -> None:
        messages = MessageBuilder(self._messages).add_user_message(text).build()
        self._set_messages(messages)
        await self.process_assistant_response(system_message, messages)

    async def process_assistant_response(
        self,
        system_message: Message,
        messages: list[Message],
    ) -> asyncio.Task[BatchOutcome] | None:
        """Run one model turn; returns the tool batch task if one was started."""
        compacted = await self.budget.check_and_compact_if_needed(
            messages,
            system_message,
            self.config.model.provider,
            self.config.model.model,
            self.config.context,
            self.session,
        )
        if compacted is not None:
            messages = compacted
            self._set_messages(messages)

        response = await self.provider.complete(
            [system_message, *messages],
            tools=self.registry.get_definitions() or None,
        )
        assistant = response.to_message()
        self._set_messages(MessageBuilder(messages).add_assistant_message(assistant).build())

        if not assistant.tool_calls:
            log.debug("Assistant turn finished without tool calls")
            return None

        log.info("Assistant requested tools", tools=[call.name for call in assistant.tool_calls])
        self._active_batch = self.orchestrator.start_tool_confirmation_flow(
            assistant.tool_calls,
            messages,
            assistant,
            system_message,
        )
        return self._active_batch

    async def _continue(self, system_message: Message, messages: list[Message]) -> None:
        await self.process_assistant_response(system_message, messages)

    async def wait_until_idle(self) -> None:
        """Await tool batches, including those started by continuations."""
        while self._active_batch is not None:
            batch = self._active_batch
            await batch
            if self._active_batch is batch:
                self._active_batch = None
