"""Confirmation/execution state machine for one batch of model tool calls."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Literal, Union

from toolpilot.config import ApprovalMode
from toolpilot.events import (
    BatchCancelled,
    ConfirmationRequest,
    Event,
    EventCallback,
    ToolCompleted,
    ToolExecuting,
    ToolExecutionFailed,
    ToolValidationFailed,
    UnknownToolRequested,
    resolve_callback,
)
from toolpilot.exceptions import (
    ConversationInvariantError,
    ExternalServerConnectionError,
    OrchestratorBusyError,
)
from toolpilot.llm import Message, ToolCall
from toolpilot.logging import get_logger
from toolpilot.message_builder import MessageBuilder
from toolpilot.tools.registry import Tool, ToolRegistry, ToolResult

log = get_logger(__name__)

CANCELLED_CONTENT = "Tool execution was cancelled by the user."
SKIPPED_CONTENT = "Tool execution was skipped because an earlier tool failed."


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AwaitingConfirmation:
    index: int


@dataclass(frozen=True)
class Executing:
    index: int


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class Cancelled:
    pass


OrchestratorState = Union[Idle, AwaitingConfirmation, Executing, Completed, Cancelled]


@dataclass(frozen=True)
class PendingExecutionContext:
    """Conversation snapshot captured when the model asked for tools."""

    messages_before_tool_execution: tuple[Message, ...]
    assistant_message: Message
    system_message: Message


@dataclass
class BatchOutcome:
    """How a batch ended and the message list it produced."""

    status: Literal["completed", "cancelled", "failed"]
    results: list[ToolResult]
    messages: list[Message]


ContinueConversation = Callable[[Message, list[Message]], Awaitable[None]]
MessagesUpdated = Callable[[list[Message]], None]


def create_cancellation_results(
    tool_calls: Sequence[ToolCall],
    content: str = CANCELLED_CONTENT,
) -> list[ToolResult]:
    """One error result per call, in call order."""
    return [ToolResult.for_call(call, content, is_error=True) for call in tool_calls]


class ToolExecutionOrchestrator:
    """Confirm, validate and execute tool calls strictly one at a time.

    Every call in a batch ends up with exactly one result. A completed batch
    continues the conversation; a cancelled or failed batch only publishes
    the padded message list and waits for new user input.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        mode: ApprovalMode = "normal",
        on_event: EventCallback | None = None,
        on_messages_updated: MessagesUpdated | None = None,
        continue_conversation: ContinueConversation | None = None,
    ):
        self.registry = registry
        self.mode: ApprovalMode = mode
        self._emit_event = resolve_callback(on_event)
        self._on_messages_updated = on_messages_updated
        self._continue_conversation = continue_conversation

        self._state: OrchestratorState = Idle()
        self._pending_calls: tuple[ToolCall, ...] = ()
        self._context: PendingExecutionContext | None = None
        self._current_index = 0
        self._completed_results: list[ToolResult] = []
        self._confirmation: asyncio.Future[bool] | None = None
        self._execution_task: asyncio.Task[str] | None = None
        self._cancel_requested = False

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_active(self) -> bool:
        return not isinstance(self._state, Idle)

    @property
    def pending_calls(self) -> tuple[ToolCall, ...]:
        return self._pending_calls

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def completed_results(self) -> tuple[ToolResult, ...]:
        return tuple(self._completed_results)

    @property
    def pending_context(self) -> PendingExecutionContext | None:
        return self._context

    def set_continue_conversation(self, callback: ContinueConversation | None) -> None:
        self._continue_conversation = callback

    def start_tool_confirmation_flow(
        self,
        tool_calls: Sequence[ToolCall],
        messages_before_tool_execution: Sequence[Message],
        assistant_message: Message,
        system_message: Message,
    ) -> asyncio.Task[BatchOutcome]:
        """Begin a batch and return the task driving it to its outcome."""
        if self.is_active:
            raise OrchestratorBusyError("A tool batch is already in progress")
        if assistant_message.role != "assistant":
            raise ConversationInvariantError("Tool calls must come from an assistant message")
        base = tuple(messages_before_tool_execution)
        if base and base[-1] is assistant_message:
            raise ConversationInvariantError(
                "messages_before_tool_execution already ends with the assistant message"
            )

        self._pending_calls = tuple(tool_calls)
        self._context = PendingExecutionContext(
            messages_before_tool_execution=base,
            assistant_message=assistant_message,
            system_message=system_message,
        )
        self._current_index = 0
        self._completed_results = []
        self._cancel_requested = False
        self._state = AwaitingConfirmation(0)

        log.info("Tool batch started", calls=len(self._pending_calls))
        return asyncio.get_running_loop().create_task(self._run_batch())

    def handle_tool_confirmation(self, confirmed: bool) -> None:
        """Answer the outstanding confirmation request."""
        future = self._confirmation
        if future is None or future.done():
            log.debug("Ignoring confirmation without a pending request", confirmed=confirmed)
            return
        future.set_result(bool(confirmed))

    def handle_tool_confirmation_cancel(self) -> None:
        """Cancel the active batch; unanswered calls get cancellation results."""
        if not self.is_active:
            return
        self._cancel_requested = True
        if self._confirmation is not None and not self._confirmation.done():
            self._confirmation.set_result(False)
        elif self._execution_task is not None and not self._execution_task.done():
            self._execution_task.cancel()

    async def _run_batch(self) -> BatchOutcome:
        context = self._context
        outcome = await self._drive()
        if outcome.status == "completed" and context is not None and self._continue_conversation:
            await self._continue_conversation(context.system_message, outcome.messages)
        return outcome

    async def _drive(self) -> BatchOutcome:
        try:
            for index, call in enumerate(self._pending_calls):
                self._current_index = index
                self._state = AwaitingConfirmation(index)
                if self._cancel_requested:
                    return self._finish_cancelled()

                tool = self.registry.get(call.name)
                if tool is None:
                    log.warning("Unknown tool requested", tool=call.name, tool_call_id=call.id)
                    self._emit(UnknownToolRequested(tool_name=call.name, tool_call_id=call.id))
                    self._completed_results.append(
                        ToolResult.for_call(call, f"Error: Unknown tool: {call.name}", is_error=True)
                    )
                    continue

                if tool.needs_approval(call.arguments, self.mode):
                    confirmed = await self._await_confirmation(call, index, tool)
                    if not confirmed:
                        self._cancel_requested = True
                        return self._finish_cancelled()

                self._state = Executing(index)
                self._emit(
                    ToolExecuting(
                        tool_name=call.name,
                        tool_call_id=call.id,
                        server_name=tool.origin.server_name,
                    )
                )
                # Hand off on the next loop tick so the Executing state is observable first.
                await asyncio.sleep(0)
                if self._cancel_requested:
                    return self._finish_cancelled()

                executed = await self._execute_call(tool, call)
                if executed is None:
                    return self._finish_cancelled()
                result, fatal = executed
                self._completed_results.append(result)
                if fatal:
                    return self._finish_failed()

            return self._finish_completed()
        finally:
            self._reset()

    async def _await_confirmation(self, call: ToolCall, index: int, tool: Tool) -> bool:
        self._confirmation = asyncio.get_running_loop().create_future()
        self._emit(
            ConfirmationRequest(
                tool_call=call,
                index=index,
                total=len(self._pending_calls),
                server_name=tool.origin.server_name,
            )
        )
        try:
            return await self._confirmation
        finally:
            self._confirmation = None

    async def _execute_call(self, tool: Tool, call: ToolCall) -> tuple[ToolResult, bool] | None:
        """Run validator and tool; returns (result, aborts_batch) or None if cancelled."""
        if tool.has_validator:
            try:
                validation = await tool.validate(call.arguments)
                error = None if validation.valid else validation.error
            except Exception as e:
                error = f"Validation error: {e}"
            if error is not None:
                log.info("Tool validation failed", tool=call.name, error=error)
                self._emit(ToolValidationFailed(tool_name=call.name, tool_call_id=call.id, error=error))
                return ToolResult.for_call(call, error, is_error=True), False

        if self._cancel_requested:
            log.info("Tool execution cancelled by user before it started", tool=call.name)
            return None

        self._execution_task = asyncio.get_running_loop().create_task(tool.execute(call.arguments))
        try:
            content = await self._execution_task
        except asyncio.CancelledError:
            if self._cancel_requested:
                log.info("Tool execution cancelled by user", tool=call.name)
                return None
            raise
        except ExternalServerConnectionError as e:
            message = f"Error: {e}"
            log.warning("External tool lost its server", tool=call.name, server=e.server_name, error=str(e))
            self._emit(
                ToolExecutionFailed(
                    tool_name=call.name,
                    tool_call_id=call.id,
                    error=message,
                    batch_aborted=False,
                )
            )
            return ToolResult.for_call(call, message, is_error=True), False
        except Exception as e:
            message = f"Error: {e}"
            log.error("Tool execution failed", tool=call.name, error=str(e))
            self._emit(ToolExecutionFailed(tool_name=call.name, tool_call_id=call.id, error=message))
            return ToolResult.for_call(call, message, is_error=True), True
        finally:
            self._execution_task = None

        if self._cancel_requested:
            log.info("Tool execution cancelled by user", tool=call.name)
            return None
        text = content if isinstance(content, str) else str(content)
        self._emit(ToolCompleted(tool_name=call.name, tool_call_id=call.id, content=text))
        return ToolResult.for_call(call, text), False

    def _finish_completed(self) -> BatchOutcome:
        self._state = Completed()
        results = list(self._completed_results)
        log.info("Tool batch completed", results=len(results))
        return BatchOutcome(status="completed", results=results, messages=self._publish(results))

    def _finish_cancelled(self) -> BatchOutcome:
        self._state = Cancelled()
        completed = list(self._completed_results)
        remaining = self._pending_calls[len(completed):]
        results = completed + create_cancellation_results(remaining)
        log.info("Tool batch cancelled", completed=len(completed), cancelled=len(remaining))
        self._emit(BatchCancelled(cancelled_calls=len(remaining), completed_calls=len(completed)))
        return BatchOutcome(status="cancelled", results=results, messages=self._publish(results))

    def _finish_failed(self) -> BatchOutcome:
        completed = list(self._completed_results)
        remaining = self._pending_calls[len(completed):]
        results = completed + create_cancellation_results(remaining, SKIPPED_CONTENT)
        log.info("Tool batch aborted after execution error", skipped=len(remaining))
        return BatchOutcome(status="failed", results=results, messages=self._publish(results))

    def _publish(self, results: list[ToolResult]) -> list[Message]:
        context = self._context
        if context is None:
            return []
        messages = (
            MessageBuilder(context.messages_before_tool_execution)
            .add_assistant_message(context.assistant_message)
            .add_tool_results(results)
            .build()
        )
        if self._on_messages_updated is not None:
            self._on_messages_updated(messages)
        return messages

    def _reset(self) -> None:
        self._state = Idle()
        self._pending_calls = ()
        self._context = None
        self._current_index = 0
        self._completed_results = []
        self._confirmation = None
        self._execution_task = None
        self._cancel_requested = False

    def _emit(self, event: Event) -> None:
        try:
            self._emit_event(event)
        except Exception as e:
            log.warning("Event callback failed", event=type(event).__name__, error=str(e))
