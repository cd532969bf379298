import asyncio
from typing import Any

import pytest

from toolpilot.events import (
    BatchCancelled,
    ConfirmationRequest,
    ToolCompleted,
    ToolExecuting,
    ToolExecutionFailed,
    ToolValidationFailed,
    UnknownToolRequested,
)
from toolpilot.exceptions import (
    ConversationInvariantError,
    ExternalServerConnectionError,
    OrchestratorBusyError,
)
from toolpilot.llm import Message, ToolCall
from toolpilot.orchestrator import (
    CANCELLED_CONTENT,
    SKIPPED_CONTENT,
    AwaitingConfirmation,
    Executing,
    Idle,
    ToolExecutionOrchestrator,
)
from toolpilot.tools.registry import Tool, ToolRegistry, ValidationResult

SYSTEM = Message(role="system", content="You are a coding agent.")
BASE = [Message(role="user", content="please look at the file")]


class RecordingTool(Tool):
    description = "Test tool"
    parameters = {"type": "object", "properties": {}}

    def __init__(self, name: str, result: str = "contents", approval: bool = False, error: Exception | None = None):
        self.name = name
        self.result = result
        self.approval = approval
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def needs_approval(self, arguments, mode) -> bool:
        return self.approval and mode != "auto-accept"

    async def execute(self, arguments: dict[str, Any]) -> str:
        self.calls.append(arguments)
        if self.error is not None:
            raise self.error
        return self.result


class ValidatedTool(RecordingTool):
    def __init__(self, name: str, validation: ValidationResult | Exception, **kwargs):
        super().__init__(name, **kwargs)
        self.validation = validation

    async def validate(self, arguments: dict[str, Any]) -> ValidationResult:
        if isinstance(self.validation, Exception):
            raise self.validation
        return self.validation


class BlockingTool(RecordingTool):
    def __init__(self, name: str):
        super().__init__(name)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, arguments: dict[str, Any]) -> str:
        self.calls.append(arguments)
        self.started.set()
        await self.release.wait()
        return "released"


class SlowValidatorTool(RecordingTool):
    def __init__(self, name: str):
        super().__init__(name, result="wrote file")
        self.validating = asyncio.Event()
        self.release = asyncio.Event()

    async def validate(self, arguments: dict[str, Any]) -> ValidationResult:
        self.validating.set()
        await self.release.wait()
        return ValidationResult(valid=True)


class StubbornTool(RecordingTool):
    """Ignores cancellation and finishes anyway."""

    def __init__(self, name: str):
        super().__init__(name, result="finished regardless")
        self.started = asyncio.Event()

    async def execute(self, arguments: dict[str, Any]) -> str:
        self.calls.append(arguments)
        self.started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            pass
        return self.result


class Harness:
    def __init__(self, *tools: Tool, mode: str = "normal"):
        self.registry = ToolRegistry(tools)
        self.events: list[Any] = []
        self.published: list[list[Message]] = []
        self.continuations: list[tuple[Message, list[Message]]] = []
        self.orchestrator = ToolExecutionOrchestrator(
            self.registry,
            mode=mode,
            on_event=self.events.append,
            on_messages_updated=self.published.append,
            continue_conversation=self._continue,
        )

    async def _continue(self, system_message: Message, messages: list[Message]) -> None:
        self.continuations.append((system_message, messages))

    def start(self, *calls: ToolCall):
        assistant = Message(role="assistant", content="", tool_calls=tuple(calls))
        task = self.orchestrator.start_tool_confirmation_flow(list(calls), BASE, assistant, SYSTEM)
        return task, assistant

    def events_of(self, kind):
        return [event for event in self.events if isinstance(event, kind)]


async def wait_for_state(orchestrator: ToolExecutionOrchestrator, kind, index: int | None = None) -> None:
    for _ in range(200):
        state = orchestrator.state
        if isinstance(state, kind) and (index is None or state.index == index):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"orchestrator never reached {kind.__name__}; state={orchestrator.state}")


@pytest.mark.asyncio
async def test_approved_call_executes_and_continues_conversation():
    tool = RecordingTool("read_file", result="contents", approval=True)
    harness = Harness(tool)
    call = ToolCall(id="1", name="read_file", arguments={"path": "a.txt"})

    task, assistant = harness.start(call)
    await wait_for_state(harness.orchestrator, AwaitingConfirmation, 0)
    assert len(harness.events_of(ConfirmationRequest)) == 1
    assert tool.calls == []

    harness.orchestrator.handle_tool_confirmation(True)
    outcome = await task

    assert outcome.status == "completed"
    assert outcome.messages[-2:] == [
        assistant,
        Message(role="tool", content="contents", tool_call_id="1", name="read_file"),
    ]
    assert harness.continuations == [(SYSTEM, outcome.messages)]
    assert harness.published == [outcome.messages]
    assert isinstance(harness.orchestrator.state, Idle)


@pytest.mark.asyncio
async def test_executing_state_is_observable_before_execution_starts():
    tool = RecordingTool("read_file", approval=True)
    harness = Harness(tool)

    task, _ = harness.start(ToolCall(id="1", name="read_file"))
    await wait_for_state(harness.orchestrator, AwaitingConfirmation, 0)
    harness.orchestrator.handle_tool_confirmation(True)
    await wait_for_state(harness.orchestrator, Executing, 0)

    assert tool.calls == []
    assert len(harness.events_of(ToolExecuting)) == 1
    await task
    assert tool.calls == [{}]


@pytest.mark.asyncio
async def test_failed_validation_skips_execute_and_batch_continues():
    checked = ValidatedTool("read_file", ValidationResult.invalid("bad path"))
    follow_up = RecordingTool("list_dir", result="a.txt")
    harness = Harness(checked, follow_up)

    task, _ = harness.start(ToolCall(id="1", name="read_file"), ToolCall(id="2", name="list_dir"))
    outcome = await task

    assert checked.calls == []
    assert outcome.status == "completed"
    assert [r.content for r in outcome.results] == ["bad path", "a.txt"]
    assert outcome.results[0].is_error is True
    assert outcome.messages[-2].content == "bad path"
    assert len(harness.events_of(ToolValidationFailed)) == 1
    assert len(harness.continuations) == 1


@pytest.mark.asyncio
async def test_raising_validator_is_reported_as_validation_error():
    tool = ValidatedTool("read_file", ValueError("schema mismatch"))
    harness = Harness(tool)

    outcome = await harness.start(ToolCall(id="1", name="read_file"))[0]

    assert outcome.results[0].content == "Validation error: schema mismatch"
    assert tool.calls == []
    assert outcome.status == "completed"


@pytest.mark.asyncio
async def test_denying_first_confirmation_cancels_whole_batch():
    first = RecordingTool("write_file", approval=True)
    second = RecordingTool("read_file", approval=True)
    harness = Harness(first, second)

    task, _ = harness.start(ToolCall(id="1", name="write_file"), ToolCall(id="2", name="read_file"))
    await wait_for_state(harness.orchestrator, AwaitingConfirmation, 0)
    harness.orchestrator.handle_tool_confirmation(False)
    outcome = await task

    assert outcome.status == "cancelled"
    assert [r.tool_call_id for r in outcome.results] == ["1", "2"]
    assert all(r.content == CANCELLED_CONTENT and r.is_error for r in outcome.results)
    assert first.calls == [] and second.calls == []
    assert harness.continuations == []
    assert harness.published == [outcome.messages]
    assert harness.events_of(BatchCancelled) == [BatchCancelled(cancelled_calls=2, completed_calls=0)]


@pytest.mark.asyncio
async def test_cancel_keeps_completed_results_and_pads_the_rest():
    done = RecordingTool("read_file", result="first")
    pending = RecordingTool("write_file", approval=True)
    harness = Harness(done, pending)

    task, _ = harness.start(
        ToolCall(id="1", name="read_file"),
        ToolCall(id="2", name="write_file"),
        ToolCall(id="3", name="read_file"),
    )
    await wait_for_state(harness.orchestrator, AwaitingConfirmation, 1)
    harness.orchestrator.handle_tool_confirmation_cancel()
    outcome = await task

    assert [r.content for r in outcome.results] == ["first", CANCELLED_CONTENT, CANCELLED_CONTENT]
    assert len(done.calls) == 1
    assert harness.continuations == []


@pytest.mark.asyncio
async def test_cancel_during_execution_interrupts_running_tool():
    blocking = BlockingTool("slow_tool")
    harness = Harness(blocking)

    task, _ = harness.start(ToolCall(id="1", name="slow_tool"), ToolCall(id="2", name="slow_tool"))
    await asyncio.wait_for(blocking.started.wait(), timeout=1)
    assert isinstance(harness.orchestrator.state, Executing)

    harness.orchestrator.handle_tool_confirmation_cancel()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.status == "cancelled"
    assert [r.content for r in outcome.results] == [CANCELLED_CONTENT, CANCELLED_CONTENT]
    assert len(blocking.calls) == 1
    assert isinstance(harness.orchestrator.state, Idle)


@pytest.mark.asyncio
async def test_cancel_during_validation_prevents_execution():
    tool = SlowValidatorTool("write_file")
    harness = Harness(tool)

    task, _ = harness.start(ToolCall(id="1", name="write_file", arguments={"path": "a.txt"}))
    await asyncio.wait_for(tool.validating.wait(), timeout=1)
    assert isinstance(harness.orchestrator.state, Executing)

    harness.orchestrator.handle_tool_confirmation_cancel()
    tool.release.set()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.status == "cancelled"
    assert [r.content for r in outcome.results] == [CANCELLED_CONTENT]
    assert tool.calls == []
    assert harness.continuations == []
    assert harness.events_of(ToolCompleted) == []


@pytest.mark.asyncio
async def test_tool_ignoring_cancellation_still_gets_cancelled_result():
    tool = StubbornTool("slow_tool")
    harness = Harness(tool)

    task, _ = harness.start(ToolCall(id="1", name="slow_tool"))
    await asyncio.wait_for(tool.started.wait(), timeout=1)

    harness.orchestrator.handle_tool_confirmation_cancel()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.status == "cancelled"
    assert [r.content for r in outcome.results] == [CANCELLED_CONTENT]
    assert harness.continuations == []
    assert harness.events_of(ToolCompleted) == []


@pytest.mark.asyncio
async def test_execution_error_aborts_without_continuation():
    tool = RecordingTool("write_file", error=OSError("disk full"))
    harness = Harness(tool)

    outcome = await harness.start(ToolCall(id="1", name="write_file"))[0]

    assert outcome.status == "failed"
    assert len(outcome.results) == 1
    assert outcome.results[0].is_error is True
    assert outcome.results[0].content == "Error: disk full"
    assert harness.continuations == []
    assert harness.published == [outcome.messages]
    assert isinstance(harness.orchestrator.state, Idle)
    failures = harness.events_of(ToolExecutionFailed)
    assert len(failures) == 1 and failures[0].batch_aborted is True


@pytest.mark.asyncio
async def test_execution_error_pads_remaining_calls_as_skipped():
    broken = RecordingTool("write_file", error=RuntimeError("disk full"))
    later = RecordingTool("read_file")
    harness = Harness(broken, later)

    outcome = await harness.start(ToolCall(id="1", name="write_file"), ToolCall(id="2", name="read_file"))[0]

    assert [r.content for r in outcome.results] == ["Error: disk full", SKIPPED_CONTENT]
    assert later.calls == []
    assert len(outcome.messages) == len(BASE) + 1 + 2


@pytest.mark.asyncio
async def test_lost_server_connection_is_recoverable():
    remote = RecordingTool("remote_search", error=ExternalServerConnectionError("alpha", "connection lost"))
    local = RecordingTool("read_file", result="ok")
    harness = Harness(remote, local)

    outcome = await harness.start(ToolCall(id="1", name="remote_search"), ToolCall(id="2", name="read_file"))[0]

    assert outcome.status == "completed"
    assert outcome.results[0].content == "Error: connection lost"
    assert outcome.results[1].content == "ok"
    assert harness.events_of(ToolExecutionFailed)[0].batch_aborted is False
    assert len(harness.continuations) == 1


@pytest.mark.asyncio
async def test_unknown_tool_gets_error_result_and_batch_continues():
    known = RecordingTool("read_file", result="text")
    harness = Harness(known)

    outcome = await harness.start(ToolCall(id="1", name="does_not_exist"), ToolCall(id="2", name="read_file"))[0]

    assert outcome.results[0].content == "Error: Unknown tool: does_not_exist"
    assert outcome.results[0].is_error is True
    assert outcome.results[1].content == "text"
    assert harness.events_of(UnknownToolRequested) == [
        UnknownToolRequested(tool_name="does_not_exist", tool_call_id="1")
    ]
    assert len(harness.continuations) == 1


@pytest.mark.asyncio
async def test_auto_accept_mode_skips_confirmation():
    tool = RecordingTool("write_file", approval=True)
    harness = Harness(tool, mode="auto-accept")

    outcome = await harness.start(ToolCall(id="1", name="write_file"))[0]

    assert harness.events_of(ConfirmationRequest) == []
    assert outcome.status == "completed"
    assert len(harness.events_of(ToolCompleted)) == 1


@pytest.mark.asyncio
async def test_second_batch_while_active_is_rejected():
    tool = RecordingTool("write_file", approval=True)
    harness = Harness(tool)

    task, _ = harness.start(ToolCall(id="1", name="write_file"))
    await wait_for_state(harness.orchestrator, AwaitingConfirmation, 0)

    with pytest.raises(OrchestratorBusyError):
        harness.start(ToolCall(id="2", name="write_file"))

    harness.orchestrator.handle_tool_confirmation_cancel()
    await task
    assert isinstance(harness.orchestrator.state, Idle)


@pytest.mark.asyncio
async def test_assistant_message_already_in_base_is_rejected():
    harness = Harness(RecordingTool("read_file"))
    call = ToolCall(id="1", name="read_file")
    assistant = Message(role="assistant", tool_calls=(call,))

    with pytest.raises(ConversationInvariantError):
        harness.orchestrator.start_tool_confirmation_flow([call], [*BASE, assistant], assistant, SYSTEM)


@pytest.mark.asyncio
async def test_executions_never_overlap():
    active = 0
    peak = 0

    class CountingTool(RecordingTool):
        async def execute(self, arguments):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "done"

    harness = Harness(CountingTool("a"), CountingTool("b"))
    calls = [ToolCall(id=str(i), name="a" if i % 2 else "b") for i in range(6)]

    outcome = await harness.start(*calls)[0]

    assert peak == 1
    assert [r.tool_call_id for r in outcome.results] == [c.id for c in calls]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "plan",
    [
        ["ok"],
        ["ok", "invalid", "unknown", "ok"],
        ["unknown", "unknown"],
        ["ok", "deny", "ok"],
        ["invalid", "ok", "raise", "ok", "ok"],
        ["approve", "approve", "deny"],
    ],
)
async def test_every_call_gets_exactly_one_result_in_order(plan):
    tools = {
        "ok": RecordingTool("ok_tool", result="fine"),
        "invalid": ValidatedTool("invalid_tool", ValidationResult.invalid("nope")),
        "raise": RecordingTool("raise_tool", error=RuntimeError("boom")),
        "approve": RecordingTool("approve_tool", approval=True),
        "deny": RecordingTool("deny_tool", approval=True),
    }
    harness = Harness(*tools.values())
    calls = [ToolCall(id=f"c{i}", name=f"{kind}_tool") for i, kind in enumerate(plan)]

    task, assistant = harness.start(*calls)
    while not task.done():
        state = harness.orchestrator.state
        if isinstance(state, AwaitingConfirmation) and harness.events_of(ConfirmationRequest):
            request = harness.events_of(ConfirmationRequest)[-1]
            if request.index == state.index and harness.orchestrator.pending_calls:
                harness.orchestrator.handle_tool_confirmation(request.tool_call.name != "deny_tool")
        await asyncio.sleep(0)
    outcome = task.result()

    assert len(outcome.results) == len(calls)
    assert [r.tool_call_id for r in outcome.results] == [c.id for c in calls]
    assert len(outcome.messages) == len(BASE) + 1 + len(calls)
    assert outcome.messages[len(BASE)] == assistant
    assert [m.tool_call_id for m in outcome.messages[len(BASE) + 1:]] == [c.id for c in calls]
