"""End-to-end workflow runs against the filesystem store and escalation queue."""

import asyncio

import pytest

from stepwise import events
from stepwise.config import EscalationConfig, RetryConfig
from stepwise.contracts import (
    EscalationStatus,
    StepOutcome,
    WorkflowState,
    WorkflowStatus,
)
from stepwise.decision import DecisionEngine
from stepwise.errors import (
    FatalInputError,
    NotResumableError,
    TransientHandlerError,
    WorkflowCancelledError,
    WorkflowFailedError,
    WorkflowNotFoundError,
)
from stepwise.escalation import EscalationQueue
from stepwise.events import EventBus
from stepwise.execute import HandlerKind, StepResult, StepSpec, WorkflowExecutor
from stepwise.persistence import FileStateStore, InMemoryStateStore
from tests.fixtures.fakes import ScriptedAgent


class Recorder:
    """Collects step invocations and backoff sleeps."""

    def __init__(self):
        self.calls = []
        self.sleeps = []

    async def sleep(self, delay):
        self.sleeps.append(delay)


def tool_step(name, recorder, output=None):
    async def handler(ctx):
        recorder.calls.append((name, ctx.attempt))
        return StepResult.ok(output if output is not None else f"{name}-done", {name: True})

    return StepSpec(name=name, kind=HandlerKind.TOOL, handler=handler)


def decision_step(name, recorder):
    async def handler(ctx):
        recorder.calls.append((name, ctx.attempt))
        if ctx.escalation_response is not None:
            return StepResult.ok(ctx.escalation_response)
        decision = await ctx.decide("Which database should we use?", {"team": "payments"})
        if ctx.requires_escalation(decision):
            return StepResult.escalate(
                decision.question,
                {"rationale": decision.rationale},
                confidence=decision.confidence,
            )
        return StepResult.ok(decision.decision_value)

    return StepSpec(name=name, kind=HandlerKind.DECISION, handler=handler)


def flaky_step(name, recorder, failures, **kwargs):
    async def handler(ctx):
        recorder.calls.append((name, ctx.attempt))
        if ctx.attempt <= failures:
            raise TransientHandlerError(f"rate limited #{ctx.attempt}", **kwargs)
        return StepResult.ok("recovered")

    return name, handler


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def queue(tmp_path, bus):
    return EscalationQueue(tmp_path / "escalations", event_bus=bus)


@pytest.fixture
def store(tmp_path):
    return FileStateStore(tmp_path / "state")


@pytest.fixture
def recorder():
    return Recorder()


def make_executor(store, queue, bus, recorder, confidence=0.6, **retry):
    retry.setdefault("jitter", 0.0)
    return WorkflowExecutor(
        store,
        escalation_queue=queue,
        decision_engine=DecisionEngine(
            ScriptedAgent(content="postgres", confidence=confidence), EscalationConfig()
        ),
        event_bus=bus,
        retry_config=RetryConfig(**retry),
        sleep=recorder.sleep,
    )


@pytest.mark.asyncio
async def test_low_confidence_decision_pauses_then_completes(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder, confidence=0.6)
    steps = [
        tool_step("fetch", recorder),
        tool_step("analyse", recorder),
        decision_step("choose", recorder),
    ]

    handle = await executor.execute("wf-a", steps)
    assert handle.paused
    state = await store.load("wf-a")
    assert state.status == WorkflowStatus.PAUSED
    assert state.current_step_index == 2

    pending = await queue.list(status=EscalationStatus.PENDING)
    assert len(pending) == 1
    assert pending[0].step_index == 2
    assert pending[0].confidence == 0.6
    assert pending[0].id == handle.escalation_id

    await queue.respond(pending[0].id, "approve")
    final = await handle.wait(timeout=5)

    assert final.status == WorkflowStatus.COMPLETED
    assert handle.outputs["choose"] == "approve"
    assert recorder.calls == [("fetch", 1), ("analyse", 1), ("choose", 1), ("choose", 1)]
    assert (await store.load("wf-a")).status == WorkflowStatus.COMPLETED
    assert [e.name for e in bus.history] == [
        events.WORKFLOW_STARTED,
        events.STEP_COMPLETED,
        events.STEP_COMPLETED,
        events.ESCALATION_CREATED,
        events.WORKFLOW_PAUSED,
        events.ESCALATION_RESOLVED,
        events.STEP_COMPLETED,
        events.WORKFLOW_COMPLETED,
    ]
    completed = bus.events(events.STEP_COMPLETED)
    assert [e.payload["index"] for e in completed] == [0, 1, 2]
    assert [e.payload["name"] for e in completed] == ["fetch", "analyse", "choose"]


@pytest.mark.asyncio
async def test_confident_decision_runs_straight_through(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder, confidence=0.9)
    handle = await executor.execute("wf-sure", [decision_step("choose", recorder)])
    state = await handle.wait(timeout=1)
    assert state.status == WorkflowStatus.COMPLETED
    assert handle.outputs == {"choose": "postgres"}
    assert await queue.list() == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder, backoff_base=2.0)
    name, handler = flaky_step("deploy", recorder, failures=2)
    steps = [StepSpec(name=name, kind=HandlerKind.AGENT, handler=handler, max_retries=3)]

    handle = await executor.execute("wf-b", steps)
    state = await handle.wait(timeout=1)

    assert state.status == WorkflowStatus.COMPLETED
    entry = state.step_log[0]
    assert entry.retries == 2
    assert entry.attempts == 3
    assert entry.outcome == StepOutcome.COMPLETED
    assert recorder.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_retry_exhaustion_escalates_with_error(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    name, handler = flaky_step("deploy", recorder, failures=99)
    steps = [StepSpec(name=name, kind=HandlerKind.AGENT, handler=handler, max_retries=3)]

    handle = await executor.execute("wf-c", steps)
    assert handle.paused
    assert len(recorder.calls) == 4

    state = await store.load("wf-c")
    assert state.status == WorkflowStatus.PAUSED
    assert state.step_log[0].outcome == StepOutcome.ESCALATED
    assert state.step_log[0].retries == 3

    (record,) = await queue.list(workflow_id="wf-c")
    assert "rate limited #4" in record.context["error"]
    assert record.context["attempts"] == 4


@pytest.mark.asyncio
async def test_handler_kind_sets_default_retry_budget(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    name, handler = flaky_step("tool", recorder, failures=99)
    await executor.execute("wf-tool", [StepSpec(name=name, kind=HandlerKind.TOOL, handler=handler)])
    assert len(recorder.calls) == 3


@pytest.mark.asyncio
async def test_exhaustion_without_escalation_fails(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    name, handler = flaky_step("upload", recorder, failures=99)
    steps = [
        tool_step("prepare", recorder),
        StepSpec(name=name, handler=handler, max_retries=1, escalate_on_exhaustion=False),
    ]

    with pytest.raises(WorkflowFailedError) as exc_info:
        await executor.execute("wf-fail", steps)
    assert exc_info.value.step_index == 1
    assert "rate limited #2" in exc_info.value.message

    state = await store.load("wf-fail")
    assert state.status == WorkflowStatus.FAILED
    assert state.failed_step_index == 1
    assert await queue.list() == []
    failed = bus.events(events.WORKFLOW_FAILED)[0]
    assert failed.payload["stepIndex"] == 1


@pytest.mark.asyncio
async def test_exhaustion_with_partial_output_escalates(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    name, handler = flaky_step("summarise", recorder, failures=99, partial_output="half a summary")
    steps = [StepSpec(name=name, handler=handler, max_retries=0, escalate_on_exhaustion=False)]

    handle = await executor.execute("wf-partial", steps)
    assert handle.paused
    (record,) = await queue.list()
    assert record.context["partial_output"] == "half a summary"


@pytest.mark.asyncio
async def test_fatal_errors_are_not_retried(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)

    async def handler(ctx):
        recorder.calls.append(ctx.attempt)
        raise FatalInputError("missing repository url")

    with pytest.raises(WorkflowFailedError):
        await executor.execute("wf-fatal", [StepSpec(name="clone", handler=handler)])
    assert recorder.calls == [1]
    state = await executor.get_state("wf-fatal")
    assert state.last_error == "missing repository url"
    with pytest.raises(NotResumableError):
        await executor.resume("wf-fatal")


@pytest.mark.asyncio
async def test_resume_completed_workflow_is_idempotent(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder), tool_step("b", recorder)]
    await executor.execute("wf-done", steps)
    calls = list(recorder.calls)

    handle = await executor.resume("wf-done", steps)
    assert (await handle.wait(timeout=1)).status == WorkflowStatus.COMPLETED
    assert recorder.calls == calls

    fresh = make_executor(store, queue, bus, recorder)
    handle = await fresh.resume("wf-done", steps)
    assert handle.outputs == {"a": "a-done", "b": "b-done"}
    assert recorder.calls == calls


@pytest.mark.asyncio
async def test_resume_unknown_workflow(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    with pytest.raises(WorkflowNotFoundError):
        await executor.resume("nope", [tool_step("a", recorder)])


@pytest.mark.asyncio
async def test_execute_rejects_existing_workflow(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder)]
    await executor.execute("wf-dup", steps)
    with pytest.raises(FatalInputError):
        await executor.execute("wf-dup", steps)


@pytest.mark.asyncio
async def test_recovery_after_crash_skips_persisted_steps(store, queue, bus, recorder):
    crashed = WorkflowState(id="wf-crash", current_step_index=1, variables={"a": True})
    crashed.transition(WorkflowStatus.RUNNING)
    await store.save(crashed)

    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder), tool_step("b", recorder), tool_step("c", recorder)]
    handle = await executor.resume("wf-crash", steps)

    state = await handle.wait(timeout=1)
    assert state.status == WorkflowStatus.COMPLETED
    assert recorder.calls == [("b", 1), ("c", 1)]
    assert state.variables == {"a": True, "b": True, "c": True}


@pytest.mark.asyncio
async def test_start_from_index(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder), tool_step("b", recorder)]
    await executor.execute("wf-skip", steps, start_from_index=1, variables={"seed": 1})
    assert recorder.calls == [("b", 1)]
    with pytest.raises(FatalInputError):
        await executor.execute("wf-bad-index", steps, start_from_index=3)


@pytest.mark.asyncio
async def test_restart_runs_from_first_step(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder), tool_step("b", recorder)]
    await executor.execute("wf-restart", steps)

    handle = await executor.resume("wf-restart", steps, restart=True)
    assert (await handle.wait(timeout=1)).status == WorkflowStatus.COMPLETED
    assert recorder.calls == [("a", 1), ("b", 1), ("a", 1), ("b", 1)]


@pytest.mark.asyncio
async def test_cancel_stops_between_steps(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)

    async def cancelling(ctx):
        recorder.calls.append(("first", ctx.attempt))
        executor.cancel(ctx.workflow_id, "operator request")
        return StepResult.ok("done")

    steps = [StepSpec(name="first", handler=cancelling), tool_step("second", recorder)]
    with pytest.raises(WorkflowCancelledError):
        await executor.execute("wf-cancel", steps)

    assert recorder.calls == [("first", 1)]
    state = await store.load("wf-cancel")
    assert state.status == WorkflowStatus.FAILED
    assert state.current_step_index == 1
    assert "operator request" in state.last_error


@pytest.mark.asyncio
async def test_cancel_checked_before_retry(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)

    async def failing(ctx):
        recorder.calls.append(("flaky", ctx.attempt))
        executor.cancel(ctx.workflow_id)
        raise TransientHandlerError("timeout")

    with pytest.raises(WorkflowCancelledError):
        await executor.execute("wf-cancel-retry", [StepSpec(name="flaky", handler=failing)])
    assert recorder.calls == [("flaky", 1)]
    assert recorder.sleeps == []


@pytest.mark.asyncio
async def test_abort_paused_workflow(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder, confidence=0.2)
    handle = await executor.execute("wf-abort", [decision_step("choose", recorder)])
    escalation_id = handle.escalation_id

    state = await executor.abort("wf-abort", "requirements changed")
    assert state.status == WorkflowStatus.FAILED
    assert (await queue.get_by_id(escalation_id)).status == EscalationStatus.CANCELLED
    assert await executor.status("wf-abort") == WorkflowStatus.FAILED
    with pytest.raises(WorkflowCancelledError):
        await handle.wait(timeout=1)
    with pytest.raises(NotResumableError):
        await executor.abort("wf-abort", "again")


@pytest.mark.asyncio
async def test_answer_from_another_process_resumes_via_resume_resolved(
    tmp_path, store, queue, bus, recorder
):
    steps = [tool_step("fetch", recorder), decision_step("choose", recorder)]
    first = make_executor(store, queue, bus, recorder)
    handle = await first.execute("wf-cli", steps)
    assert handle.paused

    # e.g. answered through the CLI: a separate queue instance without listeners
    cli_queue = EscalationQueue(tmp_path / "escalations")
    await cli_queue.respond(handle.escalation_id, "mysql")

    restarted_queue = EscalationQueue(tmp_path / "escalations")
    second = make_executor(store, restarted_queue, bus, recorder)
    handles = await second.resume_resolved({"wf-cli": steps, "wf-unknown": steps})

    assert list(handles) == ["wf-cli"]
    state = await handles["wf-cli"].wait(timeout=1)
    assert state.status == WorkflowStatus.COMPLETED
    assert handles["wf-cli"].outputs["choose"] == "mysql"
    assert recorder.calls.count(("fetch", 1)) == 1


@pytest.mark.asyncio
async def test_explicit_resume_with_pending_escalation_reruns_step(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder, confidence=0.6)
    steps = [decision_step("choose", recorder)]
    handle = await executor.execute("wf-rerun", steps)
    first_escalation = handle.escalation_id

    executor.decision_engine.agent.confidence = 0.95
    await executor.resume("wf-rerun", steps)

    assert (await handle.wait(timeout=1)).status == WorkflowStatus.COMPLETED
    assert (await queue.get_by_id(first_escalation)).status == EscalationStatus.CANCELLED


@pytest.mark.asyncio
async def test_agent_timeout_is_transient(store, queue, bus, recorder):
    class SlowAgent:
        async def invoke(self, prompt_context):
            await asyncio.sleep(10)

    executor = make_executor(store, queue, bus, recorder, agent_timeout=0.01)

    async def handler(ctx):
        recorder.calls.append(ctx.attempt)
        await ctx.invoke_agent(SlowAgent(), {"prompt": "hi"})
        return StepResult.ok()

    steps = [StepSpec(name="ask", kind=HandlerKind.AGENT, handler=handler, max_retries=1)]
    handle = await executor.execute("wf-slow", steps)
    assert handle.paused
    assert recorder.calls == [1, 2]
    (record,) = await queue.list(workflow_id="wf-slow")
    assert "timed out" in record.context["error"]


@pytest.mark.asyncio
async def test_resume_resolved_skips_corrupt_escalation(tmp_path, store, queue, bus, recorder):
    steps = [decision_step("choose", recorder)]
    executor = make_executor(store, queue, bus, recorder)
    broken = await executor.execute("wf-broken", steps)
    healthy = await executor.execute("wf-healthy", steps)

    (tmp_path / "escalations" / f"{broken.escalation_id}.json").write_text("{oops")
    await EscalationQueue(tmp_path / "escalations").respond(healthy.escalation_id, "sqlite")

    fresh = make_executor(store, EscalationQueue(tmp_path / "escalations"), bus, recorder)
    handles = await fresh.resume_resolved({"wf-broken": steps, "wf-healthy": steps})
    assert list(handles) == ["wf-healthy"]
    assert handles["wf-healthy"].outputs == {"choose": "sqlite"}
    assert await store.load("wf-broken") is not None
    assert (await store.load("wf-broken")).status == WorkflowStatus.PAUSED


class FlakyStore(InMemoryStateStore):
    """In-memory store whose saves start failing after ``fail_after`` calls."""

    def __init__(self, fail_after=None):
        super().__init__()
        self.fail_after = fail_after
        self.saves = 0

    async def save(self, state):
        self.saves += 1
        if self.fail_after is not None and self.saves > self.fail_after:
            raise OSError("disk full")
        await super().save(state)


@pytest.mark.asyncio
async def test_fresh_executor_resumes_without_step_definitions(store, queue, bus, recorder):
    executor = make_executor(store, queue, bus, recorder)
    await executor.execute("wf-known", [tool_step("a", recorder)])
    await executor.execute("wf-waiting", [decision_step("choose", recorder)])

    fresh = WorkflowExecutor(store)
    handle = await fresh.resume("wf-known")
    assert (await handle.wait(timeout=1)).status == WorkflowStatus.COMPLETED
    assert handle.outputs == {"a": "a-done"}

    with pytest.raises(WorkflowNotFoundError):
        await fresh.resume("nope")
    with pytest.raises(FatalInputError):
        await fresh.resume("wf-waiting")


@pytest.mark.asyncio
async def test_hanging_decision_agent_times_out_and_escalates(store, queue, bus, recorder):
    class HangingAgent:
        async def invoke(self, prompt_context):
            await asyncio.sleep(10)

    executor = WorkflowExecutor(
        store,
        escalation_queue=queue,
        decision_engine=DecisionEngine(HangingAgent()),
        event_bus=bus,
        retry_config=RetryConfig(agent_timeout=0.01, jitter=0.0),
        sleep=recorder.sleep,
    )
    handle = await asyncio.wait_for(
        executor.execute("wf-hang", [decision_step("choose", recorder)]), timeout=2
    )

    assert handle.paused
    assert len(recorder.calls) == 4
    (record,) = await queue.list(workflow_id="wf-hang")
    assert "Decision in step choose timed out" in record.context["error"]


@pytest.mark.asyncio
async def test_storage_failure_fails_workflow_and_stays_recoverable(queue, bus, recorder):
    store = FlakyStore(fail_after=2)
    executor = make_executor(store, queue, bus, recorder)
    steps = [tool_step("a", recorder), tool_step("b", recorder)]

    with pytest.raises(WorkflowFailedError) as exc_info:
        await executor.execute("wf-disk", steps)
    assert "disk full" in exc_info.value.message

    persisted = await store.load("wf-disk")
    assert persisted.status == WorkflowStatus.RUNNING
    assert persisted.current_step_index == 1

    store.fail_after = None
    handle = await executor.resume("wf-disk", steps)
    assert (await handle.wait(timeout=1)).status == WorkflowStatus.COMPLETED
    assert recorder.calls == [("a", 1), ("b", 1), ("b", 1)]


@pytest.mark.asyncio
async def test_background_resume_failure_settles_handle(queue, bus, recorder):
    store = FlakyStore()
    executor = make_executor(store, queue, bus, recorder)
    handle = await executor.execute("wf-bg", [decision_step("choose", recorder)])
    assert handle.paused

    store.fail_after = store.saves
    await queue.respond(handle.escalation_id, "approve")

    with pytest.raises(WorkflowFailedError) as exc_info:
        await handle.wait(timeout=1)
    assert "disk full" in exc_info.value.message
