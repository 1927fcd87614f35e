"""Step-sequenced workflow execution with pause, resume and retry."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from . import events
from .agent.base import AgentCapability, AgentResponse
from .config import RetryConfig
from .contracts import (
    Decision,
    EscalationRecord,
    EscalationStatus,
    StepLogEntry,
    StepOutcome,
    WorkflowState,
    WorkflowStatus,
    utcnow,
)
from .decision import DecisionEngine
from .errors import (
    CorruptEscalationError,
    EscalationNotFoundError,
    FatalInputError,
    NotResumableError,
    RetryExhaustedError,
    StepwiseError,
    TransientHandlerError,
    WorkflowCancelledError,
    WorkflowFailedError,
    WorkflowNotFoundError,
)
from .escalation import EscalationQueue
from .events import EventBus
from .metrics import MetricsTracker
from .persistence import StateStore
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class HandlerKind(str, Enum):
    AGENT = "agent"
    DECISION = "decision"
    TOOL = "tool"


DEFAULT_MAX_RETRIES: Dict[HandlerKind, int] = {
    HandlerKind.AGENT: 3,
    HandlerKind.DECISION: 3,
    HandlerKind.TOOL: 2,
}


class StepResult(BaseModel):
    """What a handler hands back: an output or a request for a human."""

    escalated: bool = False
    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    question: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    partial_output: Any = None
    confidence: Optional[float] = None

    @classmethod
    def ok(cls, output: Any = None, variables: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(output=output, variables=variables or {})

    @classmethod
    def escalate(
        cls,
        question: str,
        context: Optional[Dict[str, Any]] = None,
        partial_output: Any = None,
        confidence: Optional[float] = None,
    ) -> "StepResult":
        return cls(
            escalated=True,
            question=question,
            context=context or {},
            partial_output=partial_output,
            confidence=confidence,
        )


class StepContext:
    """Per-attempt view of the workflow given to a step handler."""

    def __init__(
        self,
        executor: "WorkflowExecutor",
        workflow_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        variables: Dict[str, Any],
        escalation_response: Any = None,
    ) -> None:
        self._executor = executor
        self.workflow_id = workflow_id
        self.step_index = step_index
        self.step_name = step_name
        self.attempt = attempt
        self.variables = variables
        self.escalation_response = escalation_response

    @property
    def resumed(self) -> bool:
        """True when the step is re-entered with a human answer."""
        return self.escalation_response is not None

    async def decide(
        self,
        question: str,
        context: Optional[Dict[str, Any]] = None,
        decision_type: Optional[str] = None,
    ) -> Decision:
        engine = self._executor.decision_engine
        if engine is None:
            raise FatalInputError(f"Step {self.step_name} needs a decision engine but none is configured")
        return await self._bounded(
            engine.make_decision(
                question, context, workflow_id=self.workflow_id, decision_type=decision_type
            ),
            "Decision",
        )

    def requires_escalation(self, decision: Decision) -> bool:
        engine = self._executor.decision_engine
        if engine is None:
            raise FatalInputError("No decision engine configured")
        return engine.requires_escalation(decision)

    async def invoke_agent(
        self, agent: AgentCapability, prompt_context: Dict[str, Any]
    ) -> AgentResponse:
        return await self._bounded(agent.invoke(prompt_context), "Agent call")

    async def _bounded(self, call: Awaitable[Any], what: str) -> Any:
        timeout = self._executor.retry_config.agent_timeout
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientHandlerError(
                f"{what} in step {self.step_name} timed out after {timeout:g}s"
            ) from exc


StepHandler = Callable[["StepContext"], Awaitable[StepResult]]


class StepSpec(BaseModel):
    """One step of a workflow."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    kind: HandlerKind = HandlerKind.TOOL
    handler: StepHandler
    max_retries: Optional[int] = Field(default=None, ge=0)
    escalate_on_exhaustion: bool = True


class WorkflowHandle:
    """Caller's reference to a workflow that may pause and resume."""

    def __init__(self, workflow_id: str, state: Optional[WorkflowState] = None) -> None:
        self.workflow_id = workflow_id
        self.state = state
        self.error: Optional[StepwiseError] = None
        self._done = asyncio.Event()

    @property
    def status(self) -> Optional[WorkflowStatus]:
        return self.state.status if self.state else None

    @property
    def paused(self) -> bool:
        return self.status == WorkflowStatus.PAUSED

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def escalation_id(self) -> Optional[str]:
        return self.state.pending_escalation_id if self.state else None

    @property
    def outputs(self) -> Dict[str, Any]:
        """Output of each completed step keyed by step name."""
        if self.state is None:
            return {}
        return {
            entry.step_name: entry.output
            for entry in self.state.step_log
            if entry.outcome == StepOutcome.COMPLETED
        }

    def _update(self, state: WorkflowState) -> None:
        self.state = state.model_copy(deep=True)

    def _settle(
        self, state: Optional[WorkflowState], error: Optional[StepwiseError] = None
    ) -> None:
        if state is not None:
            self._update(state)
        self.error = error
        self._done.set()

    async def wait(self, timeout: Optional[float] = None) -> WorkflowState:
        """Wait until the workflow is completed or failed, across resumptions."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        if self.error is not None:
            raise self.error
        return self.state


class WorkflowExecutor:
    """Run workflows step by step, persisting after every step.

    A step that escalates pauses the workflow. When its escalation is
    answered through the attached queue, the workflow resumes in the
    background at the same step with the human's response.
    """

    def __init__(
        self,
        store: StateStore,
        escalation_queue: Optional[EscalationQueue] = None,
        decision_engine: Optional[DecisionEngine] = None,
        event_bus: Optional[EventBus] = None,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[MetricsTracker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.escalation_queue = escalation_queue
        self.decision_engine = decision_engine
        self.event_bus = event_bus or EventBus()
        self.retry_config = retry_config or RetryConfig()
        self.metrics = metrics or MetricsTracker()
        self._sleep = sleep
        self._steps: Dict[str, List[StepSpec]] = {}
        self._handles: Dict[str, WorkflowHandle] = {}
        self._active: Set[str] = set()
        self._cancelled: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        if escalation_queue is not None:
            escalation_queue.add_resolution_listener(self._on_escalation_resolved)

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        workflow_id: str,
        steps: List[StepSpec],
        start_from_index: int = 0,
        variables: Optional[Dict[str, Any]] = None,
    ) -> WorkflowHandle:
        """Start a new workflow.

        Returns once the workflow completes or pauses on an escalation.
        Raises ``WorkflowFailedError`` when a step fails for good.
        """
        if not 0 <= start_from_index <= len(steps):
            raise FatalInputError(
                f"start_from_index {start_from_index} outside 0..{len(steps)} for workflow {workflow_id}"
            )
        if workflow_id in self._active or await self.store.load(workflow_id) is not None:
            raise FatalInputError(f"Workflow {workflow_id} already exists; use resume()")

        state = WorkflowState(
            id=workflow_id,
            current_step_index=start_from_index,
            variables=dict(variables or {}),
        )
        state.transition(WorkflowStatus.RUNNING)
        await self.store.save(state)
        self._steps[workflow_id] = list(steps)
        handle = self._handles[workflow_id] = WorkflowHandle(workflow_id, state)
        logger.info(
            f"Workflow {workflow_id} started with {len(steps)} steps from index {start_from_index}"
        )
        await self.event_bus.emit(
            events.WORKFLOW_STARTED, workflow_id, steps=len(steps), startIndex=start_from_index
        )
        await self._run(state, steps, handle)
        return handle

    async def resume(
        self,
        workflow_id: str,
        steps: Optional[List[StepSpec]] = None,
        restart: bool = False,
        variables: Optional[Dict[str, Any]] = None,
    ) -> WorkflowHandle:
        """Continue a persisted workflow from its current step.

        Completed workflows are returned as they are. ``restart`` discards
        persisted state and runs again from the first step.
        """
        if restart:
            steps = self._steps_for(workflow_id, steps)
            if workflow_id in self._active:
                raise NotResumableError(workflow_id, WorkflowStatus.RUNNING.value)
            logger.info(f"Restarting workflow {workflow_id} from step 0")
            await self.store.delete(workflow_id)
            self._handles.pop(workflow_id, None)
            return await self.execute(workflow_id, steps, variables=variables)

        state = await self.store.load(workflow_id)
        if state is None:
            raise WorkflowNotFoundError(workflow_id)
        handle = self._handles.get(workflow_id) or WorkflowHandle(workflow_id, state)
        self._handles[workflow_id] = handle

        if state.status == WorkflowStatus.COMPLETED:
            logger.info(f"Workflow {workflow_id} already completed; nothing to resume")
            if not handle.done:
                handle._settle(state)
            return handle
        if state.status == WorkflowStatus.FAILED:
            raise NotResumableError(workflow_id, state.status.value)
        if workflow_id in self._active:
            raise NotResumableError(workflow_id, WorkflowStatus.RUNNING.value)
        steps = self._steps_for(workflow_id, steps)

        response = None
        if state.status == WorkflowStatus.PAUSED:
            response = await self._take_escalation_response(state)
            state.pending_escalation_id = None
            state.transition(WorkflowStatus.RUNNING)
        elif state.status == WorkflowStatus.INITIALIZED:
            state.transition(WorkflowStatus.RUNNING)
        else:
            logger.warning(
                f"Workflow {workflow_id} was left running by a previous process; recovering"
            )
        await self.store.save(state)
        self._steps[workflow_id] = list(steps)
        logger.info(f"Resuming workflow {workflow_id} at step {state.current_step_index}")
        await self._run(state, steps, handle, escalation_response=response)
        return handle

    async def resume_resolved(
        self, steps_by_workflow: Dict[str, List[StepSpec]]
    ) -> Dict[str, WorkflowHandle]:
        """Resume paused workflows whose escalation was answered elsewhere."""
        if self.escalation_queue is None:
            return {}
        handles: Dict[str, WorkflowHandle] = {}
        for workflow_id, steps in steps_by_workflow.items():
            state = await self.store.load(workflow_id)
            if state is None or state.status != WorkflowStatus.PAUSED:
                continue
            if state.pending_escalation_id is None:
                continue
            try:
                record = await self.escalation_queue.get_by_id(state.pending_escalation_id)
            except EscalationNotFoundError:
                logger.warning(
                    f"Workflow {workflow_id} waits on missing escalation {state.pending_escalation_id}"
                )
                continue
            except CorruptEscalationError as exc:
                logger.error(f"Cannot resume workflow {workflow_id}: {exc}")
                continue
            if record.status == EscalationStatus.RESOLVED:
                handles[workflow_id] = await self.resume(workflow_id, steps)
        return handles

    def cancel(self, workflow_id: str, reason: str = "cancelled") -> None:
        """Ask a running workflow to stop at the next step or retry boundary."""
        self._cancelled[workflow_id] = reason
        logger.info(f"Cancellation requested for workflow {workflow_id}: {reason}")

    async def abort(self, workflow_id: str, reason: str) -> WorkflowState:
        """Fail a workflow that is not running, cancelling its pending escalation."""
        state = await self.store.load(workflow_id)
        if state is None:
            raise WorkflowNotFoundError(workflow_id)
        if state.status.is_terminal:
            raise NotResumableError(workflow_id, state.status.value)
        if workflow_id in self._active:
            self.cancel(workflow_id, reason)
            return state
        if state.pending_escalation_id and self.escalation_queue is not None:
            record = await self.escalation_queue.get_by_id(state.pending_escalation_id)
            if record.status == EscalationStatus.PENDING:
                await self.escalation_queue.cancel(record.id, reason)
        state.pending_escalation_id = None
        error = WorkflowCancelledError(workflow_id, reason)
        await self._mark_failed(state, state.current_step_index, f"aborted: {reason}", error)
        return state

    def _steps_for(self, workflow_id: str, steps: Optional[List[StepSpec]]) -> List[StepSpec]:
        steps = steps if steps is not None else self._steps.get(workflow_id)
        if steps is None:
            raise FatalInputError(f"No step definitions known for workflow {workflow_id}")
        return steps

    async def status(self, workflow_id: str) -> WorkflowStatus:
        state = await self.store.load(workflow_id)
        if state is None:
            raise WorkflowNotFoundError(workflow_id)
        return state.status

    async def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        return await self.store.load(workflow_id)

    # ------------------------------------------------------------------
    # Execution loop
    async def _run(
        self,
        state: WorkflowState,
        steps: List[StepSpec],
        handle: WorkflowHandle,
        escalation_response: Any = None,
    ) -> None:
        self._active.add(state.id)
        try:
            index = state.current_step_index
            while index < len(steps):
                await self._check_cancelled(state, index)
                step = steps[index]
                entry = StepLogEntry(step_index=index, step_name=step.name, started_at=utcnow())
                try:
                    result = await self._run_with_retry(state, step, index, entry, escalation_response)
                except RetryExhaustedError as exc:
                    if not step.escalate_on_exhaustion and exc.partial_output is None:
                        await self._fail_step(state, entry, str(exc.last_error), exc)
                    result = StepResult.escalate(
                        question=f"Step '{step.name}' failed after {exc.attempts} attempts: {exc.last_error}",
                        context={"error": str(exc.last_error), "attempts": exc.attempts},
                        partial_output=exc.partial_output,
                    )
                except WorkflowCancelledError:
                    raise
                except StepwiseError as exc:
                    await self._fail_step(state, entry, str(exc), exc)
                except Exception as exc:
                    logger.exception(f"Step {step.name} of workflow {state.id} raised unexpectedly")
                    await self._fail_step(state, entry, f"{type(exc).__name__}: {exc}", exc)
                escalation_response = None

                if result.escalated:
                    await self._pause(state, step, entry, result, handle)
                    return

                entry.outcome = StepOutcome.COMPLETED
                entry.output = result.output
                entry.completed_at = utcnow()
                state.variables.update(result.variables)
                state.step_log.append(entry)
                state.advance_to(index + 1)
                await self.store.save(state)
                handle._update(state)
                self.metrics.increment("steps.completed")
                await self.event_bus.emit(
                    events.STEP_COMPLETED,
                    state.id,
                    index=index,
                    name=step.name,
                    durationMs=entry.duration_ms,
                )
                index += 1

            state.transition(WorkflowStatus.COMPLETED)
            await self.store.save(state)
            self.metrics.increment("workflows.completed")
            logger.info(f"Workflow {state.id} completed")
            await self.event_bus.emit(events.WORKFLOW_COMPLETED, state.id)
            handle._settle(state)
        except (WorkflowFailedError, WorkflowCancelledError):
            raise
        except Exception as exc:
            await self._crash(state, handle, exc)
        finally:
            self._active.discard(state.id)
            self._cancelled.pop(state.id, None)

    async def _run_with_retry(
        self,
        state: WorkflowState,
        step: StepSpec,
        index: int,
        entry: StepLogEntry,
        escalation_response: Any,
    ) -> StepResult:
        max_retries = step.max_retries
        if max_retries is None:
            max_retries = self.retry_config.max_retries.get(
                step.kind.value, DEFAULT_MAX_RETRIES[step.kind]
            )
        attempt = 0
        while True:
            attempt += 1
            entry.attempts = attempt
            ctx = StepContext(
                self,
                state.id,
                index,
                step.name,
                attempt,
                state.variables,
                escalation_response=escalation_response,
            )
            try:
                result = await step.handler(ctx)
            except TransientHandlerError as exc:
                entry.error = str(exc)
                if attempt > max_retries:
                    raise RetryExhaustedError(
                        f"Step {step.name} exhausted {max_retries} retries", attempt, exc
                    ) from exc
                entry.retries += 1
                self.metrics.increment("steps.retries")
                delay = compute_backoff(
                    attempt,
                    base=self.retry_config.backoff_base,
                    jitter=self.retry_config.jitter,
                    max_delay=self.retry_config.max_delay,
                )
                logger.warning(
                    f"Step {step.name} of workflow {state.id} failed (attempt {attempt}/"
                    f"{max_retries + 1}): {exc}; retrying in {delay:.2f}s"
                )
                await self._check_cancelled(state, index, entry)
                await self._sleep(delay)
                continue
            if not isinstance(result, StepResult):
                raise FatalInputError(
                    f"Handler of step {step.name} returned {type(result).__name__}, expected StepResult"
                )
            return result

    async def _pause(
        self,
        state: WorkflowState,
        step: StepSpec,
        entry: StepLogEntry,
        result: StepResult,
        handle: WorkflowHandle,
    ) -> None:
        if self.escalation_queue is None:
            await self._fail_step(
                state, entry, "Step requested escalation but no escalation queue is configured", None
            )
        context = dict(result.context)
        context.setdefault("step_name", step.name)
        if result.partial_output is not None:
            context["partial_output"] = result.partial_output
        record = await self.escalation_queue.add(
            state.id,
            entry.step_index,
            result.question or f"Step '{step.name}' needs a decision",
            context,
            confidence=result.confidence,
        )
        entry.outcome = StepOutcome.ESCALATED
        entry.escalation_id = record.id
        entry.output = result.partial_output
        entry.completed_at = utcnow()
        state.step_log.append(entry)
        state.pending_escalation_id = record.id
        state.transition(WorkflowStatus.PAUSED)
        await self.store.save(state)
        handle._update(state)
        self.metrics.increment("workflows.paused")
        logger.info(
            f"Workflow {state.id} paused at step {entry.step_index} awaiting escalation {record.id}"
        )
        await self.event_bus.emit(
            events.WORKFLOW_PAUSED, state.id, stepIndex=entry.step_index, escalationId=record.id
        )

    async def _check_cancelled(
        self, state: WorkflowState, index: int, entry: Optional[StepLogEntry] = None
    ) -> None:
        reason = self._cancelled.pop(state.id, None)
        if reason is None:
            return
        if entry is not None:
            entry.outcome = StepOutcome.FAILED
            entry.completed_at = utcnow()
            state.step_log.append(entry)
        error = WorkflowCancelledError(state.id, reason)
        await self._mark_failed(state, index, f"cancelled: {reason}", error)
        raise error

    async def _fail_step(
        self,
        state: WorkflowState,
        entry: StepLogEntry,
        message: str,
        cause: Optional[BaseException],
    ) -> None:
        entry.outcome = StepOutcome.FAILED
        entry.error = message
        entry.completed_at = utcnow()
        state.step_log.append(entry)
        error = WorkflowFailedError(state.id, entry.step_index, message)
        await self._mark_failed(state, entry.step_index, message, error)
        raise error from cause

    async def _mark_failed(
        self, state: WorkflowState, step_index: int, message: str, error: StepwiseError
    ) -> None:
        state.last_error = message
        state.failed_step_index = step_index
        state.transition(WorkflowStatus.FAILED)
        await self.store.save(state)
        self.metrics.increment("workflows.failed")
        logger.error(f"Workflow {state.id} failed at step {step_index}: {message}")
        await self.event_bus.emit(
            events.WORKFLOW_FAILED, state.id, stepIndex=step_index, error=message
        )
        handle = self._handles.get(state.id)
        if handle is not None:
            handle._settle(state, error)

    async def _crash(self, state: WorkflowState, handle: WorkflowHandle, exc: Exception) -> None:
        """Fail the workflow after an error outside any step handler and settle its handle."""
        message = f"{type(exc).__name__}: {exc}"
        logger.exception(f"Workflow {state.id} crashed at step {state.current_step_index}")
        error = WorkflowFailedError(state.id, state.current_step_index, message)
        if not state.status.is_terminal:
            try:
                await self._mark_failed(state, state.current_step_index, message, error)
            except Exception as persist_exc:
                logger.error(f"Could not record failure of workflow {state.id}: {persist_exc}")
        if not handle.done:
            handle._settle(state, error)
        raise error from exc

    # ------------------------------------------------------------------
    # Escalation wiring
    async def _take_escalation_response(self, state: WorkflowState) -> Any:
        if not state.pending_escalation_id or self.escalation_queue is None:
            return None
        try:
            record = await self.escalation_queue.get_by_id(state.pending_escalation_id)
        except EscalationNotFoundError:
            logger.warning(
                f"Escalation {state.pending_escalation_id} of workflow {state.id} is missing"
            )
            return None
        if record.status == EscalationStatus.RESOLVED:
            return record.response
        if record.status == EscalationStatus.PENDING:
            await self.escalation_queue.cancel(record.id, "superseded by explicit resume")
        return None

    async def _on_escalation_resolved(self, record: EscalationRecord) -> None:
        if record.workflow_id not in self._steps:
            logger.info(
                f"Escalation {record.id} resolved for workflow {record.workflow_id} "
                "which this executor does not know; use resume_resolved()"
            )
            return
        state = await self.store.load(record.workflow_id)
        if (
            state is None
            or state.status != WorkflowStatus.PAUSED
            or state.pending_escalation_id != record.id
        ):
            return
        task = asyncio.create_task(self._resume_in_background(record.workflow_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resume_in_background(self, workflow_id: str) -> None:
        try:
            await self.resume(workflow_id)
        except (WorkflowFailedError, WorkflowCancelledError) as exc:
            # already recorded on the handle and in persisted state
            logger.info(f"Background resume of workflow {workflow_id} ended: {exc}")
        except NotResumableError as exc:
            if workflow_id in self._active:
                logger.info(f"Workflow {workflow_id} is already being resumed: {exc}")
                return
            self._settle_after_error(workflow_id, exc)
        except Exception as exc:
            logger.exception(f"Background resume of workflow {workflow_id} failed")
            self._settle_after_error(workflow_id, exc)

    def _settle_after_error(self, workflow_id: str, exc: Exception) -> None:
        handle = self._handles.get(workflow_id)
        if handle is None or handle.done:
            return
        if not isinstance(exc, StepwiseError):
            exc = WorkflowFailedError(workflow_id, None, f"{type(exc).__name__}: {exc}")
        handle._settle(handle.state, exc)
