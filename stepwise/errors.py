"""Error taxonomy for stepwise workflows."""

from __future__ import annotations

from typing import Any, Optional


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class TransientHandlerError(StepwiseError):
    """Timeout, rate limit or network failure inside a step handler.

    Retried with bounded exponential backoff. ``partial_output`` carries
    whatever usable result the handler produced before failing.
    """

    def __init__(self, message: str, partial_output: Any = None) -> None:
        super().__init__(message)
        self.partial_output = partial_output


class FatalInputError(StepwiseError):
    """Missing required input or invalid configuration. Never retried."""


class RetryExhaustedError(StepwiseError):
    """Raised when a handler keeps failing after its last retry."""

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error

    @property
    def partial_output(self) -> Any:
        return getattr(self.last_error, "partial_output", None)


class AgentParseError(StepwiseError):
    """The agent answered but its output could not be interpreted."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class EscalationNotFoundError(StepwiseError, KeyError):
    """No escalation exists with the given id."""

    def __init__(self, escalation_id: str) -> None:
        super().__init__(f"Escalation not found: {escalation_id}")
        self.escalation_id = escalation_id

    def __str__(self) -> str:
        return self.args[0]


class CorruptEscalationError(StepwiseError):
    """An escalation file exists but cannot be parsed."""

    def __init__(self, escalation_id: str, reason: str) -> None:
        super().__init__(f"Corrupt escalation {escalation_id}: {reason}")
        self.escalation_id = escalation_id
        self.reason = reason


class AlreadyResolvedError(StepwiseError):
    """The escalation is no longer pending."""

    def __init__(self, escalation_id: str, status: str) -> None:
        super().__init__(f"Escalation {escalation_id} is not pending (status: {status})")
        self.escalation_id = escalation_id
        self.status = status


class CorruptStateError(StepwiseError):
    """A persisted state file failed schema validation.

    The workflow must be surfaced to an operator instead of being restarted.
    """

    def __init__(self, workflow_id: str, path: Optional[str], reason: str) -> None:
        super().__init__(f"Corrupt state for workflow {workflow_id} at {path}: {reason}")
        self.workflow_id = workflow_id
        self.path = path
        self.reason = reason


class WorkflowNotFoundError(StepwiseError):
    """No persisted state exists for the workflow."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"No such workflow: {workflow_id}")
        self.workflow_id = workflow_id


class NotResumableError(StepwiseError):
    """The workflow is in a state that cannot be resumed."""

    def __init__(self, workflow_id: str, status: str) -> None:
        super().__init__(f"Workflow {workflow_id} is not resumable (status: {status})")
        self.workflow_id = workflow_id
        self.status = status


class IllegalTransitionError(StepwiseError, ValueError):
    pass


class WorkflowFailedError(StepwiseError):
    """Surfaced to the caller when a workflow transitions to failed."""

    def __init__(self, workflow_id: str, step_index: Optional[int], message: str) -> None:
        where = f" at step {step_index}" if step_index is not None else ""
        super().__init__(f"Workflow {workflow_id} failed{where}: {message}")
        self.workflow_id = workflow_id
        self.step_index = step_index
        self.message = message


class WorkflowCancelledError(StepwiseError):
    """A cancellation signal was observed between steps or retries."""

    def __init__(self, workflow_id: str, reason: str = "cancelled") -> None:
        super().__init__(f"Workflow {workflow_id} cancelled: {reason}")
        self.workflow_id = workflow_id
        self.reason = reason
