"""Core data contracts for stepwise workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import IllegalTransitionError

STATE_SCHEMA_VERSION = "1.0"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


ALLOWED_TRANSITIONS: Dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.INITIALIZED: {WorkflowStatus.RUNNING, WorkflowStatus.FAILED},
    WorkflowStatus.RUNNING: {
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.PAUSED: {WorkflowStatus.RUNNING, WorkflowStatus.FAILED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
}


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    ESCALATED = "escalated"
    FAILED = "failed"


class StepLogEntry(BaseModel):
    """Record of one execution of a workflow step."""

    step_index: int
    step_name: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    outcome: Optional[StepOutcome] = None
    attempts: int = 0
    retries: int = 0
    error: Optional[str] = None
    output: Any = None
    escalation_id: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        if self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class WorkflowState(BaseModel):
    """Persisted state of a single workflow instance."""

    model_config = ConfigDict(extra="forbid")

    id: str
    current_step_index: int = Field(default=0, ge=0)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_log: List[StepLogEntry] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.INITIALIZED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    pending_escalation_id: Optional[str] = None
    last_error: Optional[str] = None
    failed_step_index: Optional[int] = None
    schema_version: str = STATE_SCHEMA_VERSION

    def transition(self, to: WorkflowStatus) -> None:
        """Move to ``to`` or raise ``IllegalTransitionError``."""
        if to not in ALLOWED_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"Illegal transition for workflow {self.id}: {self.status.value} -> {to.value}"
            )
        self.status = to
        self.touch()

    def advance_to(self, index: int) -> None:
        if index < self.current_step_index:
            raise IllegalTransitionError(
                f"Step index of workflow {self.id} cannot move backwards "
                f"({self.current_step_index} -> {index})"
            )
        self.current_step_index = index
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()


class DecisionSource(str, Enum):
    DETERMINISTIC = "deterministic"
    AGENT_REASONING = "agent_reasoning"
    SPECIALIST = "specialist"


class Decision(BaseModel):
    """Immutable, timestamped record of a decision and its rationale."""

    model_config = ConfigDict(frozen=True)

    question: str
    source: DecisionSource
    decision_value: Any = None
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    context: Dict[str, Any] = Field(default_factory=dict)
    workflow_id: Optional[str] = None


class EscalationStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


def new_escalation_id() -> str:
    return f"esc-{uuid.uuid4()}"


class EscalationRecord(BaseModel):
    """A decision paused until a human responds."""

    id: str = Field(default_factory=new_escalation_id)
    workflow_id: str
    step_index: int = Field(ge=0)
    question: str
    context: Dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    status: EscalationStatus = EscalationStatus.PENDING
    response: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution_time_ms: Optional[int] = None


class EscalationMetrics(BaseModel):
    pending_count: int = 0
    resolved_count: int = 0
    cancelled_count: int = 0
    avg_resolution_time_ms: float = 0.0
    by_workflow: Dict[str, int] = Field(default_factory=dict)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def is_blocking(self) -> bool:
        return self in (Severity.CRITICAL, Severity.HIGH)


class FindingCategory(str, Enum):
    SECURITY = "security"
    QUALITY = "quality"
    TESTING = "testing"
    OTHER = "other"


class ReviewFinding(BaseModel):
    severity: Severity
    category: FindingCategory = FindingCategory.OTHER
    message: str
    location: Optional[str] = None
    recommendation: Optional[str] = None


class SelfReviewReport(BaseModel):
    """Producer's review of its own artifact."""

    checklist: Dict[str, bool] = Field(default_factory=dict)
    issues: List[ReviewFinding] = Field(default_factory=list)
    critical_issues: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def passed(self) -> bool:
        return not self.critical_issues and all(self.checklist.values())


class ReviewCheck(str, Enum):
    SECURITY = "security"
    QUALITY = "quality"
    TEST_ADEQUACY = "test_adequacy"


class SubReviewReport(BaseModel):
    """Outcome of one independent sub-check."""

    check: ReviewCheck
    score: float = Field(ge=0.0, le=100.0)
    passed: bool = True
    findings: List[ReviewFinding] = Field(default_factory=list)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ReviewDecision(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ESCALATE = "escalate"


class ReviewMetrics(BaseModel):
    total_ms: int = 0
    phase_ms: Dict[str, int] = Field(default_factory=dict)
    findings_by_severity: Dict[str, int] = Field(default_factory=dict)
    iterations: int = 1
    bottlenecks: List[str] = Field(default_factory=list)


class CombinedReviewResult(BaseModel):
    """Single verdict produced by a dual review."""

    model_config = ConfigDict(frozen=True)

    overall_score: float = Field(ge=0.0, le=100.0)
    confidence: float = Field(ge=0.0, le=1.0)
    decision: ReviewDecision
    findings: List[ReviewFinding] = Field(default_factory=list)
    rationale: str = ""
    metrics: ReviewMetrics = Field(default_factory=ReviewMetrics)
    self_review: Optional[SelfReviewReport] = None
    sub_reviews: List[SubReviewReport] = Field(default_factory=list)
    escalation_id: Optional[str] = None
    artifact: Any = None
