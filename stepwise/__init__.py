"""stepwise: Durable step workflows with confidence-gated human escalation."""

from .config import StepwiseConfig, load_config
from .contracts import (
    CombinedReviewResult,
    Decision,
    DecisionSource,
    EscalationRecord,
    EscalationStatus,
    ReviewDecision,
    ReviewFinding,
    Severity,
    WorkflowState,
    WorkflowStatus,
)
from .decision import DecisionAuditTrail, DecisionEngine
from .escalation import EscalationQueue
from .events import EventBus, WorkflowEvent
from .execute import (
    HandlerKind,
    StepContext,
    StepResult,
    StepSpec,
    WorkflowExecutor,
    WorkflowHandle,
)
from .metrics import MetricsTracker
from .persistence import FileStateStore, InMemoryStateStore, StateStore, get_state_store
from .review import DualReviewAggregator

__version__ = "0.1.0"
__all__ = [
    "CombinedReviewResult",
    "Decision",
    "DecisionAuditTrail",
    "DecisionEngine",
    "DecisionSource",
    "DualReviewAggregator",
    "EscalationQueue",
    "EscalationRecord",
    "EscalationStatus",
    "EventBus",
    "FileStateStore",
    "HandlerKind",
    "InMemoryStateStore",
    "MetricsTracker",
    "ReviewDecision",
    "ReviewFinding",
    "Severity",
    "StateStore",
    "StepContext",
    "StepResult",
    "StepSpec",
    "StepwiseConfig",
    "WorkflowEvent",
    "WorkflowExecutor",
    "WorkflowHandle",
    "WorkflowState",
    "WorkflowStatus",
    "get_state_store",
    "load_config",
]
