"""Lifecycle events and the in-process bus that delivers them."""

from __future__ import annotations

import inspect
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .contracts import utcnow

logger = logging.getLogger(__name__)

WORKFLOW_STARTED = "workflow.started"
STEP_COMPLETED = "step.completed"
WORKFLOW_PAUSED = "workflow.paused"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
ESCALATION_CREATED = "escalation.created"
ESCALATION_RESOLVED = "escalation.resolved"
REVIEW_COMPLETED = "review.completed"

EVENT_NAMES = (
    WORKFLOW_STARTED,
    STEP_COMPLETED,
    WORKFLOW_PAUSED,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    ESCALATION_CREATED,
    ESCALATION_RESOLVED,
    REVIEW_COMPLETED,
)

WILDCARD = "*"


class WorkflowEvent(BaseModel):
    """A single lifecycle notification."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    workflow_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


Subscriber = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fan events out to subscribers registered per event name.

    Subscribers may be plain callables or coroutine functions. A failing
    subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self.history: List[WorkflowEvent] = []

    def subscribe(self, name: str, callback: Subscriber) -> None:
        """Register ``callback`` for ``name`` or ``"*"`` for every event."""
        self._subscribers.setdefault(name, []).append(callback)

    def unsubscribe(self, name: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def emit(
        self, event_name: str, workflow_id: Optional[str] = None, **payload: Any
    ) -> WorkflowEvent:
        event = WorkflowEvent(name=event_name, workflow_id=workflow_id, payload=payload)
        self.history.append(event)
        logger.debug(f"Event {event_name} workflow_id={workflow_id} payload={payload}")
        callbacks = self._subscribers.get(event_name, []) + self._subscribers.get(WILDCARD, [])
        for callback in list(callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Subscriber for {event_name} raised: {exc}")
        return event

    def events(self, name: Optional[str] = None, workflow_id: Optional[str] = None) -> List[WorkflowEvent]:
        return [
            e
            for e in self.history
            if (name is None or e.name == name)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
