"""Confidence-scored decisions with a deterministic first pass."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .agent.base import AgentCapability, AgentResponse
from .config import EscalationConfig
from .contracts import Decision, DecisionSource
from .errors import AgentParseError

logger = logging.getLogger(__name__)

ONBOARDING_CONFIDENCE = 0.95
ONBOARDING_MATCH_THRESHOLD = 0.5
DEFAULT_CONFIDENCE_HINT = 0.5

STOP_WORDS = frozenset(
    """
    the a an is are was were what how when where who why should could would
    will can do does did have has had be been being am to from in on at by for
    with about as of or and but if then
    """.split()
)


def clamp_confidence(value: Optional[float]) -> float:
    if value is None:
        return DEFAULT_CONFIDENCE_HINT
    return max(0.0, min(1.0, float(value)))


def extract_keywords(question: str) -> List[str]:
    """Lower-cased words longer than two characters, minus stop words."""
    return [
        word
        for word in re.split(r"\W+", question.lower())
        if len(word) > 2 and word not in STOP_WORDS
    ]


def match_score(content: str, keywords: List[str]) -> float:
    if not keywords:
        return 0.0
    lowered = content.lower()
    return sum(1 for keyword in keywords if keyword in lowered) / len(keywords)


class OnboardingDocs:
    """Markdown documents that answer recurring questions outright."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def lookup(self, question: str) -> Optional[tuple[str, str]]:
        """Return ``(file name, content)`` of the first document matching the question."""
        if not self.directory.is_dir():
            return None
        keywords = extract_keywords(question)
        for path in sorted(self.directory.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning(f"Skipping unreadable onboarding doc {path}: {exc}")
                continue
            if match_score(content, keywords) > ONBOARDING_MATCH_THRESHOLD:
                return path.name, content
        return None


class DecisionAuditTrail:
    """Append-only record of every decision, grouped per workflow.

    When ``path`` is given each decision is also appended to a JSON lines file.
    """

    GLOBAL_KEY = "_global"

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self._decisions: Dict[str, List[Decision]] = {}
        self._lock = threading.Lock()
        self.path = Path(path) if path else None

    def record(self, decision: Decision) -> None:
        key = decision.workflow_id or self.GLOBAL_KEY
        with self._lock:
            self._decisions.setdefault(key, []).append(decision)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(decision.model_dump_json() + "\n")

    def for_workflow(self, workflow_id: Optional[str]) -> List[Decision]:
        with self._lock:
            return list(self._decisions.get(workflow_id or self.GLOBAL_KEY, []))

    def all(self) -> List[Decision]:
        with self._lock:
            decisions = [d for group in self._decisions.values() for d in group]
        return sorted(decisions, key=lambda d: d.timestamp)

    def __iter__(self) -> Iterator[Decision]:
        return iter(self.all())

    def __len__(self) -> int:
        with self._lock:
            return sum(len(group) for group in self._decisions.values())


class DecisionEngine:
    """Make decisions and score how sure they are.

    Lookup order: exact configured answers, onboarding documents, the
    reasoning agent and finally, when the agent is unsure, a specialist agent
    registered for the decision type.
    """

    def __init__(
        self,
        agent: Optional[AgentCapability] = None,
        config: Optional[EscalationConfig] = None,
        audit_trail: Optional[DecisionAuditTrail] = None,
        specialists: Optional[Dict[str, AgentCapability]] = None,
    ) -> None:
        self.agent = agent
        self.config = config or EscalationConfig()
        self.audit_trail = audit_trail if audit_trail is not None else DecisionAuditTrail()
        self.specialists: Dict[str, AgentCapability] = dict(specialists or {})
        self.onboarding = (
            OnboardingDocs(self.config.onboarding_dir) if self.config.onboarding_dir else None
        )
        self._specialist_calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def threshold(self) -> float:
        return self.config.confidence_threshold

    def register_specialist(self, decision_type: str, agent: AgentCapability) -> None:
        self.specialists[decision_type] = agent

    def specialist_invocations(self, workflow_id: Optional[str]) -> int:
        with self._lock:
            return self._specialist_calls.get(workflow_id or DecisionAuditTrail.GLOBAL_KEY, 0)

    def requires_escalation(self, decision: Decision) -> bool:
        return decision.confidence < self.threshold

    async def make_decision(
        self,
        question: str,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        decision_type: Optional[str] = None,
    ) -> Decision:
        context = dict(context or {})
        decision = await self._deterministic(question, context, workflow_id)
        if decision is None:
            decision = await self._reason(question, context, workflow_id)
            await self._record(decision)
            if self.requires_escalation(decision) and decision_type in self.specialists:
                specialist_decision = await self._consult_specialist(
                    decision_type, question, context, workflow_id
                )
                if specialist_decision is not None:
                    decision = specialist_decision
                    await self._record(decision)
        else:
            await self._record(decision)
        return decision

    # ------------------------------------------------------------------
    async def _record(self, decision: Decision) -> None:
        await asyncio.to_thread(self.audit_trail.record, decision)
        logger.info(
            f"Decision for workflow_id={decision.workflow_id} source={decision.source.value} "
            f"confidence={decision.confidence:.2f} escalate={self.requires_escalation(decision)}"
        )

    async def _deterministic(
        self, question: str, context: Dict[str, Any], workflow_id: Optional[str]
    ) -> Optional[Decision]:
        if question in self.config.answers:
            return Decision(
                question=question,
                source=DecisionSource.DETERMINISTIC,
                decision_value=self.config.answers[question],
                confidence=ONBOARDING_CONFIDENCE,
                rationale="Configured answer",
                context=context,
                workflow_id=workflow_id,
            )
        if self.onboarding is not None:
            hit = await asyncio.to_thread(self.onboarding.lookup, question)
            if hit is not None:
                source_file, content = hit
                return Decision(
                    question=question,
                    source=DecisionSource.DETERMINISTIC,
                    decision_value=content,
                    confidence=ONBOARDING_CONFIDENCE,
                    rationale=f"Found explicit answer in onboarding documentation: {source_file}",
                    context=context,
                    workflow_id=workflow_id,
                )
        return None

    def _from_response(
        self,
        response: AgentResponse,
        source: DecisionSource,
        question: str,
        context: Dict[str, Any],
        workflow_id: Optional[str],
    ) -> Decision:
        return Decision(
            question=question,
            source=source,
            decision_value=response.content,
            confidence=clamp_confidence(response.confidence_hint),
            rationale=response.rationale,
            context=context,
            workflow_id=workflow_id,
        )

    def _unparseable(
        self,
        exc: AgentParseError,
        source: DecisionSource,
        question: str,
        context: Dict[str, Any],
        workflow_id: Optional[str],
    ) -> Decision:
        logger.warning(f"Agent answer for workflow_id={workflow_id} could not be parsed: {exc}")
        return Decision(
            question=question,
            source=source,
            decision_value=exc.raw,
            confidence=0.0,
            rationale=f"Unparseable agent output: {exc}",
            context=context,
            workflow_id=workflow_id,
        )

    async def _reason(
        self, question: str, context: Dict[str, Any], workflow_id: Optional[str]
    ) -> Decision:
        source = DecisionSource.AGENT_REASONING
        if self.agent is None:
            return Decision(
                question=question,
                source=source,
                confidence=0.0,
                rationale="No reasoning agent configured",
                context=context,
                workflow_id=workflow_id,
            )
        try:
            response = await self.agent.invoke({"question": question, **context})
        except AgentParseError as exc:
            return self._unparseable(exc, source, question, context, workflow_id)
        return self._from_response(response, source, question, context, workflow_id)

    async def _consult_specialist(
        self,
        decision_type: str,
        question: str,
        context: Dict[str, Any],
        workflow_id: Optional[str],
    ) -> Optional[Decision]:
        key = workflow_id or DecisionAuditTrail.GLOBAL_KEY
        with self._lock:
            used = self._specialist_calls.get(key, 0)
            if used >= self.config.max_specialist_invocations:
                logger.warning(
                    f"Specialist invocation limit reached for workflow_id={workflow_id} "
                    f"({used}/{self.config.max_specialist_invocations})"
                )
                return None
            self._specialist_calls[key] = used + 1
        logger.info(
            f"Consulting {decision_type} specialist for workflow_id={workflow_id} "
            f"({used + 1}/{self.config.max_specialist_invocations})"
        )
        source = DecisionSource.SPECIALIST
        prompt_context = {"question": question, "decision_type": decision_type, **context}
        try:
            response = await self.specialists[decision_type].invoke(prompt_context)
        except AgentParseError as exc:
            return self._unparseable(exc, source, question, context, workflow_id)
        return self._from_response(response, source, question, context, workflow_id)
