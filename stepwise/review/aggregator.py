"""Dual review: the producer's self-review plus an independent review."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from .. import events
from ..config import ReviewConfig
from ..contracts import (
    CombinedReviewResult,
    FindingCategory,
    ReviewDecision,
    ReviewFinding,
    SelfReviewReport,
    Severity,
    SubReviewReport,
)
from ..errors import FatalInputError
from ..escalation import EscalationQueue
from ..events import EventBus
from ..metrics import MetricsTracker
from .decision_maker import (
    build_rationale,
    combine_confidence,
    decide_verdict,
    independent_confidence,
    overall_score,
)
from .independent_review import run_independent_review
from .protocols import IndependentReviewer, SelfReviewer
from .self_review import PHASE as SELF_REVIEW
from .self_review import run_self_review

logger = logging.getLogger(__name__)


class DualReviewAggregator:
    """Combine a self-review and an independent review into one verdict.

    The independent reviewer must not be the producer; both are identified by
    their ``identity``.
    """

    def __init__(
        self,
        producer: SelfReviewer,
        reviewer: IndependentReviewer,
        config: Optional[ReviewConfig] = None,
        event_bus: Optional[EventBus] = None,
        escalation_queue: Optional[EscalationQueue] = None,
    ) -> None:
        if producer.identity == reviewer.identity:
            raise FatalInputError(
                f"Independent reviewer must differ from the producer ({producer.identity})"
            )
        self.producer = producer
        self.reviewer = reviewer
        self.config = config or ReviewConfig()
        self.event_bus = event_bus
        self.escalation_queue = escalation_queue

    async def perform_dual_review(
        self,
        artifact: Any,
        test_results: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        step_index: int = 0,
    ) -> CombinedReviewResult:
        """Review ``artifact`` once and return the combined verdict."""
        metrics = MetricsTracker(bottleneck_seconds=self.config.bottleneck_seconds)
        result = await self._review_once(
            artifact,
            test_results,
            dict(context or {}),
            metrics,
            iterations_remaining=self.config.max_iterations > 1,
        )
        return await self._finish(result, workflow_id, step_index)

    async def review_until_settled(
        self,
        artifact: Any,
        test_results: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        step_index: int = 0,
    ) -> CombinedReviewResult:
        """Loop ``fail`` verdicts back through the producer's fix.

        After ``max_iterations`` reviews a remaining failure escalates.
        """
        context = dict(context or {})
        metrics = MetricsTracker(bottleneck_seconds=self.config.bottleneck_seconds)
        max_iterations = max(1, self.config.max_iterations)
        result: Optional[CombinedReviewResult] = None
        for iteration in range(1, max_iterations + 1):
            result = await self._review_once(
                artifact,
                test_results,
                context,
                metrics,
                iterations_remaining=iteration < max_iterations,
            )
            if result.decision != ReviewDecision.FAIL:
                break
            logger.info(
                f"Review iteration {iteration}/{max_iterations} failed; "
                f"returning artifact to {self.producer.identity} for fixes"
            )
            report = SelfReviewReport(
                issues=result.findings,
                critical_issues=[],
                confidence=result.confidence,
            )
            try:
                artifact = await self.producer.fix(result.artifact, report, context)
            except Exception as exc:
                logger.error(f"Fix by {self.producer.identity} failed: {exc}")
                reason = f"fix by {self.producer.identity} did not complete: {type(exc).__name__}: {exc}"
                result = result.model_copy(
                    update={
                        "decision": ReviewDecision.ESCALATE,
                        "rationale": build_rationale(
                            ReviewDecision.ESCALATE, [reason], result.confidence
                        ),
                    }
                )
                break
        return await self._finish(result, workflow_id, step_index)

    # ------------------------------------------------------------------
    async def _review_once(
        self,
        artifact: Any,
        test_results: Optional[Any],
        context: Dict[str, Any],
        metrics: MetricsTracker,
        iterations_remaining: bool,
    ) -> CombinedReviewResult:
        started = time.monotonic()
        metrics.increment_iterations()

        errored: Dict[str, str] = {}
        try:
            artifact, self_report = await run_self_review(self.producer, artifact, context, metrics)
        except Exception as exc:
            logger.error(f"Self-review by {self.producer.identity} failed: {exc}")
            errored[SELF_REVIEW] = f"{type(exc).__name__}: {exc}"
            self_report = SelfReviewReport(confidence=0.0)
        sub_reviews, sub_errors = await run_independent_review(
            self.reviewer, artifact, test_results, context, metrics
        )
        errored.update(sub_errors)

        with metrics.phase("decision"):
            findings = self._collect_findings(self_report, sub_reviews)
            score = overall_score(sub_reviews)
            confidence = combine_confidence(
                self_report.confidence,
                independent_confidence(sub_reviews),
                self.config.self_weight,
                self.config.independent_weight,
            )
            decision, rationale = decide_verdict(
                self_report,
                sub_reviews,
                findings,
                confidence,
                pass_threshold=self.config.pass_threshold,
                sub_check_pass_score=self.config.sub_check_pass_score,
                errored_checks=errored,
                iterations_remaining=iterations_remaining,
            )

        total_ms = int((time.monotonic() - started) * 1000)
        review_metrics = metrics.to_review_metrics(total_ms=total_ms)
        return CombinedReviewResult(
            overall_score=score,
            confidence=confidence,
            decision=decision,
            findings=findings,
            rationale=rationale,
            metrics=review_metrics,
            self_review=self_report,
            sub_reviews=sub_reviews,
            artifact=artifact,
        )

    def _collect_findings(
        self, self_report: SelfReviewReport, sub_reviews: List[SubReviewReport]
    ) -> List[ReviewFinding]:
        findings = list(self_report.issues)
        findings.extend(
            ReviewFinding(severity=Severity.CRITICAL, category=FindingCategory.OTHER, message=message)
            for message in self_report.critical_issues
        )
        for report in sub_reviews:
            findings.extend(report.findings)
        return findings

    async def _finish(
        self,
        result: CombinedReviewResult,
        workflow_id: Optional[str],
        step_index: int,
    ) -> CombinedReviewResult:
        if (
            result.decision == ReviewDecision.ESCALATE
            and self.escalation_queue is not None
            and workflow_id
        ):
            record = await self.escalation_queue.add(
                workflow_id,
                step_index,
                "Dual review requires a human decision",
                {
                    "rationale": result.rationale,
                    "overall_score": result.overall_score,
                    "findings": [f.model_dump(mode="json") for f in result.findings],
                },
                confidence=result.confidence,
            )
            result = result.model_copy(update={"escalation_id": record.id})
        if self.event_bus is not None:
            await self.event_bus.emit(
                events.REVIEW_COMPLETED,
                workflow_id,
                decision=result.decision.value,
                overallScore=result.overall_score,
                confidence=result.confidence,
                escalationId=result.escalation_id,
            )
        logger.info(
            f"Dual review finished: {result.decision.value} "
            f"(score {result.overall_score:.1f}, confidence {result.confidence:.2f}, "
            f"iterations {result.metrics.iterations})"
        )
        return result
