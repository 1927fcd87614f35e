"""Turn the two reviews into a single pass / fail / escalate verdict."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from ..contracts import (
    ReviewDecision,
    ReviewFinding,
    SelfReviewReport,
    SubReviewReport,
)

logger = logging.getLogger(__name__)


def overall_score(sub_reviews: Sequence[SubReviewReport]) -> float:
    if not sub_reviews:
        return 0.0
    return sum(r.score for r in sub_reviews) / len(sub_reviews)


def independent_confidence(sub_reviews: Sequence[SubReviewReport]) -> float:
    """Mean of the reported confidences, else the overall score scaled to 0..1."""
    reported = [r.confidence for r in sub_reviews if r.confidence is not None]
    if reported:
        return sum(reported) / len(reported)
    return overall_score(sub_reviews) / 100.0


def combine_confidence(
    self_confidence: float,
    other_confidence: float,
    self_weight: float = 0.5,
    independent_weight: float = 0.5,
) -> float:
    total = self_weight + independent_weight
    if total <= 0:
        raise ValueError("Review weights must not both be zero")
    combined = (self_confidence * self_weight + other_confidence * independent_weight) / total
    return max(0.0, min(1.0, combined))


def decide_verdict(
    self_report: SelfReviewReport,
    sub_reviews: Sequence[SubReviewReport],
    findings: Sequence[ReviewFinding],
    confidence: float,
    pass_threshold: float = 0.85,
    sub_check_pass_score: float = 85.0,
    errored_checks: Optional[Dict[str, str]] = None,
    iterations_remaining: bool = True,
) -> Tuple[ReviewDecision, str]:
    """Return the verdict and a human-readable rationale.

    Blocking findings and sub-reviews that never completed always escalate.
    Failing checks with only medium/low/info findings are sent back for a fix
    while iterations remain. Low confidence with nothing to fix escalates.
    """
    errored_checks = errored_checks or {}
    factors: List[str] = []

    blocking = [f for f in findings if f.severity.is_blocking]
    failing_checks = [
        r.check.value
        for r in sub_reviews
        if not r.passed or r.score < sub_check_pass_score
    ]
    if not self_report.passed:
        failing_checks.insert(0, "self_review")

    if blocking:
        factors.append(f"{len(blocking)} critical/high severity findings")
    for check, error in errored_checks.items():
        factors.append(f"{check} review did not complete: {error}")
    if failing_checks:
        factors.append(f"Failing checks: {', '.join(failing_checks)}")
    if confidence < pass_threshold:
        factors.append(f"Combined confidence ({confidence:.2f}) below threshold ({pass_threshold})")

    if blocking or errored_checks:
        decision = ReviewDecision.ESCALATE
    elif failing_checks:
        if iterations_remaining:
            decision = ReviewDecision.FAIL
        else:
            factors.append("No review iterations left")
            decision = ReviewDecision.ESCALATE
    elif confidence < pass_threshold:
        decision = ReviewDecision.ESCALATE
    else:
        factors.append("Both reviews passed with high confidence")
        decision = ReviewDecision.PASS

    logger.info(f"Review verdict {decision.value} (confidence {confidence:.2f})")
    return decision, build_rationale(decision, factors, confidence)


def build_rationale(decision: ReviewDecision, factors: Sequence[str], confidence: float) -> str:
    headline = {
        ReviewDecision.PASS: "PASS: ready to proceed",
        ReviewDecision.FAIL: "FAIL: requires fixes before proceeding",
        ReviewDecision.ESCALATE: "ESCALATE: human review required",
    }[decision]
    lines = [headline, f"Combined confidence: {confidence * 100:.1f}%"]
    if factors:
        lines.append("Key factors:")
        lines.extend(f"  - {factor}" for factor in factors)
    return "\n".join(lines)
