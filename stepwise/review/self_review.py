from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from ..contracts import SelfReviewReport
from ..metrics import MetricsTracker
from .protocols import SelfReviewer

logger = logging.getLogger(__name__)

PHASE = "self_review"


async def run_self_review(
    reviewer: SelfReviewer,
    artifact: Any,
    context: Dict[str, Any],
    metrics: MetricsTracker,
) -> Tuple[Any, SelfReviewReport]:
    """Self-review ``artifact``; on critical issues fix once and re-validate.

    Returns the (possibly fixed) artifact and the last report.
    """
    with metrics.phase(PHASE):
        report = await reviewer.self_review(artifact, context)
        if report.critical_issues:
            logger.info(
                f"{reviewer.identity} found {len(report.critical_issues)} critical issues; fixing"
            )
            artifact = await reviewer.fix(artifact, report, context)
            report = await reviewer.self_review(artifact, context)
            if report.critical_issues:
                logger.warning(
                    f"{len(report.critical_issues)} critical issues remain after fix by {reviewer.identity}"
                )
    metrics.record_findings(report.issues)
    return artifact, report
