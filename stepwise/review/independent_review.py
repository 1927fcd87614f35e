from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..contracts import ReviewCheck, SubReviewReport
from ..metrics import MetricsTracker
from .protocols import IndependentReviewer

logger = logging.getLogger(__name__)


async def _timed(
    check: ReviewCheck,
    call: Callable[[], Awaitable[SubReviewReport]],
    metrics: MetricsTracker,
) -> SubReviewReport:
    with metrics.phase(check.value):
        report = await call()
    if report.check != check:
        report = report.model_copy(update={"check": check})
    return report


async def run_independent_review(
    reviewer: IndependentReviewer,
    artifact: Any,
    test_results: Optional[Any],
    context: Dict[str, Any],
    metrics: MetricsTracker,
) -> Tuple[List[SubReviewReport], Dict[str, str]]:
    """Run the security, quality and test-adequacy checks concurrently.

    Returns the completed sub-reviews and, per check that raised, its error.
    """
    calls = {
        ReviewCheck.SECURITY: lambda: reviewer.security_review(artifact, context),
        ReviewCheck.QUALITY: lambda: reviewer.quality_review(artifact, context),
        ReviewCheck.TEST_ADEQUACY: lambda: reviewer.test_adequacy_review(
            artifact, test_results, context
        ),
    }
    results = await asyncio.gather(
        *(_timed(check, call, metrics) for check, call in calls.items()),
        return_exceptions=True,
    )

    reports: List[SubReviewReport] = []
    errors: Dict[str, str] = {}
    for check, result in zip(calls, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.error(f"{check.value} review by {reviewer.identity} failed: {result}")
            errors[check.value] = f"{type(result).__name__}: {result}"
            continue
        metrics.record_findings(result.findings)
        reports.append(result)
    return reports, errors
