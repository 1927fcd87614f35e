"""Interfaces of the two parties in a dual review."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..contracts import SelfReviewReport, SubReviewReport


@runtime_checkable
class SelfReviewer(Protocol):
    """The producer of an artifact, reviewing and fixing its own work."""

    identity: str

    async def self_review(self, artifact: Any, context: Dict[str, Any]) -> SelfReviewReport:
        ...

    async def fix(self, artifact: Any, report: SelfReviewReport, context: Dict[str, Any]) -> Any:
        """Return a corrected artifact addressing the report's issues."""
        ...


@runtime_checkable
class IndependentReviewer(Protocol):
    """A reviewer with no stake in the artifact."""

    identity: str

    async def security_review(self, artifact: Any, context: Dict[str, Any]) -> SubReviewReport:
        ...

    async def quality_review(self, artifact: Any, context: Dict[str, Any]) -> SubReviewReport:
        ...

    async def test_adequacy_review(
        self, artifact: Any, test_results: Optional[Any], context: Dict[str, Any]
    ) -> SubReviewReport:
        ...
