from .aggregator import DualReviewAggregator
from .decision_maker import (
    combine_confidence,
    decide_verdict,
    independent_confidence,
    overall_score,
)
from .protocols import IndependentReviewer, SelfReviewer

__all__ = [
    "DualReviewAggregator",
    "IndependentReviewer",
    "SelfReviewer",
    "combine_confidence",
    "decide_verdict",
    "independent_confidence",
    "overall_score",
]
