"""Thread-safe counters and phase timers."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from .contracts import ReviewFinding, ReviewMetrics, Severity

logger = logging.getLogger(__name__)

DEFAULT_BOTTLENECK_SECONDS = 300.0


class MetricsTracker:
    """Collects counts, per-phase timings and finding tallies.

    Every public method takes the internal lock, so one tracker may be shared
    by concurrently running workflows and reviewer threads.
    """

    def __init__(self, bottleneck_seconds: float = DEFAULT_BOTTLENECK_SECONDS) -> None:
        self.bottleneck_seconds = bottleneck_seconds
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._phase_started: Dict[str, float] = {}
        self._phase_ms: Dict[str, int] = {}
        self._findings: Dict[str, int] = {}
        self._iterations = 0
        self._created = time.monotonic()

    def increment(self, name: str, amount: int = 1) -> int:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount
            return self._counters[name]

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def start_phase(self, phase: str) -> None:
        with self._lock:
            self._phase_started[phase] = time.monotonic()

    def end_phase(self, phase: str) -> int:
        """Stop the timer for ``phase`` and return its duration in ms.

        Repeated runs of the same phase accumulate.
        """
        with self._lock:
            started = self._phase_started.pop(phase, None)
            if started is None:
                raise KeyError(f"Phase {phase!r} was not started")
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._phase_ms[phase] = self._phase_ms.get(phase, 0) + elapsed_ms
            total = self._phase_ms[phase]
        if total > self.bottleneck_seconds * 1000:
            logger.warning(
                f"Bottleneck detected: phase {phase} took {total / 1000:.1f}s "
                f"(threshold {self.bottleneck_seconds:.0f}s)"
            )
        return elapsed_ms

    @contextmanager
    def phase(self, phase: str) -> Iterator[None]:
        self.start_phase(phase)
        try:
            yield
        finally:
            self.end_phase(phase)

    def record_phase(self, phase: str, duration_ms: int) -> None:
        with self._lock:
            self._phase_ms[phase] = self._phase_ms.get(phase, 0) + duration_ms

    def phase_ms(self, phase: str) -> int:
        with self._lock:
            return self._phase_ms.get(phase, 0)

    def record_findings(self, findings: Iterable[ReviewFinding]) -> None:
        with self._lock:
            for finding in findings:
                key = Severity(finding.severity).value
                self._findings[key] = self._findings.get(key, 0) + 1

    def increment_iterations(self) -> int:
        with self._lock:
            self._iterations += 1
            return self._iterations

    def bottlenecks(self, threshold_seconds: Optional[float] = None) -> List[str]:
        limit_ms = (threshold_seconds or self.bottleneck_seconds) * 1000
        with self._lock:
            return [name for name, ms in self._phase_ms.items() if ms > limit_ms]

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "phase_ms": dict(self._phase_ms),
                "findings_by_severity": dict(self._findings),
                "iterations": self._iterations,
                "elapsed_ms": int((time.monotonic() - self._created) * 1000),
            }

    def to_review_metrics(self, total_ms: Optional[int] = None) -> ReviewMetrics:
        snap = self.snapshot()
        return ReviewMetrics(
            total_ms=total_ms if total_ms is not None else snap["elapsed_ms"],
            phase_ms=snap["phase_ms"],
            findings_by_severity=snap["findings_by_severity"],
            iterations=max(1, snap["iterations"]),
            bottlenecks=self.bottlenecks(),
        )
