"""
Running statistics over finished resolution sessions and the per-session
metrics record.
"""

import logging
import threading
from collections import Counter
from typing import Any

from captcha_service.modules.models import (
    ResolutionMethod,
    ResolutionResult,
    ResolutionStatus,
)

__all__ = ["StatisticsAccumulator"]

logger = logging.getLogger("captcha-service.statistics")
metrics_logger = logging.getLogger("captcha-service.metrics")


class StatisticsAccumulator:
    """Thread-safe counters fed with every ResolutionResult."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._total = 0
        self._automatic_successes = 0
        self._automatic_failures = 0
        self._manual_successes = 0
        self._externally_resolved = 0
        self._padded = 0
        self._latency_total = 0.0
        self._confidence_total = 0.0
        self._by_method: Counter = Counter()
        self._winning_candidates: Counter = Counter()

    def record(self, result: ResolutionResult) -> None:
        with self._lock:
            self._total += 1
            self._latency_total += result.latency_ms
            self._confidence_total += result.confidence
            self._by_method[result.method.value] += 1
            if result.padded:
                self._padded += 1

            if result.status == ResolutionStatus.EXTERNALLY_RESOLVED:
                self._externally_resolved += 1
            elif not result.accepted:
                self._automatic_failures += 1
            elif result.method == ResolutionMethod.MANUAL:
                self._manual_successes += 1
            else:
                self._automatic_successes += 1
                if result.winning_candidate_label:
                    self._winning_candidates[result.winning_candidate_label] += 1

        metrics_logger.info("CAPTCHA session finished", extra=result.to_record())

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            total = self._total
            return {
                "total_sessions": total,
                "automatic_successes": self._automatic_successes,
                "automatic_failures": self._automatic_failures,
                "manual_successes": self._manual_successes,
                "externally_resolved": self._externally_resolved,
                "padded_results": self._padded,
                "success_rate": (
                    (self._automatic_successes + self._manual_successes) / total
                    if total
                    else 0.0
                ),
                "average_latency_ms": self._latency_total / total if total else 0.0,
                "average_confidence": self._confidence_total / total if total else 0.0,
                "by_method": dict(self._by_method),
                "winning_candidates": dict(self._winning_candidates),
            }

    def reset(self) -> None:
        with self._lock:
            self._clear()
