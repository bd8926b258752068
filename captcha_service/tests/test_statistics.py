import logging
import threading

import pytest

from captcha_service.modules.models import (
    DominantColor,
    ResolutionMethod,
    ResolutionResult,
    ResolutionStatus,
)
from captcha_service.services.statistics import StatisticsAccumulator


def make_result(
    method=ResolutionMethod.OCR_ENSEMBLE,
    status=ResolutionStatus.ACCEPTED,
    confidence=90.0,
    padded=False,
    label="RGB-B-Blue",
    latency_ms=1000.0,
):
    return ResolutionResult(
        text="AB12",
        confidence=confidence,
        method=method,
        attempts_used=1,
        status=status,
        winning_candidate_label=label,
        dominant_color=DominantColor.YELLOW,
        padded=padded,
        latency_ms=latency_ms,
    )


def test_empty_snapshot():
    snapshot = StatisticsAccumulator().snapshot()

    assert snapshot["total_sessions"] == 0
    assert snapshot["success_rate"] == 0.0
    assert snapshot["average_latency_ms"] == 0.0


def test_counts_by_outcome_and_method():
    stats = StatisticsAccumulator()
    stats.record(make_result(latency_ms=1000, confidence=90))
    stats.record(make_result(method=ResolutionMethod.API, latency_ms=3000, confidence=90))
    stats.record(make_result(method=ResolutionMethod.MANUAL, confidence=100, label=None))
    stats.record(make_result(status=ResolutionStatus.FAILED, padded=True, confidence=20))
    stats.record(make_result(status=ResolutionStatus.EXTERNALLY_RESOLVED, confidence=0))

    snapshot = stats.snapshot()

    assert snapshot["total_sessions"] == 5
    assert snapshot["automatic_successes"] == 2
    assert snapshot["manual_successes"] == 1
    assert snapshot["automatic_failures"] == 1
    assert snapshot["externally_resolved"] == 1
    assert snapshot["padded_results"] == 1
    assert snapshot["success_rate"] == pytest.approx(0.6)
    assert snapshot["average_confidence"] == pytest.approx(60.0)
    assert snapshot["by_method"] == {"ocr-ensemble": 3, "api": 1, "manual": 1}
    assert snapshot["winning_candidates"] == {"RGB-B-Blue": 2}


def test_record_emits_metrics_record(caplog):
    caplog.set_level(logging.INFO, logger="captcha-service.metrics")

    StatisticsAccumulator().record(make_result(padded=True))

    records = [r for r in caplog.records if r.name == "captcha-service.metrics"]
    assert len(records) == 1
    record = records[0]
    assert record.confidence == 90.0
    assert record.candidate_used == "RGB-B-Blue"
    assert record.accepted is True
    assert record.attempts == 1
    assert record.dominant_color == "yellow"
    assert record.method == "ocr-ensemble"
    assert record.padded is True


def test_concurrent_records_are_not_lost():
    stats = StatisticsAccumulator()

    def worker():
        for _ in range(200):
            stats.record(make_result())

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert stats.snapshot()["total_sessions"] == 800


def test_reset():
    stats = StatisticsAccumulator()
    stats.record(make_result())

    stats.reset()

    assert stats.snapshot()["total_sessions"] == 0
