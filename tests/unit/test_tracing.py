import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from scan_analyst.obs.logging import configure_logging
from scan_analyst.obs.tracing import Timer, TraceStore


def _record(store: TraceStore, source: str, latency_ms: float, confidence: float = 1.0):
    return store.create_record(
        query="q",
        team="payments",
        intent="GENERAL",
        source=source,
        confidence=confidence,
        stages=["knowledge_match", "classify"],
        latency_ms=latency_ms,
    )


def test_summary_counts_sources_and_latency() -> None:
    store = TraceStore()
    _record(store, "KNOWLEDGE_BASE", 10.0, 1.0)
    _record(store, "EVIDENCE_LAYER", 30.0, 0.5)

    summary = store.summary()

    assert summary["total_requests"] == 2
    assert summary["avg_latency_ms"] == 20.0
    assert summary["avg_confidence"] == 0.75
    assert summary["source_knowledge_base"] == 1
    assert summary["source_evidence_layer"] == 1


def test_empty_summary() -> None:
    assert TraceStore().summary()["total_requests"] == 0


def test_records_are_bounded_and_retrievable() -> None:
    store = TraceStore(max_records=2)
    first = _record(store, "INFERENCE", 1.0)
    second = _record(store, "INFERENCE", 2.0)
    third = _record(store, "INFERENCE", 3.0)

    assert [r.trace_id for r in store.list_recent()] == [second.trace_id, third.trace_id]
    assert store.get(third.trace_id).stages == ["knowledge_match", "classify"]
    with pytest.raises(KeyError):
        store.get(first.trace_id)


def test_eviction_is_safe_under_concurrent_writers() -> None:
    store = TraceStore(max_records=5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        records = list(pool.map(lambda i: _record(store, "INFERENCE", float(i)), range(400)))

    assert len(records) == 400
    assert len(store.list_recent(limit=100)) == 5
    assert store.summary()["total_requests"] == 5


def test_timer_measures_elapsed() -> None:
    with Timer() as timer:
        pass

    assert timer.elapsed_ms >= 0.0


def test_configure_logging_is_idempotent() -> None:
    package_logger = logging.getLogger("scan_analyst")
    try:
        configure_logging("DEBUG")
        configure_logging("WARNING")

        tagged = [h for h in package_logger.handlers if getattr(h, "_scan_analyst", False)]
        assert len(tagged) == 1
        assert package_logger.level == logging.WARNING
    finally:
        for handler in list(package_logger.handlers):
            if getattr(handler, "_scan_analyst", False):
                package_logger.removeHandler(handler)
        package_logger.setLevel(logging.NOTSET)
