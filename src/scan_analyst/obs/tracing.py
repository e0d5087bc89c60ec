"""Per-query tracing and latency accounting."""

from __future__ import annotations

import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock


@dataclass(slots=True)
class QueryTrace:
    trace_id: str
    timestamp_utc: str
    query: str
    team: str | None
    intent: str | None
    source: str
    confidence: float
    stages: list[str] = field(default_factory=list)
    latency_ms: float = 0.0


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: dict[str, QueryTrace] = {}
        self._max_records = max_records
        self._lock = Lock()

    def create_record(
        self,
        *,
        query: str,
        team: str | None,
        intent: str | None,
        source: str,
        confidence: float,
        stages: list[str],
        latency_ms: float,
    ) -> QueryTrace:
        record = QueryTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=query,
            team=team,
            intent=intent,
            source=source,
            confidence=confidence,
            stages=list(stages),
            latency_ms=latency_ms,
        )
        with self._lock:
            self._records[record.trace_id] = record
            while len(self._records) > self._max_records:
                del self._records[next(iter(self._records))]
        return record

    def get(self, trace_id: str) -> QueryTrace:
        with self._lock:
            record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[QueryTrace]:
        with self._lock:
            return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate request counts and latency for dashboard display."""
        with self._lock:
            records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_confidence": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        by_source = Counter(record.source for record in records)

        summary: dict[str, float | int] = {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_confidence": sum(record.confidence for record in records) / total,
        }
        for source, count in sorted(by_source.items()):
            summary[f"source_{source.lower()}"] = count
        return summary


class Timer:
    """Simple context timer used by the query router."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
