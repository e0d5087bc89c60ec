"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from scan_analyst.workflow.models import HistoryEvent


class Intent(str, Enum):
    """Closed set of categories a query can be routed to."""

    DURATION = "DURATION"
    CHANGES = "CHANGES"
    WEAKNESS_STATS = "WEAKNESS_STATS"
    EXPLAIN_FINDING = "EXPLAIN_FINDING"
    POLICY = "POLICY"
    WORKFLOW_RESULT = "WORKFLOW_RESULT"
    DEPENDENCY_GRAPH = "DEPENDENCY_GRAPH"
    GENERAL = "GENERAL"


class AnswerSource(str, Enum):
    KNOWLEDGE_BASE = "KNOWLEDGE_BASE"
    EVIDENCE_LAYER = "EVIDENCE_LAYER"
    INFERENCE = "INFERENCE"


class WorkflowStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    TERMINATED = "TERMINATED"
    TIMED_OUT = "TIMED_OUT"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"


@dataclass(slots=True)
class Weakness:
    """A weakness category from the CWE catalogue."""

    cwe_id: str
    name: str
    description: str | None = None
    category: str | None = None
    severity: str | None = None


@dataclass(slots=True)
class Scan:
    """One security scan, linked to the workflow run that executed it."""

    scan_id: str
    workflow_id: str
    team: str
    status: str
    started_at: datetime
    run_id: str | None = None
    project: str | None = None
    scan_type: str | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    total_findings: int = 0
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Finding:
    """A single tool finding produced by a scan."""

    finding_id: str
    scan_id: str
    severity: str
    title: str
    cwe_id: str | None = None
    description: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    tool: str | None = None
    tool_finding_id: str | None = None
    raw_output: str | None = None
    is_reachable: bool | None = None
    status: str = "OPEN"

    @property
    def diff_key(self) -> str:
        """Identity of the finding across scans of the same target."""
        return self.tool_finding_id or self.finding_id


@dataclass(slots=True)
class WeaknessStat:
    cwe_id: str
    name: str
    total: int
    critical: int
    high: int


@dataclass(slots=True)
class KnowledgeEntry:
    """A curated question/answer pair."""

    kb_id: str
    question: str
    answer: str
    team: str | None = None
    project: str | None = None
    context_tags: list[str] = field(default_factory=list)
    created_by: str | None = None
    usage_count: int = 0
    is_active: bool = True
    version: int = 1
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class KnowledgeMatch:
    entry: KnowledgeEntry
    similarity: float


@dataclass(slots=True)
class FailedActivity:
    name: str
    error: str


@dataclass(slots=True)
class WorkflowRun:
    """Status and history of one workflow execution, fetched per query."""

    workflow_id: str
    status: WorkflowStatus
    run_id: str | None = None
    duration_ms: int | None = None
    events: list[HistoryEvent] = field(default_factory=list)
    failure_cause: str | None = None
    failed_activities: list[FailedActivity] = field(default_factory=list)
    team: str | None = None
    project: str | None = None
    scan_type: str | None = None
    analysis: str = ""


@dataclass(slots=True)
class ScanComparison:
    """Set difference between the findings of two scans."""

    left_scan_id: str
    right_scan_id: str
    new_findings: list[str]
    resolved_findings: list[str]
    unchanged_count: int

    @property
    def new_count(self) -> int:
        return len(self.new_findings)

    @property
    def resolved_count(self) -> int:
        return len(self.resolved_findings)

    def summary(self) -> str:
        return (
            f"Scan {self.right_scan_id} vs {self.left_scan_id}: "
            f"{self.new_count} new, {self.resolved_count} resolved, "
            f"{self.unchanged_count} unchanged"
        )


@dataclass(slots=True)
class AnswerResponse:
    """The pipeline's single output type."""

    source: AnswerSource
    answer: str
    confidence: float
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "answer": self.answer,
            "data": self.data,
            "confidence": self.confidence,
        }
