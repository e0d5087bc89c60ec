from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from langchain_core.embeddings import Embeddings

from scan_analyst.agent.router import QueryRouter
from scan_analyst.dependency.client import DependencyGraphAdapter
from scan_analyst.evidence.store import EvidenceStore
from scan_analyst.inference.client import InferenceClient
from scan_analyst.inference.embedder import HashingEmbeddings
from scan_analyst.obs.tracing import TraceStore
from scan_analyst.types import Finding, Scan, Weakness
from scan_analyst.workflow.history import WorkflowHistoryAdapter

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Message:
    def __init__(self, content: str) -> None:
        self.content = content


class ScriptedChatModel:
    """Chat model double answering from a prompt -> text function."""

    def __init__(self, respond: Callable[[str], str]) -> None:
        self.respond = respond
        self.prompts: list[str] = []

    def invoke(self, prompt: str) -> _Message:
        self.prompts.append(prompt)
        return _Message(self.respond(prompt))


class FailingChatModel:
    def __init__(self) -> None:
        self.calls = 0

    def invoke(self, prompt: str) -> _Message:
        self.calls += 1
        raise httpx.ConnectTimeout("inference endpoint timed out")


class ConstantEmbeddings(Embeddings):
    """Every text embeds to the same vector."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[0.6, 0.8, 0.0] for _ in texts]

    def embed_query(self, text: str) -> list[float]:
        return [0.6, 0.8, 0.0]


class FailingEmbeddings(Embeddings):
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise httpx.ConnectError("embedding endpoint down")

    def embed_query(self, text: str) -> list[float]:
        raise httpx.ConnectError("embedding endpoint down")


class FakeTemporal:
    """In-memory stand-in for the orchestration service's HTTP API."""

    def __init__(self) -> None:
        self.workflows: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.offline = False
        self.history_status: int | None = None

    def add_workflow(
        self,
        workflow_id: str,
        *,
        status: str = "WORKFLOW_EXECUTION_STATUS_COMPLETED",
        run_id: str = "run-1",
        start: str = "2026-03-01T10:00:00.000000000Z",
        close: str | None = "2026-03-01T10:02:05.500000000Z",
        memo: dict[str, Any] | None = None,
        events: list[dict[str, Any]] | None = None,
    ) -> None:
        info: dict[str, Any] = {
            "execution": {"workflowId": workflow_id, "runId": run_id},
            "type": {"name": "SecurityScanWorkflow"},
            "startTime": start,
            "status": status,
            "memo": {"fields": memo or {}},
        }
        if close is not None:
            info["closeTime"] = close
        self.workflows[workflow_id] = {"info": info, "events": events or []}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        parts = request.url.path.strip("/").split("/")
        workflow_id = parts[5]
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            return httpx.Response(404, json={"code": 5, "message": "workflow not found"})
        if parts[-1] == "history" and self.history_status is not None:
            return httpx.Response(self.history_status, json={"code": 14, "message": "unavailable"})
        if parts[-1] == "history":
            return httpx.Response(200, json={"history": {"events": workflow["events"]}})
        return httpx.Response(200, json={"workflowExecutionInfo": workflow["info"]})

    def adapter(self) -> WorkflowHistoryAdapter:
        client = httpx.Client(
            transport=httpx.MockTransport(self.handler), base_url="http://temporal.test"
        )
        return WorkflowHistoryAdapter(client=client)


def failed_activity_history(
    activity: str = "scan-step", error: str = "connection refused"
) -> list[dict[str, Any]]:
    return [
        {"eventId": "1", "eventType": "EVENT_TYPE_WORKFLOW_EXECUTION_STARTED"},
        {
            "eventId": "5",
            "eventType": "EVENT_TYPE_ACTIVITY_TASK_SCHEDULED",
            "activityTaskScheduledEventAttributes": {
                "activityId": "5",
                "activityType": {"name": activity},
            },
        },
        {"eventId": "6", "eventType": "EVENT_TYPE_ACTIVITY_TASK_STARTED"},
        {
            "eventId": "7",
            "eventType": "EVENT_TYPE_ACTIVITY_TASK_FAILED",
            "activityTaskFailedEventAttributes": {
                "failure": {"message": error},
                "scheduledEventId": "5",
                "startedEventId": "6",
            },
        },
    ]


@pytest.fixture
def store(tmp_path) -> EvidenceStore:
    return EvidenceStore(tmp_path / "scan_analyst.db")


@pytest.fixture
def seeded_store(store: EvidenceStore) -> EvidenceStore:
    store.add_weakness(Weakness("CWE-79", "Cross-site Scripting", "Improper neutralization of input"))
    store.add_weakness(Weakness("CWE-89", "SQL Injection"))
    store.add_weakness(Weakness("CWE-798", "Hard-coded Credentials"))

    store.add_scan(
        Scan(
            scan_id="scan-001",
            workflow_id="wf-001",
            run_id="run-001",
            team="payments",
            status="COMPLETED",
            started_at=NOW - timedelta(days=3),
            duration_ms=95_000,
        )
    )
    store.add_scan(
        Scan(
            scan_id="scan-002",
            workflow_id="wf-002",
            run_id="run-002",
            team="payments",
            status="FAILED",
            started_at=NOW - timedelta(days=1),
            duration_ms=40_000,
        )
    )
    store.add_scan(
        Scan(
            scan_id="scan-old",
            workflow_id="wf-old",
            team="payments",
            status="COMPLETED",
            started_at=NOW - timedelta(days=40),
        )
    )

    rows = [
        ("f-1", "scan-001", "CWE-79", "HIGH", "semgrep-1"),
        ("f-2", "scan-001", "CWE-89", "CRITICAL", "semgrep-2"),
        ("f-3", "scan-001", "CWE-79", "MEDIUM", "semgrep-3"),
        ("f-4", "scan-002", "CWE-79", "CRITICAL", "semgrep-1"),
        ("f-5", "scan-002", "CWE-798", "HIGH", "gitleaks-9"),
        ("f-6", "scan-002", "CWE-79", "HIGH", "semgrep-7"),
        ("f-7", "scan-old", "CWE-798", "CRITICAL", "gitleaks-1"),
        ("f-8", "scan-old", "CWE-798", "CRITICAL", "gitleaks-2"),
        ("f-9", "scan-old", "CWE-798", "CRITICAL", "gitleaks-3"),
    ]
    for finding_id, scan_id, cwe_id, severity, tool_id in rows:
        store.add_finding(
            Finding(
                finding_id=finding_id,
                scan_id=scan_id,
                severity=severity,
                title=f"{cwe_id} in handler",
                cwe_id=cwe_id,
                file_path="app/handlers.py",
                line_number=42,
                tool=tool_id.split("-")[0],
                tool_finding_id=tool_id,
            )
        )
    return store


@pytest.fixture
def offline_inference() -> InferenceClient:
    return InferenceClient(chat_model=FailingChatModel(), embeddings=HashingEmbeddings())


@pytest.fixture
def make_inference() -> Callable[..., InferenceClient]:
    def _make(
        respond: Callable[[str], str] | None = None,
        embeddings: Embeddings | None = None,
    ) -> InferenceClient:
        chat_model = ScriptedChatModel(respond) if respond is not None else FailingChatModel()
        return InferenceClient(chat_model=chat_model, embeddings=embeddings or HashingEmbeddings())

    return _make


@pytest.fixture
def constant_embeddings() -> Embeddings:
    return ConstantEmbeddings()


@pytest.fixture
def failing_embeddings() -> Embeddings:
    return FailingEmbeddings()


@pytest.fixture
def temporal() -> FakeTemporal:
    return FakeTemporal()


@pytest.fixture
def failed_history() -> Callable[..., list[dict[str, Any]]]:
    return failed_activity_history


@pytest.fixture
def dependency_handler() -> Callable[[httpx.Request], httpx.Response]:
    project = {
        "uuid": "5f0b2a5e-1111-4c6b-9a7e-000000000001",
        "name": "checkout",
        "version": "2.1.0",
        "active": True,
        "lastBomImport": 1767225600000,
    }
    metrics = {
        "critical": 2,
        "high": 5,
        "medium": 7,
        "low": 1,
        "unassigned": 0,
        "vulnerabilities": 15,
        "vulnerableComponents": 4,
        "components": 120,
        "suppressed": 0,
        "findingsTotal": 15,
        "policyViolationsTotal": 1,
        "policyViolationsFail": 1,
    }
    boms = [{"uuid": "b-1", "bomFormat": "CycloneDX", "specVersion": "1.5", "imported": "2026-02-27"}]

    def _handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/project/lookup":
            if request.url.params.get("name") != "checkout":
                return httpx.Response(404, text="The project could not be found.")
            return httpx.Response(200, json=project)
        if path == f"/api/v1/metrics/project/{project['uuid']}/current":
            return httpx.Response(200, json=metrics)
        if path == "/api/v1/bom":
            return httpx.Response(200, content=json.dumps(boms))
        return httpx.Response(404)

    return _handler


@pytest.fixture
def dependency_adapter(dependency_handler) -> DependencyGraphAdapter:
    client = httpx.Client(
        transport=httpx.MockTransport(dependency_handler), base_url="http://dtrack.test"
    )
    return DependencyGraphAdapter(client=client)


@pytest.fixture
def make_router(
    seeded_store: EvidenceStore,
    temporal: FakeTemporal,
    dependency_adapter: DependencyGraphAdapter,
) -> Callable[..., QueryRouter]:
    def _make(inference: InferenceClient, **overrides: Any) -> QueryRouter:
        options: dict[str, Any] = {
            "store": seeded_store,
            "inference": inference,
            "workflow": temporal.adapter(),
            "dependency": dependency_adapter,
            "trace_store": TraceStore(),
            "clock": lambda: NOW,
        }
        options.update(overrides)
        return QueryRouter(**options)

    return _make


@pytest.fixture
def now() -> datetime:
    return NOW
