import pytest
from fastapi.testclient import TestClient

from scan_analyst.api.main import create_app


@pytest.fixture
def client(make_router, offline_inference) -> TestClient:
    return TestClient(create_app(make_router(offline_inference)))


def test_api_query_trace_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["inference_configured"] is True

    query_resp = client.post(
        "/query", json={"query": "top cwes for team payments last 7 days"}
    )
    assert query_resp.status_code == 200
    payload = query_resp.json()
    assert payload["source"] == "EVIDENCE_LAYER"
    assert payload["confidence"] == 1.0
    assert payload["data"]["weaknesses"][0]["cweId"] == "CWE-79"

    trace_resp = client.get(f"/traces/{payload['data']['traceId']}")
    assert trace_resp.status_code == 200
    assert trace_resp.json()["intent"] == "WEAKNESS_STATS"

    assert client.get("/traces").json()["items"]
    metrics = client.get("/metrics").json()
    assert metrics["total_requests"] == 1
    assert metrics["source_evidence_layer"] == 1


def test_api_rejects_empty_query(client: TestClient) -> None:
    assert client.post("/query", json={"query": ""}).status_code == 422
    assert client.get("/traces/not-a-trace").status_code == 404


def test_api_knowledge_lifecycle(client: TestClient) -> None:
    created = client.post(
        "/knowledge",
        json={
            "question": "How do I suppress a false positive?",
            "answer": "Add a triage note and mark the finding as FALSE_POSITIVE.",
            "team": "payments",
            "context_tags": ["triage"],
        },
    )
    assert created.status_code == 200
    kb_id = created.json()["kb_id"]
    assert created.json()["approval_status"] == "PENDING"

    updated = client.put(f"/knowledge/{kb_id}", json={"answer": "Use the triage view."})
    assert updated.status_code == 200
    assert updated.json()["version"] == 2

    approved = client.post(f"/knowledge/{kb_id}/approve")
    assert approved.json()["approval_status"] == "APPROVED"

    listed = client.get("/knowledge", params={"team": "payments", "active": True})
    assert [item["kb_id"] for item in listed.json()["items"]] == [kb_id]

    search = client.post(
        "/knowledge/search", json={"query": "How do I suppress a false positive?"}
    )
    assert search.json()["items"][0]["kb_id"] == kb_id
    assert search.json()["items"][0]["similarity"] == pytest.approx(1.0)

    assert client.delete(f"/knowledge/{kb_id}").status_code == 200
    assert client.get(f"/knowledge/{kb_id}").status_code == 404
    assert client.post(f"/knowledge/{kb_id}/approve").status_code == 404


def test_api_explanations(client: TestClient) -> None:
    explained = client.get("/explanation/finding/f-2")
    assert explained.status_code == 200
    assert explained.json()["explanation"].startswith("CRITICAL finding")
    assert explained.json()["code_pointers"] == "app/handlers.py:42"

    assert client.get("/explanation/finding/f-404").status_code == 404

    raw = client.post(
        "/explanation/raw", json={"raw_output": {"check_id": "xss"}, "tool": "semgrep"}
    )
    assert raw.status_code == 200
    assert "semgrep" in raw.json()["explanation"]

    assert client.delete("/explanation/cache").json() == {"cleared": True}
    assert client.delete("/explanation/cache/f-2").json() == {"cleared": False}


def test_api_policy_compile(client: TestClient) -> None:
    resp = client.post(
        "/policy/compile", json={"policy": "Block deployments with critical findings"}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "BLOCK"
    assert body["valid"] is True
    assert body["from_inference"] is False
    assert body["rule"]["condition"] == "severity == 'CRITICAL'"


def test_api_query_data_uses_camel_case_keys(client: TestClient, temporal, failed_history) -> None:
    temporal.add_workflow(
        "wf-123", status="WORKFLOW_EXECUTION_STATUS_FAILED", events=failed_history()
    )

    data = client.post("/query", json={"query": "workflow wf-123 why did it fail?"}).json()["data"]

    assert data["failedActivities"] == [{"name": "scan-step", "error": "connection refused"}]
    assert data["workflowId"] == "wf-123"
    assert data["synthesisDegraded"] is True
    assert "failed_activities" not in data


def test_app_wired_from_environment_closes_clients_on_shutdown(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SCAN_ANALYST_DB_PATH", str(tmp_path / "analyst.db"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("SCAN_ANALYST_LLM_BASE_URL", raising=False)
    monkeypatch.setattr("scan_analyst.api.main.configure_logging", lambda level: None)
    app = create_app()

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        router = app.state.router

    assert router.workflow._client.is_closed
    assert router.dependency._client.is_closed
    assert app.state.router is None
