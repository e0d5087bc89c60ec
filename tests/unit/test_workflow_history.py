import base64
import json

import httpx

from scan_analyst.types import WorkflowStatus
from scan_analyst.workflow.history import WorkflowHistoryAdapter, map_status
from scan_analyst.workflow.models import decode_payload, normalize_event_type, parse_timestamp


def _encoded(value: str) -> dict:
    return {
        "metadata": {"encoding": "YmluYXJ5L3BsYWlu"},
        "data": base64.b64encode(json.dumps(value).encode()).decode(),
    }


def test_completed_run_has_duration_and_memo(temporal, failed_history) -> None:
    temporal.add_workflow(
        "wf-123",
        status="WORKFLOW_EXECUTION_STATUS_FAILED",
        memo={"team": _encoded("payments"), "project": "checkout", "scanType": _encoded("sast")},
        events=failed_history(),
    )

    run = temporal.adapter().fetch_run("wf-123")

    assert run.status is WorkflowStatus.FAILED
    assert run.run_id == "run-1"
    assert run.duration_ms == 125_500
    assert (run.team, run.project, run.scan_type) == ("payments", "checkout", "sast")
    assert len(run.events) == 4


def test_binary_memo_field_is_skipped_not_raised(temporal) -> None:
    temporal.add_workflow(
        "wf-bin",
        memo={
            "team": {"metadata": {"encoding": "binary/protobuf"}, "data": "//4AYmluYXJ5"},
            "project": _encoded("checkout"),
        },
    )

    run = temporal.adapter().fetch_run("wf-bin")

    assert run.status is WorkflowStatus.COMPLETED
    assert run.team is None
    assert run.project == "checkout"


def test_decode_payload_only_decodes_text_encodings() -> None:
    undecodable = base64.b64encode(b"\xff\xfe\x00binary").decode()

    assert str(decode_payload({"metadata": {"encoding": "binary/protobuf"}, "data": "//4AYmluYXJ5"})) == (
        "<binary/protobuf payload, 9 bytes>"
    )
    assert str(decode_payload({"data": undecodable})) == "<binary payload, 9 bytes>"
    assert str(decode_payload({"data": "not base64!"})) == "<binary payload, 0 bytes>"
    assert decode_payload({"metadata": {"encoding": "YmluYXJ5L251bGw="}, "data": ""}) is None
    assert decode_payload({"metadata": {"encoding": "anNvbi9wbGFpbg=="}, "data": "eyJhIjogMX0="}) == {"a": 1}
    assert decode_payload({"data": base64.b64encode(b"plain words").decode()}) == "plain words"


def test_running_workflow_has_no_duration(temporal) -> None:
    temporal.add_workflow("wf-live", status="WORKFLOW_EXECUTION_STATUS_RUNNING", close=None)

    run = temporal.adapter().fetch_run("wf-live")

    assert run.status is WorkflowStatus.RUNNING
    assert run.duration_ms is None


def test_unknown_workflow_is_not_found(temporal) -> None:
    run = temporal.adapter().fetch_run("wf-missing")

    assert run.status is WorkflowStatus.NOT_FOUND
    assert "not found" in run.analysis


def test_unreachable_service_is_error_not_exception(temporal) -> None:
    temporal.offline = True

    run = temporal.adapter().fetch_run("wf-123", "run-9")

    assert run.status is WorkflowStatus.ERROR
    assert run.run_id == "run-9"
    assert run.analysis.startswith("Workflow service unavailable")


def test_history_is_paginated_and_run_id_forwarded() -> None:
    seen: list[httpx.Request] = []
    info = {
        "workflowExecutionInfo": {
            "execution": {"workflowId": "wf-1", "runId": "run-7"},
            "status": "WORKFLOW_EXECUTION_STATUS_COMPLETED",
        }
    }
    pages = {
        None: {"history": {"events": [{"eventId": "1", "eventType": "WorkflowExecutionStarted"}]},
               "nextPageToken": "cGFnZTI="},
        "cGFnZTI=": {"history": {"events": [{"eventId": "2", "eventType": "WorkflowExecutionCompleted"}]}},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/history"):
            return httpx.Response(200, json=pages[request.url.params.get("nextPageToken")])
        return httpx.Response(200, json=info)

    adapter = WorkflowHistoryAdapter(
        client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://temporal.test")
    )
    run = adapter.fetch_run("wf-1")

    assert [event.event_type for event in run.events] == [
        "EVENT_TYPE_WORKFLOW_EXECUTION_STARTED",
        "EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED",
    ]
    assert all(r.url.params.get("execution.runId") == "run-7" for r in seen[1:])


def test_history_failure_keeps_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/history"):
            return httpx.Response(503, text="unavailable")
        return httpx.Response(
            200,
            json={"workflowExecutionInfo": {"status": "WORKFLOW_EXECUTION_STATUS_COMPLETED"}},
        )

    adapter = WorkflowHistoryAdapter(
        client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://temporal.test")
    )
    run = adapter.fetch_run("wf-2")

    assert run.status is WorkflowStatus.COMPLETED
    assert run.events == []
    assert run.analysis.startswith("Event history unavailable")


def test_status_and_event_type_normalisation() -> None:
    assert map_status("WORKFLOW_EXECUTION_STATUS_TIMED_OUT") is WorkflowStatus.TIMED_OUT
    assert map_status("terminated") is WorkflowStatus.TERMINATED
    assert map_status(None) is WorkflowStatus.ERROR
    assert normalize_event_type("ActivityTaskTimedOut") == "EVENT_TYPE_ACTIVITY_TASK_TIMED_OUT"
    assert parse_timestamp("2026-03-01T10:00:00.123456789Z").microsecond == 123456
