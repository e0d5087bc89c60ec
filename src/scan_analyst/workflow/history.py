"""Workflow history adapter over the orchestration service's HTTP API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from scan_analyst.config import WorkflowHistoryConfig
from scan_analyst.types import WorkflowRun, WorkflowStatus
from scan_analyst.workflow.models import (
    DescribeWorkflowResponse,
    GetHistoryResponse,
    HistoryEvent,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "WORKFLOW_EXECUTION_STATUS_RUNNING": WorkflowStatus.RUNNING,
    "WORKFLOW_EXECUTION_STATUS_COMPLETED": WorkflowStatus.COMPLETED,
    "WORKFLOW_EXECUTION_STATUS_FAILED": WorkflowStatus.FAILED,
    "WORKFLOW_EXECUTION_STATUS_CANCELED": WorkflowStatus.CANCELED,
    "WORKFLOW_EXECUTION_STATUS_TERMINATED": WorkflowStatus.TERMINATED,
    "WORKFLOW_EXECUTION_STATUS_TIMED_OUT": WorkflowStatus.TIMED_OUT,
    "WORKFLOW_EXECUTION_STATUS_CONTINUED_AS_NEW": WorkflowStatus.COMPLETED,
}
_MAX_HISTORY_PAGES = 50


def map_status(raw: str | None) -> WorkflowStatus:
    if not raw:
        return WorkflowStatus.ERROR
    key = raw if raw.startswith("WORKFLOW_EXECUTION_STATUS_") else (
        "WORKFLOW_EXECUTION_STATUS_" + raw.upper()
    )
    return _STATUS_MAP.get(key, WorkflowStatus.ERROR)


class WorkflowHistoryAdapter:
    """Fetches status and event history for one workflow run.

    `fetch_run` never raises: an unknown workflow comes back with status
    NOT_FOUND and any transport, timeout or decoding failure with status
    ERROR, the reason carried in `analysis`.
    """

    def __init__(
        self,
        config: WorkflowHistoryConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or WorkflowHistoryConfig()
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
        )

    def close(self) -> None:
        self._client.close()

    def _workflow_path(self, workflow_id: str) -> str:
        return f"/api/v1/namespaces/{self.config.namespace}/workflows/{workflow_id}"

    def describe(self, workflow_id: str, run_id: str | None = None) -> DescribeWorkflowResponse:
        response = self._client.get(
            self._workflow_path(workflow_id), params=_run_params(run_id)
        )
        response.raise_for_status()
        return DescribeWorkflowResponse.model_validate(response.json())

    def get_history(self, workflow_id: str, run_id: str | None = None) -> list[HistoryEvent]:
        events: list[HistoryEvent] = []
        params: dict[str, Any] = _run_params(run_id)
        for _ in range(_MAX_HISTORY_PAGES):
            response = self._client.get(
                f"{self._workflow_path(workflow_id)}/history", params=params
            )
            response.raise_for_status()
            page = GetHistoryResponse.model_validate(response.json())
            if page.history is not None:
                events.extend(page.history.events)
            if not page.next_page_token:
                break
            params = {**params, "nextPageToken": page.next_page_token}
        else:
            logger.warning("History for %s truncated after %d pages", workflow_id, _MAX_HISTORY_PAGES)
        return events

    def fetch_run(self, workflow_id: str, run_id: str | None = None) -> WorkflowRun:
        logger.info("Fetching workflow %s (run=%s)", workflow_id, run_id or "latest")
        try:
            described = self.describe(workflow_id, run_id)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.info("Workflow %s not found", workflow_id)
                return WorkflowRun(
                    workflow_id=workflow_id,
                    run_id=run_id,
                    status=WorkflowStatus.NOT_FOUND,
                    analysis=f"Workflow {workflow_id} not found",
                )
            return self._error_run(workflow_id, run_id, exc)
        except (httpx.HTTPError, ValidationError, ValueError) as exc:
            return self._error_run(workflow_id, run_id, exc)

        info = described.workflow_execution_info
        resolved_run_id = info.execution.run_id or run_id
        started = parse_timestamp(info.start_time)
        closed = parse_timestamp(info.close_time)
        duration_ms = None
        if started is not None and closed is not None:
            duration_ms = int((closed - started).total_seconds() * 1000)

        run = WorkflowRun(
            workflow_id=workflow_id,
            run_id=resolved_run_id,
            status=map_status(info.status),
            duration_ms=duration_ms,
            team=info.memo.value("team") if info.memo else None,
            project=info.memo.value("project") if info.memo else None,
            scan_type=info.memo.value("scanType") if info.memo else None,
        )

        try:
            run.events = self.get_history(workflow_id, resolved_run_id)
        except (httpx.HTTPError, ValidationError, ValueError) as exc:
            logger.warning("History fetch for %s failed: %s", workflow_id, exc)
            run.analysis = f"Event history unavailable: {exc}"
        return run

    @staticmethod
    def _error_run(workflow_id: str, run_id: str | None, exc: Exception) -> WorkflowRun:
        logger.warning("Workflow service call for %s failed: %s", workflow_id, exc)
        return WorkflowRun(
            workflow_id=workflow_id,
            run_id=run_id,
            status=WorkflowStatus.ERROR,
            analysis=f"Workflow service unavailable: {exc}",
        )


def _run_params(run_id: str | None) -> dict[str, Any]:
    return {"execution.runId": run_id} if run_id else {}
