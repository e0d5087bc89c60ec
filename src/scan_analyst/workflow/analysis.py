"""Failure extraction from workflow event histories.

Activity failures are attributed through the `scheduledEventId` recorded on
each failed or timed-out event. Event order is never used to guess which
activity failed, so interleaved activities are attributed correctly.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from scan_analyst.types import FailedActivity, WorkflowRun
from scan_analyst.workflow.models import (
    ACTIVITY_COMPLETED,
    ACTIVITY_FAILED,
    ACTIVITY_SCHEDULED,
    ACTIVITY_TIMED_OUT,
    WORKFLOW_FAILED,
    Failure,
    HistoryEvent,
    OpaquePayload,
    decode_payload,
)

UNKNOWN_ACTIVITY = "Unknown activity"
TIMEOUT_PREFIX = "Activity timed out. "
_MAX_CAUSE_DEPTH = 10


@dataclass(slots=True)
class HistoryAnalysis:
    failure_cause: str | None = None
    failed_activities: list[FailedActivity] = field(default_factory=list)
    counts: Counter[str] = field(default_factory=Counter)


def format_failure(failure: Failure) -> str:
    """Render a failure and its cause chain, message first."""
    lines = [failure.message or "Unknown failure"]
    if failure.stack_trace and failure.stack_trace.strip():
        lines.append(f"Stack trace: {failure.stack_trace.strip()}")

    cause, depth = failure.cause, 0
    while cause is not None and depth < _MAX_CAUSE_DEPTH:
        lines.append(f"Caused by: {cause.message or 'Unknown failure'}")
        cause, depth = cause.cause, depth + 1

    app_info = failure.application_failure_info
    if app_info is not None:
        if app_info.type:
            lines.append(f"Failure type: {app_info.type}")
        if app_info.non_retryable:
            lines.append("Non-retryable")
        if app_info.details:
            lines.append(f"Details: {_render(app_info.details)}")

    timeout_info = failure.timeout_failure_info
    if timeout_info is not None:
        if timeout_info.timeout_type:
            lines.append(f"Timeout type: {timeout_info.timeout_type}")
        if timeout_info.last_heartbeat_details:
            lines.append(f"Last heartbeat: {_render(timeout_info.last_heartbeat_details)}")

    canceled_info = failure.canceled_failure_info
    if canceled_info is not None:
        lines.append(
            f"Canceled: {_render(canceled_info.details)}" if canceled_info.details else "Canceled"
        )
    return "\n".join(lines)


def _render(payload: Any) -> str:
    decoded = decode_payload(payload)
    if isinstance(decoded, (str, OpaquePayload)):
        return decoded
    return json.dumps(decoded, default=str)


def analyze_history(events: list[HistoryEvent]) -> HistoryAnalysis:
    result = HistoryAnalysis()
    scheduled: dict[int, str] = {}
    for event in events:
        result.counts[event.event_type] += 1
        attrs = event.activity_task_scheduled_event_attributes
        if event.event_type == ACTIVITY_SCHEDULED and attrs is not None:
            name = attrs.activity_type.name if attrs.activity_type else ""
            scheduled[event.event_id] = name or UNKNOWN_ACTIVITY

    for event in events:
        if event.event_type == ACTIVITY_FAILED:
            outcome, prefix = event.activity_task_failed_event_attributes, ""
        elif event.event_type == ACTIVITY_TIMED_OUT:
            outcome, prefix = event.activity_task_timed_out_event_attributes, TIMEOUT_PREFIX
        elif event.event_type == WORKFLOW_FAILED:
            attrs = event.workflow_execution_failed_event_attributes
            if attrs is not None and attrs.failure is not None:
                result.failure_cause = format_failure(attrs.failure)
            continue
        else:
            continue

        if outcome is None:
            continue
        name = scheduled.get(outcome.scheduled_event_id or -1, UNKNOWN_ACTIVITY)
        detail = format_failure(outcome.failure) if outcome.failure else "No failure details"
        result.failed_activities.append(FailedActivity(name=name, error=prefix + detail))
    return result


def analyze_run(run: WorkflowRun) -> WorkflowRun:
    """Fill in failure cause, failed activities and the textual summary."""
    analysis = analyze_history(run.events)
    run.failure_cause = analysis.failure_cause
    run.failed_activities = analysis.failed_activities
    return attach_summary(run, analysis)


def attach_summary(run: WorkflowRun, analysis: HistoryAnalysis | None = None) -> WorkflowRun:
    """Prepend the status summary to any note already on `run`."""
    summary = summarize_run(run, analysis)
    run.analysis = f"{summary}\n{run.analysis}" if run.analysis else summary
    return run


def summarize_run(run: WorkflowRun, analysis: HistoryAnalysis | None = None) -> str:
    analysis = analysis or analyze_history(run.events)
    counts = analysis.counts
    lines = [f"Status: {run.status.value}"]
    if run.duration_ms is not None:
        lines.append(f"Duration: {run.duration_ms / 1000.0:.1f} seconds")
    for label, value in (("Team", run.team), ("Project", run.project), ("Scan type", run.scan_type)):
        if value:
            lines.append(f"{label}: {value}")
    if run.events:
        lines.append(
            "Activities: "
            f"{counts[ACTIVITY_SCHEDULED]} scheduled, {counts[ACTIVITY_COMPLETED]} completed, "
            f"{counts[ACTIVITY_FAILED]} failed, {counts[ACTIVITY_TIMED_OUT]} timed out"
        )
        lines.append(f"Events: {len(run.events)}")
    return "\n".join(lines)
