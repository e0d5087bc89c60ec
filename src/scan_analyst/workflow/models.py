"""Wire models for the orchestration service's HTTP JSON API.

Only the fields the analyst reads are modelled; everything else is ignored.
Integers arrive as JSON strings (int64) and are coerced.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ACTIVITY_SCHEDULED = "EVENT_TYPE_ACTIVITY_TASK_SCHEDULED"
ACTIVITY_COMPLETED = "EVENT_TYPE_ACTIVITY_TASK_COMPLETED"
ACTIVITY_FAILED = "EVENT_TYPE_ACTIVITY_TASK_FAILED"
ACTIVITY_TIMED_OUT = "EVENT_TYPE_ACTIVITY_TASK_TIMED_OUT"
WORKFLOW_FAILED = "EVENT_TYPE_WORKFLOW_EXECUTION_FAILED"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_FRACTION = re.compile(r"\.(\d{6})\d+")


def normalize_event_type(value: str) -> str:
    """Map `ActivityTaskFailed` style names onto `EVENT_TYPE_ACTIVITY_TASK_FAILED`."""
    if value.startswith("EVENT_TYPE_"):
        return value
    return "EVENT_TYPE_" + _CAMEL_BOUNDARY.sub("_", value).upper()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse RFC 3339 timestamps, truncating nanosecond precision."""
    if not value:
        return None
    return datetime.fromisoformat(_FRACTION.sub(r".\1", value).replace("Z", "+00:00"))


_TEXT_ENCODINGS = frozenset({"json/plain", "json/protobuf", "binary/plain"})
NULL_ENCODING = "binary/null"


@dataclass(frozen=True, slots=True)
class OpaquePayload:
    """A payload the analyst cannot render as text."""

    encoding: str
    size: int

    def __str__(self) -> str:
        return f"<{self.encoding} payload, {self.size} bytes>"


def payload_encoding(metadata: Any) -> str | None:
    """Read `metadata.encoding`, which the HTTP API may itself base64-encode."""
    if not isinstance(metadata, dict):
        return None
    raw = metadata.get("encoding")
    if not isinstance(raw, str):
        return None
    if raw in _TEXT_ENCODINGS or raw == NULL_ENCODING:
        return raw
    try:
        decoded = base64.b64decode(raw, validate=True).decode("ascii")
    except (binascii.Error, UnicodeDecodeError):
        return raw
    return decoded if decoded.isprintable() and "/" in decoded else raw


def decode_payload(value: Any) -> Any:
    """Decode a memo/details payload.

    The HTTP API renders JSON payloads inline; other encodings arrive as
    `{"metadata": {...}, "data": "<base64>"}`. Only JSON and plain text are
    decoded; anything else becomes an `OpaquePayload`.
    """
    if isinstance(value, dict) and "data" in value:
        encoding = payload_encoding(value.get("metadata"))
        try:
            data = base64.b64decode(value["data"])
        except (binascii.Error, TypeError):
            return OpaquePayload(encoding or "binary", 0)
        if encoding == NULL_ENCODING:
            return None
        if encoding is not None and encoding not in _TEXT_ENCODINGS:
            return OpaquePayload(encoding, len(data))
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return OpaquePayload(encoding or "binary", len(data))
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    if isinstance(value, dict) and "payloads" in value:
        return [decode_payload(item) for item in value["payloads"]]
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ApplicationFailureInfo(WireModel):
    type: str | None = None
    non_retryable: bool = False
    details: Any = None


class TimeoutFailureInfo(WireModel):
    timeout_type: str | None = None
    last_heartbeat_details: Any = None


class CanceledFailureInfo(WireModel):
    details: Any = None


class Failure(WireModel):
    message: str = ""
    source: str | None = None
    stack_trace: str | None = None
    cause: Failure | None = None
    application_failure_info: ApplicationFailureInfo | None = None
    timeout_failure_info: TimeoutFailureInfo | None = None
    canceled_failure_info: CanceledFailureInfo | None = None


class ActivityType(WireModel):
    name: str = ""


class ActivityScheduledAttributes(WireModel):
    activity_id: str | None = None
    activity_type: ActivityType | None = None


class ActivityOutcomeAttributes(WireModel):
    """Attributes shared by activity completed / failed / timed-out events."""

    scheduled_event_id: int | None = None
    started_event_id: int | None = None
    failure: Failure | None = None
    retry_state: str | None = None


class WorkflowFailedAttributes(WireModel):
    failure: Failure | None = None
    retry_state: str | None = None


class HistoryEvent(WireModel):
    event_id: int
    event_type: str
    event_time: str | None = None
    activity_task_scheduled_event_attributes: ActivityScheduledAttributes | None = None
    activity_task_completed_event_attributes: ActivityOutcomeAttributes | None = None
    activity_task_failed_event_attributes: ActivityOutcomeAttributes | None = None
    activity_task_timed_out_event_attributes: ActivityOutcomeAttributes | None = None
    workflow_execution_failed_event_attributes: WorkflowFailedAttributes | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return normalize_event_type(str(value))


class History(WireModel):
    events: list[HistoryEvent] = Field(default_factory=list)


class GetHistoryResponse(WireModel):
    history: History | None = None
    next_page_token: str | None = None


class WorkflowExecution(WireModel):
    workflow_id: str = ""
    run_id: str | None = None


class WorkflowType(WireModel):
    name: str = ""


class Memo(WireModel):
    fields: dict[str, Any] = Field(default_factory=dict)

    def value(self, key: str) -> str | None:
        if key not in self.fields:
            return None
        decoded = decode_payload(self.fields[key])
        if decoded is None or isinstance(decoded, OpaquePayload):
            return None
        return str(decoded)


class WorkflowExecutionInfo(WireModel):
    execution: WorkflowExecution = Field(default_factory=WorkflowExecution)
    type: WorkflowType | None = None
    start_time: str | None = None
    close_time: str | None = None
    status: str | None = None
    history_length: int | None = None
    memo: Memo | None = None


class DescribeWorkflowResponse(WireModel):
    workflow_execution_info: WorkflowExecutionInfo = Field(default_factory=WorkflowExecutionInfo)
