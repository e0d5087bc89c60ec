"""Regex extraction of identifiers and parameters from query text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

_ID_CHARS = r"[a-zA-Z0-9_:\-]"
WORKFLOW_ID_PATTERN = re.compile(rf"\bworkflow\s+(?:id\s+)?({_ID_CHARS}+)", re.IGNORECASE)
SCAN_ID_PATTERN = re.compile(rf"\bscan\s+(?:id\s+)?({_ID_CHARS}+)", re.IGNORECASE)
SCAN_TOKEN_PATTERN = re.compile(r"\b(scan[-_][a-zA-Z0-9_:\-]+)", re.IGNORECASE)
UUID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
)
LONG_TOKEN_PATTERN = re.compile(rf"(?<!{_ID_CHARS})({_ID_CHARS}{{20,}})(?!{_ID_CHARS})")
TEAM_PATTERN = re.compile(r"\bteam\s+([\w\-]+)", re.IGNORECASE)
WINDOW_PATTERN = re.compile(r"\b(\d+)\s+(day|week)s?\b", re.IGNORECASE)
CWE_PATTERN = re.compile(r"\bcwe[-\s]?(\d+)\b", re.IGNORECASE)
PROJECT_PATTERN = re.compile(r"\bproject\s+([\w.\-/]+(?:[:@][\w.\-]+)?)", re.IGNORECASE)
PROJECT_VERSION_PATTERN = re.compile(r"\b([a-zA-Z][\w.\-/]*)[:@](\d[\w.\-]*)")
VERSION_PATTERN = re.compile(r"\bversion\s+v?([\w.\-]+)", re.IGNORECASE)
FINDING_ID_PATTERN = re.compile(rf"\bfinding\s+(?:id\s+)?({_ID_CHARS}+)", re.IGNORECASE)

_LAST_SUCCESS_PHRASES = ("last successful", "last success", "last green", "last passing")
_LAST_WORKFLOW_PHRASES = (
    "last workflow",
    "latest workflow",
    "most recent workflow",
    "last scan",
    "latest scan",
    "most recent scan",
)


@dataclass(frozen=True, slots=True)
class IdentifierRef:
    """A workflow reference found in text, not yet resolved to a workflow id."""

    kind: Literal["workflow", "scan", "uuid", "token"]
    value: str


def _looks_like_id(token: str) -> bool:
    return any(ch.isdigit() or ch in "-_:" for ch in token)


def find_identifier(text: str) -> IdentifierRef | None:
    """Return the strongest identifier in `text`.

    Order: "workflow X", "scan X", a bare UUID, then a long opaque token.
    Tokens after "workflow"/"scan" must carry a digit or separator, so
    "scan took" or "workflow status" are not identifiers.
    """
    for kind, pattern in (("workflow", WORKFLOW_ID_PATTERN), ("scan", SCAN_ID_PATTERN)):
        for match in pattern.finditer(text):
            if _looks_like_id(match.group(1)):
                return IdentifierRef(kind, match.group(1))  # type: ignore[arg-type]

    uuid_match = UUID_PATTERN.search(text)
    if uuid_match:
        return IdentifierRef("uuid", uuid_match.group(0))

    token_match = LONG_TOKEN_PATTERN.search(text)
    if token_match:
        return IdentifierRef("token", token_match.group(1))
    return None


def has_identifier(text: str) -> bool:
    """Identifier signal used by the pattern classifier, keywords included."""
    lowered = text.lower()
    return (
        find_identifier(text) is not None
        or re.search(r"\bworkflows?\b", lowered) is not None
        or re.search(r"\bscans?\b", lowered) is not None
    )


def extract_scan_ids(text: str) -> list[str]:
    """Scan ids mentioned in `text`, in order of appearance, without duplicates."""
    found: list[tuple[int, str]] = []
    for match in SCAN_ID_PATTERN.finditer(text):
        if _looks_like_id(match.group(1)):
            found.append((match.start(1), match.group(1)))
    for pattern in (SCAN_TOKEN_PATTERN, UUID_PATTERN):
        for match in pattern.finditer(text):
            found.append((match.start(), match.group(0)))

    ordered: list[str] = []
    for _, value in sorted(found):
        if value not in ordered:
            ordered.append(value)
    return ordered


def extract_team(text: str) -> str | None:
    match = TEAM_PATTERN.search(text)
    return match.group(1) if match else None


def extract_window_days(text: str, default: int) -> int:
    match = WINDOW_PATTERN.search(text)
    if not match:
        return default
    amount = int(match.group(1))
    if amount <= 0:
        return default
    return amount * 7 if match.group(2).lower() == "week" else amount


def extract_cwe_id(text: str) -> str | None:
    match = CWE_PATTERN.search(text)
    return f"CWE-{match.group(1)}" if match else None


def extract_project(text: str) -> tuple[str, str | None] | None:
    """Project name and optional version from "project X [version V]" or "X:V" / "X@V"."""
    version_match = VERSION_PATTERN.search(text)
    version = version_match.group(1) if version_match else None

    project_match = PROJECT_PATTERN.search(text)
    if project_match:
        name = project_match.group(1)
        inline = PROJECT_VERSION_PATTERN.fullmatch(name)
        if inline:
            return inline.group(1), inline.group(2)
        return name, version

    inline = PROJECT_VERSION_PATTERN.search(text)
    if inline:
        return inline.group(1), inline.group(2)
    return None


def mentions_last_success(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in _LAST_SUCCESS_PHRASES)


def mentions_last_workflow(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in _LAST_WORKFLOW_PHRASES)


def extract_finding_id(text: str) -> str | None:
    for match in FINDING_ID_PATTERN.finditer(text):
        if _looks_like_id(match.group(1)):
            return match.group(1)
    uuid_match = UUID_PATTERN.search(text)
    return uuid_match.group(0) if uuid_match else None
