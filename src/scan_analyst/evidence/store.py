"""SQLite-backed store of scans, findings, weakness categories and knowledge entries."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from scan_analyst.errors import NotFoundError
from scan_analyst.types import (
    ApprovalStatus,
    Finding,
    KnowledgeEntry,
    Scan,
    ScanComparison,
    Weakness,
    WeaknessStat,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scans (
    scan_id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    run_id TEXT,
    team TEXT NOT NULL,
    project TEXT,
    scan_type TEXT,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER,
    total_findings INTEGER NOT NULL DEFAULT 0,
    critical_count INTEGER NOT NULL DEFAULT 0,
    high_count INTEGER NOT NULL DEFAULT 0,
    medium_count INTEGER NOT NULL DEFAULT 0,
    low_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_scans_workflow ON scans(workflow_id);
CREATE INDEX IF NOT EXISTS idx_scans_team_started ON scans(team, started_at);

CREATE TABLE IF NOT EXISTS cwes (
    cwe_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    category TEXT,
    severity TEXT
);

CREATE TABLE IF NOT EXISTS findings (
    finding_id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL REFERENCES scans(scan_id),
    cwe_id TEXT,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    file_path TEXT,
    line_number INTEGER,
    tool TEXT,
    tool_finding_id TEXT,
    raw_output TEXT,
    is_reachable INTEGER,
    status TEXT NOT NULL DEFAULT 'OPEN'
);
CREATE INDEX IF NOT EXISTS idx_findings_scan ON findings(scan_id);

CREATE TABLE IF NOT EXISTS knowledge_base (
    kb_id TEXT PRIMARY KEY,
    question TEXT NOT NULL,
    answer TEXT NOT NULL,
    team TEXT,
    project TEXT,
    context_tags TEXT NOT NULL DEFAULT '[]',
    created_by TEXT,
    usage_count INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1,
    approval_status TEXT NOT NULL DEFAULT 'PENDING',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_SCAN_COLUMNS = (
    "scan_id, workflow_id, run_id, team, project, scan_type, status, started_at, "
    "completed_at, duration_ms, total_findings, critical_count, high_count, "
    "medium_count, low_count, metadata"
)
_FINDING_COLUMNS = (
    "finding_id, scan_id, cwe_id, severity, title, description, file_path, line_number, "
    "tool, tool_finding_id, raw_output, is_reachable, status"
)
_JOINED_FINDING_COLUMNS = ", ".join(f"f.{name} AS {name}" for name in _FINDING_COLUMNS.split(", "))
_KB_UPDATABLE = {"question", "answer", "team", "project", "context_tags", "is_active"}


def _to_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_text(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvidenceStore:
    """Read access to scan evidence plus knowledge-entry management.

    Every operation opens its own short-lived connection, so one instance is
    safe to share between concurrent requests.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self.path)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    # -- scans ---------------------------------------------------------

    def add_scan(self, scan: Scan) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO scans ({_SCAN_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    scan.scan_id,
                    scan.workflow_id,
                    scan.run_id,
                    scan.team,
                    scan.project,
                    scan.scan_type,
                    scan.status,
                    _to_text(scan.started_at),
                    _to_text(scan.completed_at),
                    scan.duration_ms,
                    scan.total_findings,
                    scan.critical_count,
                    scan.high_count,
                    scan.medium_count,
                    scan.low_count,
                    json.dumps(scan.metadata),
                ),
            )

    def get_scan(self, scan_id: str) -> Scan | None:
        return self._one_scan("WHERE scan_id = ?", (scan_id,))

    def get_scan_by_workflow_id(self, workflow_id: str) -> Scan | None:
        return self._one_scan(
            "WHERE workflow_id = ? ORDER BY started_at DESC LIMIT 1", (workflow_id,)
        )

    def scans_by_team(
        self, team: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[Scan]:
        clauses, params = ["team = ?"], [team]
        if start is not None:
            clauses.append("started_at >= ?")
            params.append(_to_text(start))
        if end is not None:
            clauses.append("started_at <= ?")
            params.append(_to_text(end))
        return self._many_scans(
            f"WHERE {' AND '.join(clauses)} ORDER BY started_at DESC", tuple(params)
        )

    def scans_by_status(self, status: str, limit: int = 10) -> list[Scan]:
        return self._many_scans(
            "WHERE status = ? ORDER BY started_at DESC LIMIT ?", (status, limit)
        )

    def latest_scan_by_team(self, team: str) -> Scan | None:
        return self._one_scan(
            "WHERE team = ? ORDER BY started_at DESC LIMIT 1", (team,)
        )

    def latest_completed_scan_by_team(self, team: str) -> Scan | None:
        return self._one_scan(
            "WHERE team = ? AND status = 'COMPLETED' ORDER BY started_at DESC LIMIT 1",
            (team,),
        )

    def _one_scan(self, where: str, params: tuple[Any, ...]) -> Scan | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_SCAN_COLUMNS} FROM scans {where}", params).fetchone()
        return _row_to_scan(row) if row else None

    def _many_scans(self, where: str, params: tuple[Any, ...]) -> list[Scan]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {_SCAN_COLUMNS} FROM scans {where}", params).fetchall()
        return [_row_to_scan(row) for row in rows]

    # -- findings and weaknesses ---------------------------------------

    def add_weakness(self, weakness: Weakness) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cwes (cwe_id, name, description, category, severity) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    weakness.cwe_id,
                    weakness.name,
                    weakness.description,
                    weakness.category,
                    weakness.severity,
                ),
            )

    def get_weakness(self, cwe_id: str) -> Weakness | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT cwe_id, name, description, category, severity FROM cwes "
                "WHERE UPPER(cwe_id) = UPPER(?)",
                (cwe_id,),
            ).fetchone()
        if row is None:
            return None
        return Weakness(**dict(row))

    def add_finding(self, finding: Finding) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO findings ({_FINDING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    finding.finding_id,
                    finding.scan_id,
                    finding.cwe_id,
                    finding.severity,
                    finding.title,
                    finding.description,
                    finding.file_path,
                    finding.line_number,
                    finding.tool,
                    finding.tool_finding_id,
                    finding.raw_output,
                    None if finding.is_reachable is None else int(finding.is_reachable),
                    finding.status,
                ),
            )

    def get_finding(self, finding_id: str) -> Finding:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_FINDING_COLUMNS} FROM findings WHERE finding_id = ?", (finding_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("Finding", finding_id)
        return _row_to_finding(row)

    def findings_by_scan(self, scan_id: str) -> list[Finding]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_FINDING_COLUMNS} FROM findings WHERE scan_id = ? ORDER BY finding_id",
                (scan_id,),
            ).fetchall()
        return [_row_to_finding(row) for row in rows]

    def findings_by_cwe(
        self, cwe_id: str, start: datetime, end: datetime, team: str | None = None
    ) -> list[Finding]:
        """Findings of one weakness category from scans started within a window."""
        clauses = ["UPPER(f.cwe_id) = UPPER(?)", "s.started_at >= ?", "s.started_at <= ?"]
        params: list[Any] = [cwe_id, _to_text(start), _to_text(end)]
        if team is not None:
            clauses.append("s.team = ?")
            params.append(team)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_JOINED_FINDING_COLUMNS} FROM findings f "
                "JOIN scans s ON s.scan_id = f.scan_id "
                f"WHERE {' AND '.join(clauses)} "
                "ORDER BY s.started_at DESC, f.finding_id",
                tuple(params),
            ).fetchall()
        return [_row_to_finding(row) for row in rows]

    def top_weaknesses(
        self, team: str, start: datetime, end: datetime, limit: int = 10
    ) -> list[WeaknessStat]:
        """Aggregate a team's findings by weakness category within a window."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT f.cwe_id AS cwe_id,
                       COALESCE(c.name, f.cwe_id) AS name,
                       COUNT(*) AS total,
                       SUM(CASE WHEN UPPER(f.severity) = 'CRITICAL' THEN 1 ELSE 0 END) AS critical,
                       SUM(CASE WHEN UPPER(f.severity) = 'HIGH' THEN 1 ELSE 0 END) AS high
                FROM findings f
                JOIN scans s ON s.scan_id = f.scan_id
                LEFT JOIN cwes c ON c.cwe_id = f.cwe_id
                WHERE s.team = ? AND s.started_at >= ? AND s.started_at <= ?
                  AND f.cwe_id IS NOT NULL
                GROUP BY f.cwe_id
                ORDER BY total DESC, f.cwe_id ASC
                LIMIT ?
                """,
                (team, _to_text(start), _to_text(end), limit),
            ).fetchall()
        return [WeaknessStat(**dict(row)) for row in rows]

    def compare_scans(self, left_scan_id: str, right_scan_id: str) -> ScanComparison:
        """Diff two scans: findings only on the right are new, only on the left resolved."""
        for scan_id in (left_scan_id, right_scan_id):
            if self.get_scan(scan_id) is None:
                raise NotFoundError("Scan", scan_id)

        left_keys = [finding.diff_key for finding in self.findings_by_scan(left_scan_id)]
        right_keys = [finding.diff_key for finding in self.findings_by_scan(right_scan_id)]
        new = [key for key in right_keys if key not in left_keys]
        resolved = [key for key in left_keys if key not in right_keys]
        unchanged = sum(1 for key in right_keys if key in left_keys)
        return ScanComparison(
            left_scan_id=left_scan_id,
            right_scan_id=right_scan_id,
            new_findings=new,
            resolved_findings=resolved,
            unchanged_count=unchanged,
        )

    def changes_since_last_success(self, team: str) -> ScanComparison | None:
        baseline = self.latest_completed_scan_by_team(team)
        latest = self.latest_scan_by_team(team)
        if baseline is None or latest is None:
            return None
        return self.compare_scans(baseline.scan_id, latest.scan_id)

    # -- knowledge base --------------------------------------------------

    def create_knowledge_entry(
        self,
        *,
        question: str,
        answer: str,
        team: str | None = None,
        project: str | None = None,
        context_tags: list[str] | None = None,
        created_by: str | None = None,
        approval_status: ApprovalStatus = ApprovalStatus.PENDING,
    ) -> KnowledgeEntry:
        now = _utcnow()
        entry = KnowledgeEntry(
            kb_id=str(uuid.uuid4()),
            question=question,
            answer=answer,
            team=team,
            project=project,
            context_tags=list(context_tags or []),
            created_by=created_by,
            approval_status=approval_status,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO knowledge_base (kb_id, question, answer, team, project, "
                "context_tags, created_by, usage_count, is_active, version, approval_status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 1, 1, ?, ?, ?)",
                (
                    entry.kb_id,
                    entry.question,
                    entry.answer,
                    entry.team,
                    entry.project,
                    json.dumps(entry.context_tags),
                    entry.created_by,
                    entry.approval_status.value,
                    _to_text(now),
                    _to_text(now),
                ),
            )
        logger.info("Created knowledge entry %s (team=%s)", entry.kb_id, team)
        return entry

    def get_knowledge_entry(self, kb_id: str) -> KnowledgeEntry:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM knowledge_base WHERE kb_id = ?", (kb_id,)).fetchone()
        if row is None:
            raise NotFoundError("Knowledge entry", kb_id)
        return _row_to_entry(row)

    def list_knowledge_entries(
        self, team: str | None = None, active: bool | None = None
    ) -> list[KnowledgeEntry]:
        """List entries visible to `team` (its own plus team-less ones); all when team is None."""
        clauses: list[str] = []
        params: list[Any] = []
        if team is not None:
            clauses.append("(team = ? OR team IS NULL)")
            params.append(team)
        if active is not None:
            clauses.append("is_active = ?")
            params.append(int(active))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM knowledge_base {where} ORDER BY created_at, kb_id", tuple(params)
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def update_knowledge_entry(self, kb_id: str, changes: Mapping[str, Any]) -> KnowledgeEntry:
        unknown = set(changes) - _KB_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update knowledge entry fields: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            if column == "context_tags":
                value = json.dumps(list(value or []))
            elif column == "is_active":
                value = int(bool(value))
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.extend(["version = version + 1", "updated_at = ?"])
        params.extend([_to_text(_utcnow()), kb_id])

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE knowledge_base SET {', '.join(assignments)} WHERE kb_id = ?",
                tuple(params),
            )
        if cursor.rowcount == 0:
            raise NotFoundError("Knowledge entry", kb_id)
        return self.get_knowledge_entry(kb_id)

    def delete_knowledge_entry(self, kb_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM knowledge_base WHERE kb_id = ?", (kb_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("Knowledge entry", kb_id)

    def approve_knowledge_entry(self, kb_id: str) -> KnowledgeEntry:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE knowledge_base SET approval_status = ?, updated_at = ? WHERE kb_id = ?",
                (ApprovalStatus.APPROVED.value, _to_text(_utcnow()), kb_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError("Knowledge entry", kb_id)
        return self.get_knowledge_entry(kb_id)

    def increment_usage(self, kb_id: str) -> None:
        """Atomically bump the usage counter of one entry."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE knowledge_base SET usage_count = usage_count + 1 WHERE kb_id = ?",
                (kb_id,),
            )
        if cursor.rowcount == 0:
            raise NotFoundError("Knowledge entry", kb_id)


def _row_to_scan(row: sqlite3.Row) -> Scan:
    return Scan(
        scan_id=row["scan_id"],
        workflow_id=row["workflow_id"],
        run_id=row["run_id"],
        team=row["team"],
        project=row["project"],
        scan_type=row["scan_type"],
        status=row["status"],
        started_at=_from_text(row["started_at"]),
        completed_at=_from_text(row["completed_at"]),
        duration_ms=row["duration_ms"],
        total_findings=row["total_findings"],
        critical_count=row["critical_count"],
        high_count=row["high_count"],
        medium_count=row["medium_count"],
        low_count=row["low_count"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_finding(row: sqlite3.Row) -> Finding:
    values = dict(row)
    reachable = values.pop("is_reachable")
    return Finding(**values, is_reachable=None if reachable is None else bool(reachable))


def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
    return KnowledgeEntry(
        kb_id=row["kb_id"],
        question=row["question"],
        answer=row["answer"],
        team=row["team"],
        project=row["project"],
        context_tags=json.loads(row["context_tags"] or "[]"),
        created_by=row["created_by"],
        usage_count=row["usage_count"],
        is_active=bool(row["is_active"]),
        version=row["version"],
        approval_status=ApprovalStatus(row["approval_status"]),
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )
