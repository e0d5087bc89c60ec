"""Deterministic text renderings of retrieved evidence."""

from __future__ import annotations

from typing import Any

from scan_analyst.collaborators.explanation import code_pointer
from scan_analyst.dependency.client import BomUpload, Project, ProjectMetrics
from scan_analyst.types import Finding, ScanComparison, WeaknessStat, WorkflowRun


def format_fields(data: dict[str, Any], indent: str = "") -> str:
    """Render a payload field by field, one `key: value` per line."""
    lines: list[str] = []
    for key, value in data.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, dict):
            lines.append(f"{indent}{label}:")
            lines.append(format_fields(value, indent + "  "))
        elif isinstance(value, list):
            lines.append(f"{indent}{label}:")
            for item in value:
                if isinstance(item, dict):
                    lines.append(f"{indent}  - " + ", ".join(f"{k}: {v}" for k, v in item.items()))
                else:
                    lines.append(f"{indent}  - {item}")
        elif value is not None:
            lines.append(f"{indent}{label}: {value}")
    return "\n".join(line for line in lines if line)


def format_duration(run: WorkflowRun) -> str:
    if run.duration_ms is None:
        timing = f"Duration: not available (workflow is {run.status.value})"
    else:
        timing = f"Duration: {run.duration_ms} milliseconds ({run.duration_ms / 1000.0:.1f} seconds)"
    return f"Workflow {run.workflow_id} analysis:\n{timing}\n{run.analysis}".rstrip()


def format_workflow_result(run: WorkflowRun) -> str:
    lines = [f"Workflow {run.workflow_id} analysis:"]
    if run.run_id:
        lines.append(f"Run ID: {run.run_id}")
    lines.append(run.analysis)
    if run.failure_cause:
        lines.append(f"Error: {run.failure_cause}")
    if run.failed_activities:
        lines.append("Failed Activities:")
        lines.extend(f"- {activity.name}: {activity.error}" for activity in run.failed_activities)
    return "\n".join(line for line in lines if line)


def format_comparison(comparison: ScanComparison) -> str:
    lines = [comparison.summary()]
    if comparison.new_findings:
        lines.append("New findings: " + ", ".join(comparison.new_findings))
    if comparison.resolved_findings:
        lines.append("Resolved findings: " + ", ".join(comparison.resolved_findings))
    return "\n".join(lines)


def format_weakness_stats(team: str, days: int, stats: list[WeaknessStat]) -> str:
    if not stats:
        return f"No CWE statistics found for team {team} in the last {days} days."
    lines = [f"Top CWEs for team {team} in the last {days} days:", ""]
    for rank, stat in enumerate(stats, start=1):
        lines.append(
            f"{rank}. {stat.name} ({stat.cwe_id}): {stat.total} total findings "
            f"({stat.critical} critical, {stat.high} high)"
        )
    return "\n".join(lines)


def format_weakness_findings(days: int, findings: list[Finding]) -> str:
    if not findings:
        return f"No findings in the last {days} days."
    lines = [f"Findings in the last {days} days: {len(findings)}"]
    for finding in findings:
        location = code_pointer(finding)
        suffix = f" at {location}" if location else ""
        lines.append(f"- {finding.finding_id} ({finding.severity}) in scan {finding.scan_id}{suffix}")
    return "\n".join(lines)


def format_dependency(
    project: Project, metrics: ProjectMetrics | None, boms: list[BomUpload]
) -> str:
    lines = [f"Project {project.name}" + (f" {project.version}" if project.version else "")]
    if metrics is None:
        lines.append("Vulnerability metrics: not available")
    else:
        lines.append(
            f"Vulnerabilities: {metrics.vulnerabilities} "
            f"({metrics.critical} critical, {metrics.high} high, {metrics.medium} medium, "
            f"{metrics.low} low, {metrics.unassigned} unassigned)"
        )
        lines.append(
            f"Components: {metrics.components} ({metrics.vulnerable_components} vulnerable)"
        )
        if metrics.policy_violations_total:
            lines.append(
                f"Policy violations: {metrics.policy_violations_total} "
                f"({metrics.policy_violations_fail} fail, {metrics.policy_violations_warn} warn)"
            )
    if boms:
        latest = boms[-1]
        lines.append(
            f"SBOM uploads: {len(boms)}; latest {latest.bom_format or 'unknown format'} "
            f"{latest.spec_version or ''} imported {latest.imported or 'at an unknown time'}".rstrip()
        )
    else:
        lines.append("SBOM uploads: none recorded")
    return "\n".join(lines)
