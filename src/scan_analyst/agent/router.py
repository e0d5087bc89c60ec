"""Query router: knowledge lookup, classification, evidence retrieval, synthesis.

A request moves through fixed stages:

    START -> KNOWLEDGE_LOOKUP -> (ANSWERED | CLASSIFY) -> ROUTE
          -> RETRIEVE_EVIDENCE -> SYNTHESIZE -> DONE

Only the GENERAL handler loops back, retrying once as DURATION when the
query still carries workflow signals. Confidence is fixed per outcome:
knowledge-base answers carry the match similarity, evidence-backed answers
1.0, open-ended inference answers 0.8, degraded answers 0.5 and answers
that could not resolve an identifier 0.0.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, assert_never

from langchain_core.prompts import PromptTemplate

from scan_analyst.agent import extraction
from scan_analyst.agent.classifier import IntentClassifier
from scan_analyst.agent.formatting import (
    format_comparison,
    format_dependency,
    format_duration,
    format_fields,
    format_weakness_findings,
    format_weakness_stats,
    format_workflow_result,
)
from scan_analyst.agent.synthesizer import AnswerSynthesizer
from scan_analyst.collaborators.explanation import ExplanationCache, FindingExplainer, code_pointer
from scan_analyst.collaborators.policy import PolicyCompiler
from scan_analyst.config import RouterConfig
from scan_analyst.dependency.client import DependencyGraphAdapter
from scan_analyst.errors import NotFoundError
from scan_analyst.evidence.store import EvidenceStore
from scan_analyst.inference.client import InferenceClient, is_unavailable
from scan_analyst.knowledge.matcher import KnowledgeMatchEngine
from scan_analyst.obs.tracing import Timer, TraceStore
from scan_analyst.types import (
    AnswerResponse,
    AnswerSource,
    Intent,
    Scan,
    WorkflowRun,
    WorkflowStatus,
)
from scan_analyst.workflow.analysis import analyze_run, attach_summary
from scan_analyst.workflow.history import WorkflowHistoryAdapter

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "I can help you with security analyst queries. Please try asking about: "
    "scan duration, workflow results and failures, scan changes, CWE statistics, "
    "finding explanations, security policies or project dependencies."
)
MISSING_WORKFLOW_TEXT = (
    "Could not identify a workflow or scan ID in the query. "
    "Please provide a workflow ID or scan ID."
)

EXTRACT_ID_PROMPT = PromptTemplate.from_template(
    "Extract the workflow ID or scan ID from this query: {query}\n"
    "Respond with only the ID, nothing else. If no ID is found, respond with 'NONE'."
)
GENERAL_PROMPT = PromptTemplate.from_template(
    "You are a security analyst assistant for a code scanning platform.\n"
    "Answer the question briefly.{context}\n\nQuestion: {query}\nAnswer:"
)


class Stage(str, Enum):
    START = "START"
    KNOWLEDGE_LOOKUP = "KNOWLEDGE_LOOKUP"
    ANSWERED = "ANSWERED"
    CLASSIFY = "CLASSIFY"
    ROUTE = "ROUTE"
    RETRIEVE_EVIDENCE = "RETRIEVE_EVIDENCE"
    SYNTHESIZE = "SYNTHESIZE"
    DONE = "DONE"


@dataclass(slots=True)
class Evidence:
    """Structured evidence awaiting synthesis, with its deterministic rendering."""

    intent: Intent
    data: dict[str, Any]
    rendering: str
    confidence: float = 1.0


@dataclass(slots=True)
class WorkflowTarget:
    workflow_id: str
    run_id: str | None
    resolved_by: str


HandlerResult = Evidence | AnswerResponse


class QueryRouter:
    """Answers one free-text query per call; holds no per-request state."""

    def __init__(
        self,
        *,
        store: EvidenceStore,
        inference: InferenceClient,
        workflow: WorkflowHistoryAdapter,
        dependency: DependencyGraphAdapter,
        config: RouterConfig | None = None,
        trace_store: TraceStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or RouterConfig()
        self.store = store
        self.inference = inference
        self.workflow = workflow
        self.dependency = dependency
        self.trace_store = trace_store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.matcher = KnowledgeMatchEngine(
            store, inference, threshold=self.config.match_threshold
        )
        self.classifier = IntentClassifier(inference)
        self.synthesizer = AnswerSynthesizer(inference)
        self.explanation_cache = ExplanationCache(self.config.explanation_cache_size)
        self.explainer = FindingExplainer(store, inference, self.explanation_cache)
        self.policy_compiler = PolicyCompiler(inference)

    def close(self) -> None:
        self.workflow.close()
        self.dependency.close()

    # -- orchestration ---------------------------------------------------

    def answer(self, query: str, team: str | None = None) -> AnswerResponse:
        stages: list[Stage] = [Stage.START]
        intent: Intent | None = None
        with Timer() as timer:
            response, intent = self._resolve(query, team, stages)
        stages.append(Stage.DONE)
        response.confidence = max(0.0, min(1.0, response.confidence))

        logger.info(
            "Answered query (intent=%s, source=%s, confidence=%.2f) in %.1f ms",
            intent.value if intent else "-",
            response.source.value,
            response.confidence,
            timer.elapsed_ms,
        )
        if self.trace_store is not None:
            record = self.trace_store.create_record(
                query=query,
                team=team,
                intent=intent.value if intent else None,
                source=response.source.value,
                confidence=response.confidence,
                stages=[stage.value for stage in stages],
                latency_ms=timer.elapsed_ms,
            )
            response.data = {**(response.data or {}), "trace_id": record.trace_id}
        return response

    def _resolve(
        self, query: str, team: str | None, stages: list[Stage]
    ) -> tuple[AnswerResponse, Intent | None]:
        stages.append(Stage.KNOWLEDGE_LOOKUP)
        kb_match = self.matcher.best_match(query, team)
        if kb_match is not None and kb_match.similarity >= self.config.auto_answer_threshold:
            stages.append(Stage.ANSWERED)
            self.store.increment_usage(kb_match.entry.kb_id)
            return (
                AnswerResponse(
                    source=AnswerSource.KNOWLEDGE_BASE,
                    answer=kb_match.entry.answer,
                    confidence=kb_match.similarity,
                    data={
                        "kb_id": kb_match.entry.kb_id,
                        "question": kb_match.entry.question,
                        "similarity": kb_match.similarity,
                    },
                ),
                None,
            )

        stages.append(Stage.CLASSIFY)
        intent = self.classifier.classify(query)

        stages.append(Stage.ROUTE)
        stages.append(Stage.RETRIEVE_EVIDENCE)
        result = self._route(intent, query, team)
        if isinstance(result, AnswerResponse):
            return result, intent

        stages.append(Stage.SYNTHESIZE)
        text, degraded = self.synthesizer.synthesize(
            query, result.intent, result.data, result.rendering
        )
        data = {"intent": result.intent.value, **result.data, "synthesis_degraded": degraded}
        return (
            AnswerResponse(
                source=AnswerSource.EVIDENCE_LAYER,
                answer=text,
                confidence=result.confidence,
                data=data,
            ),
            intent,
        )

    def _route(self, intent: Intent, query: str, team: str | None) -> HandlerResult:
        match intent:
            case Intent.DURATION | Intent.WORKFLOW_RESULT:
                return self._handle_workflow(intent, query, team)
            case Intent.CHANGES:
                return self._handle_changes(query, team)
            case Intent.WEAKNESS_STATS:
                return self._handle_weakness_stats(query, team)
            case Intent.EXPLAIN_FINDING:
                return self._handle_explain(query, team)
            case Intent.POLICY:
                return self._handle_policy(query)
            case Intent.DEPENDENCY_GRAPH:
                return self._handle_dependency(query, team)
            case Intent.GENERAL:
                return self._handle_general(query, team)
            case _:
                assert_never(intent)

    # -- workflow runs ---------------------------------------------------

    def _handle_workflow(self, intent: Intent, query: str, team: str | None) -> HandlerResult:
        target = self._resolve_workflow_target(query, team)
        if target is None:
            return _unresolved(MISSING_WORKFLOW_TEXT, intent)

        run = self.workflow.fetch_run(target.workflow_id, target.run_id)
        if run.status is WorkflowStatus.NOT_FOUND:
            return AnswerResponse(
                source=AnswerSource.EVIDENCE_LAYER,
                answer=f"Workflow {target.workflow_id} was not found.",
                confidence=0.0,
                data={
                    "intent": intent.value,
                    "workflow_id": target.workflow_id,
                    "status": run.status.value,
                },
            )
        if run.status is WorkflowStatus.ERROR:
            return self._workflow_from_store(intent, run)

        if intent is Intent.WORKFLOW_RESULT:
            analyze_run(run)
            rendering = format_workflow_result(run)
        else:
            attach_summary(run)
            rendering = format_duration(run)
        return Evidence(intent=intent, data=_run_payload(run, target, intent), rendering=rendering)

    def _workflow_from_store(self, intent: Intent, run: WorkflowRun) -> AnswerResponse:
        """Answer from the stored scan record when the workflow service is unreachable."""
        scan = self.store.get_scan_by_workflow_id(run.workflow_id)
        data: dict[str, Any] = {
            "intent": intent.value,
            "workflow_id": run.workflow_id,
            "status": run.status.value,
            "degraded": True,
        }
        if scan is None:
            return AnswerResponse(
                source=AnswerSource.EVIDENCE_LAYER,
                answer=f"Workflow history is unavailable for {run.workflow_id}. {run.analysis}",
                confidence=0.5,
                data=data,
            )
        data["scan"] = _scan_payload(scan)
        duration = f"{scan.duration_ms} milliseconds" if scan.duration_ms is not None else "unknown"
        return AnswerResponse(
            source=AnswerSource.EVIDENCE_LAYER,
            answer=(
                f"Workflow history is unavailable; from the scan record for {run.workflow_id}:\n"
                f"Scan: {scan.scan_id}\nStatus: {scan.status}\nDuration: {duration}"
            ),
            confidence=0.5,
            data=data,
        )

    def _resolve_workflow_target(self, query: str, team: str | None) -> WorkflowTarget | None:
        ref = extraction.find_identifier(query)
        if ref is not None:
            match ref.kind:
                case "workflow":
                    return WorkflowTarget(ref.value, None, "workflow")
                case "scan" | "uuid":
                    scan = self.store.get_scan(ref.value)
                    if scan is not None:
                        return WorkflowTarget(scan.workflow_id, scan.run_id, ref.kind)
                    return WorkflowTarget(ref.value, None, ref.kind)
                case "token":
                    scan = self.store.get_scan_by_workflow_id(ref.value)
                    return WorkflowTarget(ref.value, scan.run_id if scan else None, "token")

        if extraction.mentions_last_workflow(query):
            scan = self._latest_scan(extraction.extract_team(query) or team)
            if scan is not None:
                return WorkflowTarget(scan.workflow_id, scan.run_id, "latest")

        extracted = self.inference.generate(EXTRACT_ID_PROMPT.format(query=query)).strip()
        lowered = extracted.lower()
        if (
            is_unavailable(extracted)
            or extracted.upper() == "NONE"
            or "unavailable" in lowered
            or "error" in lowered
        ):
            return None
        candidate = extracted.split()[0].strip("'\"`.,")
        if not candidate or candidate.upper() == "NONE":
            return None
        scan = self.store.get_scan(candidate)
        if scan is not None:
            return WorkflowTarget(scan.workflow_id, scan.run_id, "inference")
        return WorkflowTarget(candidate, None, "inference")

    def _latest_scan(self, team: str | None) -> Scan | None:
        if team:
            scan = self.store.latest_scan_by_team(team)
            if scan is not None:
                return scan
        candidates = [
            *self.store.scans_by_status("COMPLETED", limit=1),
            *self.store.scans_by_status("FAILED", limit=1),
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda scan: scan.started_at)

    # -- scan evidence ---------------------------------------------------

    def _handle_changes(self, query: str, team: str | None) -> HandlerResult:
        team_name = extraction.extract_team(query) or team or self.config.default_team
        if extraction.mentions_last_success(query):
            comparison = self.store.changes_since_last_success(team_name)
            if comparison is None:
                return _unresolved(
                    f"No completed scan found for team {team_name} to compare against.",
                    Intent.CHANGES,
                )
        else:
            scan_ids = extraction.extract_scan_ids(query)
            if len(scan_ids) != 2:
                logger.info("Changes query named %d scans; answering as general", len(scan_ids))
                return self._handle_general(query, team, allow_retry=False)
            try:
                comparison = self.store.compare_scans(scan_ids[0], scan_ids[1])
            except NotFoundError as exc:
                return _unresolved(str(exc), Intent.CHANGES)

        return Evidence(
            intent=Intent.CHANGES,
            data={
                "team": team_name,
                "left_scan_id": comparison.left_scan_id,
                "right_scan_id": comparison.right_scan_id,
                "new_count": comparison.new_count,
                "resolved_count": comparison.resolved_count,
                "unchanged_count": comparison.unchanged_count,
                "new_findings": comparison.new_findings,
                "resolved_findings": comparison.resolved_findings,
            },
            rendering=format_comparison(comparison),
        )

    def _handle_weakness_stats(self, query: str, team: str | None) -> HandlerResult:
        team_name = extraction.extract_team(query) or team or self.config.default_team
        days = extraction.extract_window_days(query, self.config.default_window_days)
        end = self.clock()
        start = end - timedelta(days=days)
        stats = self.store.top_weaknesses(team_name, start, end, self.config.top_weakness_limit)
        return Evidence(
            intent=Intent.WEAKNESS_STATS,
            data={
                "team": team_name,
                "window_days": days,
                "weaknesses": [asdict(stat) for stat in stats],
            },
            rendering=format_weakness_stats(team_name, days, stats),
        )

    # -- collaborators ---------------------------------------------------

    def _handle_explain(self, query: str, team: str | None) -> HandlerResult:
        finding_id = extraction.extract_finding_id(query)
        if finding_id is not None:
            try:
                explanation = self.explainer.explain(finding_id)
            except NotFoundError as exc:
                return _unresolved(str(exc), Intent.EXPLAIN_FINDING)
            payload = asdict(explanation)
            return AnswerResponse(
                source=AnswerSource.EVIDENCE_LAYER,
                answer=format_fields(payload),
                confidence=1.0,
                data={"intent": Intent.EXPLAIN_FINDING.value, "finding_id": finding_id, **payload},
            )

        cwe_id = extraction.extract_cwe_id(query)
        weakness = self.store.get_weakness(cwe_id) if cwe_id else None
        if weakness is not None:
            team_name = extraction.extract_team(query) or team
            days = extraction.extract_window_days(query, self.config.default_window_days)
            end = self.clock()
            findings = self.store.findings_by_cwe(
                weakness.cwe_id, end - timedelta(days=days), end, team_name
            )
            payload = asdict(weakness)
            return Evidence(
                intent=Intent.EXPLAIN_FINDING,
                data={
                    "weakness": payload,
                    "team": team_name,
                    "window_days": days,
                    "findings": [
                        {
                            "finding_id": finding.finding_id,
                            "scan_id": finding.scan_id,
                            "severity": finding.severity,
                            "title": finding.title,
                            "location": code_pointer(finding),
                        }
                        for finding in findings
                    ],
                },
                rendering=f"{format_fields(payload)}\n{format_weakness_findings(days, findings)}",
            )
        return self._handle_general(query, team, allow_retry=False)

    def _handle_policy(self, query: str) -> HandlerResult:
        policy = self.policy_compiler.compile(query)
        valid = self.policy_compiler.validate(policy)
        payload = asdict(policy)
        payload["valid"] = valid
        answer = (
            f"Compiled policy: {policy.rule.action} on {policy.rule.scope} "
            f"when {policy.rule.condition}\n\n{policy.rule_code}"
        )
        if not valid:
            answer += f"\n\nWarning: {policy.action} is not a supported action."
        return AnswerResponse(
            source=AnswerSource.INFERENCE if policy.from_inference else AnswerSource.EVIDENCE_LAYER,
            answer=answer,
            confidence=0.8 if policy.from_inference else 0.5,
            data={"intent": Intent.POLICY.value, "policy": payload},
        )

    def _handle_dependency(self, query: str, team: str | None) -> HandlerResult:
        reference = extraction.extract_project(query)
        if reference is None:
            return _unresolved(
                "Could not identify a project in the query. "
                "Please name it as 'project <name> [version <version>]' or '<name>:<version>'.",
                Intent.DEPENDENCY_GRAPH,
            )
        name, version = reference
        project = self.dependency.lookup_project(name, version)
        if project is None:
            logger.info("Project %s:%s unresolved; answering as general", name, version or "-")
            return self._handle_general(query, team, allow_retry=False)

        metrics = self.dependency.get_metrics(project.uuid)
        boms = self.dependency.get_bom_history(project.uuid)
        return Evidence(
            intent=Intent.DEPENDENCY_GRAPH,
            data={
                "project": project.model_dump(),
                "metrics": metrics.model_dump() if metrics else None,
                "bom_uploads": [bom.model_dump() for bom in boms],
            },
            rendering=format_dependency(project, metrics, boms),
        )

    # -- general -----------------------------------------------------------

    def _handle_general(
        self, query: str, team: str | None, *, allow_retry: bool = True
    ) -> HandlerResult:
        if allow_retry and (
            extraction.find_identifier(query) is not None
            or extraction.mentions_last_workflow(query)
        ):
            logger.info("General query carries workflow signals; retrying as duration")
            retry = self._handle_workflow(Intent.DURATION, query, team)
            if not (isinstance(retry, AnswerResponse) and retry.confidence == 0.0):
                return retry

        context = f"\nContext: Team is {team}" if team else ""
        response = self.inference.generate(GENERAL_PROMPT.format(query=query, context=context))
        if is_unavailable(response):
            return AnswerResponse(
                source=AnswerSource.EVIDENCE_LAYER,
                answer=HELP_TEXT,
                confidence=0.5,
                data={"intent": Intent.GENERAL.value, "degraded": True},
            )
        return AnswerResponse(
            source=AnswerSource.INFERENCE,
            answer=response,
            confidence=0.8,
            data={"intent": Intent.GENERAL.value},
        )


def _unresolved(message: str, intent: Intent) -> AnswerResponse:
    return AnswerResponse(
        source=AnswerSource.INFERENCE,
        answer=message,
        confidence=0.0,
        data={"intent": intent.value},
    )


def _run_payload(run: WorkflowRun, target: WorkflowTarget, intent: Intent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "workflow_id": run.workflow_id,
        "run_id": run.run_id,
        "resolved_by": target.resolved_by,
        "status": run.status.value,
        "duration_ms": run.duration_ms,
        "team": run.team,
        "project": run.project,
        "scan_type": run.scan_type,
        "event_count": len(run.events),
        "analysis": run.analysis,
    }
    if intent is Intent.WORKFLOW_RESULT:
        payload["failure_cause"] = run.failure_cause
        payload["failed_activities"] = [asdict(activity) for activity in run.failed_activities]
    return payload


def _scan_payload(scan: Scan) -> dict[str, Any]:
    payload = asdict(scan)
    payload["started_at"] = scan.started_at.isoformat() if scan.started_at else None
    payload["completed_at"] = scan.completed_at.isoformat() if scan.completed_at else None
    return payload
