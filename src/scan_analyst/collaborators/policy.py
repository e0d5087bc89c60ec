"""Compiles natural-language security policies into simple finding rules."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from langchain_core.prompts import PromptTemplate

from scan_analyst.agent.extraction import extract_cwe_id
from scan_analyst.inference.client import InferenceClient, is_unavailable
from scan_analyst.inference.parsing import Parsed, Unparsed, parse_json_object
from scan_analyst.types import Finding

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("BLOCK", "WARN", "ALLOW", "NOTIFY")

POLICY_PROMPT = PromptTemplate.from_template(
    """Parse this security policy statement and extract the components:

Policy: {policy}

Extract:
1. Action (what to do: BLOCK, WARN, ALLOW, NOTIFY)
2. Condition (when to apply: severity, CWE, team, environment, etc.)
3. Scope (what it applies to: builds, scans, findings, etc.)
4. Parameters (any specific values like severity levels, CWE IDs, etc.)

Format your response as JSON with keys: action, condition, scope, parameters"""
)

RULE_CODE_TEMPLATE = """function evaluatePolicy(finding, scan) {{
    // Condition: {condition}
    const condition = {js_condition};
    if (condition) {{
        // Action: {action}
        return {{
            action: '{action}',
            message: 'Policy violation detected',
            finding: finding,
            scan: scan
        }};
    }}
    return null;
}}"""

_JS_REPLACEMENTS = (
    ("==", "==="),
    ("severity", "finding.severity"),
    ("isReachable", "finding.isReachable"),
    ("environment", "scan.environment"),
    ("cweId", "finding.cweId"),
    (" AND ", " && "),
)


@dataclass(slots=True)
class PolicyRule:
    """Conjunction of `(field, expected value)` clauses; no clauses matches everything."""

    action: str
    scope: str
    clauses: list[tuple[str, Any]] = field(default_factory=list)

    @property
    def condition(self) -> str:
        if not self.clauses:
            return "true"
        parts = []
        for name, value in self.clauses:
            literal = str(value).lower() if isinstance(value, bool) else f"'{value}'"
            parts.append(f"{name} == {literal}")
        return " AND ".join(parts)


@dataclass(slots=True)
class CompiledPolicy:
    original_policy: str
    action: str
    condition: str
    scope: str
    parameters: dict[str, Any]
    rule: PolicyRule
    rule_code: str
    from_inference: bool = True


def build_rule(action: str, condition: str, scope: str, parameters: dict[str, Any]) -> PolicyRule:
    lowered = condition.lower()
    clauses: list[tuple[str, Any]] = []
    if "critical" in lowered:
        clauses.append(("severity", "CRITICAL"))
    elif "high" in lowered:
        clauses.append(("severity", "HIGH"))
    if "reachable" in lowered:
        clauses.append(("isReachable", True))
    if "prod" in lowered:
        clauses.append(("environment", "production"))
    cwe = parameters.get("cwe") or parameters.get("cweId")
    if cwe:
        clauses.append(("cweId", str(cwe).upper()))
    return PolicyRule(action=action.upper(), scope=scope, clauses=clauses)


def render_rule_code(rule: PolicyRule) -> str:
    js_condition = rule.condition
    for old, new in _JS_REPLACEMENTS:
        js_condition = js_condition.replace(old, new)
    return RULE_CODE_TEMPLATE.format(
        condition=rule.condition, js_condition=js_condition, action=rule.action
    )


class PolicyCompiler:
    def __init__(self, inference: InferenceClient) -> None:
        self.inference = inference

    def compile(self, policy_text: str) -> CompiledPolicy:
        logger.info("Compiling policy of %d chars", len(policy_text))
        response = self.inference.generate(POLICY_PROMPT.format(policy=policy_text))
        result = Unparsed(response) if is_unavailable(response) else parse_json_object(response)
        match result:
            case Parsed() as parsed:
                action = (parsed.text("action") or "WARN").upper()
                condition = parsed.text("condition") or ""
                scope = parsed.text("scope") or "scans"
                raw_parameters = parsed.fields.get("parameters")
                parameters = raw_parameters if isinstance(raw_parameters, dict) else {}
                from_inference = True
            case Unparsed():
                logger.warning("Policy response was not JSON; extracting keywords from the policy")
                action, condition, scope, parameters = _keywords_from_text(policy_text)
                from_inference = False

        rule = build_rule(action, condition, scope, parameters)
        return CompiledPolicy(
            original_policy=policy_text,
            action=rule.action,
            condition=condition,
            scope=scope,
            parameters=parameters,
            rule=rule,
            rule_code=render_rule_code(rule),
            from_inference=from_inference,
        )

    @staticmethod
    def validate(policy: CompiledPolicy) -> bool:
        return bool(policy.action) and policy.action.upper() in VALID_ACTIONS

    @staticmethod
    def matches(policy: CompiledPolicy, finding: Finding, environment: str | None = None) -> bool:
        """Evaluate the compiled rule against one finding."""
        observed = {
            "severity": finding.severity.upper(),
            "isReachable": finding.is_reachable,
            "environment": environment,
            "cweId": (finding.cwe_id or "").upper(),
        }
        return all(observed.get(name) == value for name, value in policy.rule.clauses)


def _keywords_from_text(text: str) -> tuple[str, str, str, dict[str, Any]]:
    lowered = text.lower()
    action = "WARN"
    for candidate in ("BLOCK", "ALLOW", "NOTIFY", "WARN"):
        if re.search(rf"\b{candidate.lower()}", lowered):
            action = candidate
            break
    scope = "findings"
    for candidate in ("builds", "deployments", "scans", "findings"):
        if candidate.rstrip("s") in lowered:
            scope = candidate
            break
    cwe = extract_cwe_id(text)
    parameters: dict[str, Any] = {"cwe": cwe} if cwe else {}
    return action, text, scope, parameters
