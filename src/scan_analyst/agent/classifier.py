"""Intent classification with a deterministic pattern fallback."""

from __future__ import annotations

import logging
import re

from langchain_core.prompts import PromptTemplate

from scan_analyst.agent.extraction import has_identifier
from scan_analyst.errors import ClassificationUnavailableError
from scan_analyst.inference.client import InferenceClient, is_unavailable
from scan_analyst.types import Intent

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = PromptTemplate.from_template(
    """Classify the security analyst question into exactly one category.

Categories:
- DURATION: how long a scan or workflow run took
- CHANGES: what changed between scans, or since the last successful scan
- WEAKNESS_STATS: top or recurring CWE weakness categories, counts and trends
- EXPLAIN_FINDING: explanation of a specific finding or vulnerability
- POLICY: security policies, rules that block, allow or enforce
- WORKFLOW_RESULT: status, result or failure cause of a workflow run
- DEPENDENCY_GRAPH: project dependencies, components, SBOMs and their vulnerabilities
- GENERAL: anything else

Respond with the category name only.

Question: {query}
Category:"""
)

_ALIASES: dict[str, Intent] = {
    "SCAN_DURATION": Intent.DURATION,
    "SCAN_CHANGES": Intent.CHANGES,
    "CHANGE": Intent.CHANGES,
    "CWE_STATS": Intent.WEAKNESS_STATS,
    "TOP_CWES": Intent.WEAKNESS_STATS,
    "WEAKNESS": Intent.WEAKNESS_STATS,
    "EXPLAIN": Intent.EXPLAIN_FINDING,
    "FINDING_EXPLANATION": Intent.EXPLAIN_FINDING,
    "POLICY_QUERY": Intent.POLICY,
    "WORKFLOW": Intent.WORKFLOW_RESULT,
    "WORKFLOW_RESULTS": Intent.WORKFLOW_RESULT,
    "WORKFLOW_STATUS": Intent.WORKFLOW_RESULT,
    "DEPENDENCY": Intent.DEPENDENCY_GRAPH,
    "DEPENDENCIES": Intent.DEPENDENCY_GRAPH,
    "SBOM": Intent.DEPENDENCY_GRAPH,
}

FAILURE_VOCABULARY = (
    "what happened",
    "why did",
    "why failed",
    "fail",
    "status",
    "result",
    "went wrong",
    "error",
)
DURATION_VOCABULARY = ("duration", "took", "how long", "minutes", "hours", "seconds", "time")
CHANGES_VOCABULARY = ("change", "different", "since", "compare", "between", "diff")
WEAKNESS_VOCABULARY = ("cwe", "top", "recurring", "statistics", "stats", "count", "trend")
EXPLAIN_VOCABULARY = ("explain", "what is", "finding", "vulnerability", "issue")
POLICY_VOCABULARY = ("policy", "rule", "block", "allow", "enforce")


def _mentions(text: str, vocabulary: tuple[str, ...]) -> bool:
    return any(term in text for term in vocabulary)


def parse_intent(response: str) -> Intent:
    """Map a model response to an intent; anything unrecognised is GENERAL."""
    words = re.findall(r"[A-Za-z_]+", response)
    if not words:
        return Intent.GENERAL
    label = words[0].upper()
    if label in Intent.__members__:
        return Intent[label]
    return _ALIASES.get(label, Intent.GENERAL)


def classify_by_pattern(query: str) -> Intent:
    """Deterministic ordered rules; the first matching rule wins.

    Identifier-bearing queries go to workflow analysis ahead of every
    other category.
    """
    text = query.lower()
    identifier = has_identifier(query)

    if identifier and _mentions(text, FAILURE_VOCABULARY):
        return Intent.WORKFLOW_RESULT
    if identifier and _mentions(text, DURATION_VOCABULARY):
        return Intent.DURATION
    if identifier:
        return Intent.WORKFLOW_RESULT
    if _mentions(text, DURATION_VOCABULARY):
        return Intent.DURATION
    if _mentions(text, CHANGES_VOCABULARY):
        return Intent.CHANGES
    if _mentions(text, WEAKNESS_VOCABULARY):
        return Intent.WEAKNESS_STATS
    if _mentions(text, EXPLAIN_VOCABULARY):
        return Intent.EXPLAIN_FINDING
    if _mentions(text, POLICY_VOCABULARY):
        return Intent.POLICY
    return Intent.GENERAL


class IntentClassifier:
    def __init__(self, inference: InferenceClient) -> None:
        self.inference = inference

    def classify_with_inference(self, query: str) -> Intent:
        """Primary path; raises ClassificationUnavailableError on any failure sentinel."""
        response = self.inference.generate(CLASSIFY_PROMPT.format(query=query))
        lowered = response.lower()
        if is_unavailable(response) or "unavailable" in lowered or "error" in lowered:
            raise ClassificationUnavailableError(response[:200] or "empty classification response")
        return parse_intent(response)

    def classify(self, query: str) -> Intent:
        try:
            intent = self.classify_with_inference(query)
            logger.info("Classified query as %s via inference", intent.value)
        except ClassificationUnavailableError as exc:
            intent = classify_by_pattern(query)
            logger.warning(
                "Inference classification unavailable (%s); pattern rules chose %s",
                exc,
                intent.value,
            )
        return intent
