"""Developer-facing explanations of individual findings."""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any

from langchain_core.prompts import PromptTemplate

from scan_analyst.evidence.store import EvidenceStore
from scan_analyst.inference.client import InferenceClient, is_unavailable
from scan_analyst.inference.parsing import Parsed, Unparsed, parse_json_object
from scan_analyst.types import Finding

logger = logging.getLogger(__name__)

_RESPONSE_INSTRUCTIONS = """Provide:
1. A short, actionable explanation (2-3 sentences)
2. Steps to reproduce the issue
3. Code pointers (file paths and line numbers)
4. Potential impact
5. Recommended fix

Format your response as JSON with keys: explanation, stepsToReproduce, codePointers, impact, recommendedFix"""

FINDING_PROMPT = PromptTemplate.from_template(
    "Explain this security finding in developer-friendly terms:\n\n{details}\n\n"
    + _RESPONSE_INSTRUCTIONS
)
RAW_OUTPUT_PROMPT = PromptTemplate.from_template(
    "Explain this security finding from the {tool} tool in developer-friendly terms.\n\n"
    "Raw output:\n{raw_output}\n\n" + _RESPONSE_INSTRUCTIONS
)


@dataclass(slots=True)
class FindingExplanation:
    explanation: str
    steps_to_reproduce: str = ""
    code_pointers: str = ""
    impact: str = ""
    recommended_fix: str = ""


class ExplanationCache:
    """Bounded LRU cache of explanations keyed by finding id."""

    def __init__(self, max_entries: int = 256) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, FindingExplanation] = OrderedDict()
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, finding_id: str) -> FindingExplanation | None:
        with self._lock:
            explanation = self._entries.get(finding_id)
            if explanation is not None:
                self._entries.move_to_end(finding_id)
            return explanation

    def put(self, finding_id: str, explanation: FindingExplanation) -> None:
        with self._lock:
            self._entries[finding_id] = explanation
            self._entries.move_to_end(finding_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, finding_id: str) -> bool:
        with self._lock:
            return self._entries.pop(finding_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def code_pointer(finding: Finding) -> str:
    if not finding.file_path:
        return ""
    if finding.line_number is None:
        return finding.file_path
    return f"{finding.file_path}:{finding.line_number}"


class FindingExplainer:
    def __init__(
        self,
        store: EvidenceStore,
        inference: InferenceClient,
        cache: ExplanationCache | None = None,
    ) -> None:
        self.store = store
        self.inference = inference
        self.cache = cache or ExplanationCache()

    def explain(self, finding_id: str) -> FindingExplanation:
        """Explain a stored finding; raises NotFoundError for unknown ids."""
        cached = self.cache.get(finding_id)
        if cached is not None:
            return cached

        finding = self.store.get_finding(finding_id)
        response = self.inference.generate(FINDING_PROMPT.format(details=self._describe(finding)))
        if is_unavailable(response):
            logger.warning("Explanation for finding %s degraded to stored fields", finding_id)
            return self._fallback(finding)

        explanation = self._from_response(response, default_pointer=code_pointer(finding))
        self.cache.put(finding_id, explanation)
        return explanation

    def explain_raw(self, raw_output: dict[str, Any], tool: str) -> FindingExplanation:
        rendered = json.dumps(raw_output, indent=2, default=str)
        response = self.inference.generate(
            RAW_OUTPUT_PROMPT.format(tool=tool, raw_output=rendered)
        )
        if is_unavailable(response):
            return FindingExplanation(
                explanation=f"Raw {tool} output could not be explained: inference is unavailable.",
            )
        return self._from_response(response, default_pointer="")

    def _describe(self, finding: Finding) -> str:
        lines = [f"Title: {finding.title}"]
        if finding.cwe_id:
            weakness = self.store.get_weakness(finding.cwe_id)
            name = f" - {weakness.name}" if weakness else ""
            lines.append(f"CWE: {finding.cwe_id}{name}")
        lines.append(f"Severity: {finding.severity}")
        if finding.description:
            lines.append(f"Description: {finding.description}")
        if finding.file_path:
            lines.append(f"File: {code_pointer(finding)}")
        if finding.raw_output:
            lines.append(f"Raw tool output:\n{finding.raw_output}")
        return "\n".join(lines)

    def _fallback(self, finding: Finding) -> FindingExplanation:
        summary = f"{finding.severity} finding '{finding.title}'"
        if finding.cwe_id:
            summary += f" ({finding.cwe_id})"
        if finding.tool:
            summary += f" reported by {finding.tool}"
        if finding.description:
            summary += f": {finding.description}"
        return FindingExplanation(explanation=summary, code_pointers=code_pointer(finding))

    @staticmethod
    def _from_response(response: str, *, default_pointer: str) -> FindingExplanation:
        match parse_json_object(response):
            case Parsed() as parsed:
                return FindingExplanation(
                    explanation=parsed.text("explanation") or response,
                    steps_to_reproduce=parsed.text("stepsToReproduce") or "",
                    code_pointers=parsed.text("codePointers") or default_pointer,
                    impact=parsed.text("impact") or "",
                    recommended_fix=parsed.text("recommendedFix") or "",
                )
            case Unparsed(raw_text=raw_text):
                logger.debug("Explanation response was not JSON; using it verbatim")
                return FindingExplanation(explanation=raw_text, code_pointers=default_pointer)
