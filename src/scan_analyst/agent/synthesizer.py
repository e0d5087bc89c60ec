"""Natural-language answer synthesis over structured evidence."""

from __future__ import annotations

import json
import logging
from typing import Any

from langchain_core.prompts import PromptTemplate

from scan_analyst.inference.client import InferenceClient, is_unavailable
from scan_analyst.types import Intent

logger = logging.getLogger(__name__)

SYNTHESIS_PROMPT = PromptTemplate.from_template(
    """You are a security analyst assistant. Answer the question using only the evidence below.
Be concise. Quote identifiers, counts and error messages exactly as they appear in the evidence.
If the evidence does not answer the question, say so.

Question: {query}
Question category: {intent}

Evidence (JSON):
{evidence}

Answer:"""
)


class AnswerSynthesizer:
    """Turns evidence into prose with one inference call.

    When the call fails or returns nothing, the deterministic rendering the
    handler supplied is returned instead; synthesis never raises.
    """

    def __init__(self, inference: InferenceClient) -> None:
        self.inference = inference

    def synthesize(
        self, query: str, intent: Intent, evidence: dict[str, Any], fallback_text: str
    ) -> tuple[str, bool]:
        """Return `(answer, degraded)`."""
        prompt = SYNTHESIS_PROMPT.format(
            query=query,
            intent=intent.value,
            evidence=json.dumps(evidence, indent=2, default=str),
        )
        response = self.inference.generate(prompt)
        if is_unavailable(response):
            logger.warning("Synthesis unavailable for %s; using deterministic rendering", intent.value)
            return fallback_text, True
        return response, False
