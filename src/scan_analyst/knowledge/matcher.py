"""Nearest-neighbour matching of queries against curated knowledge entries."""

from __future__ import annotations

import logging
from math import sqrt

from scan_analyst.evidence.store import EvidenceStore
from scan_analyst.inference.client import InferenceClient
from scan_analyst.types import KnowledgeMatch

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.7


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-norm vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


class KnowledgeMatchEngine:
    """Scores active knowledge entries by embedding similarity to a query.

    Embeddings are generated on every call. When the embedding service is
    unavailable the query vector is empty and no entry matches.
    """

    def __init__(
        self,
        store: EvidenceStore,
        inference: InferenceClient,
        *,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> None:
        self.store = store
        self.inference = inference
        self.threshold = threshold

    def find_matches(
        self,
        query: str,
        team: str | None = None,
        *,
        limit: int = 10,
        threshold: float | None = None,
    ) -> list[KnowledgeMatch]:
        cutoff = self.threshold if threshold is None else threshold
        query_vector = self.inference.generate_embedding(query)
        if not query_vector:
            logger.warning("Query embedding unavailable; skipping knowledge match")
            return []

        matches: list[KnowledgeMatch] = []
        for entry in self.store.list_knowledge_entries(team=team, active=True):
            similarity = cosine_similarity(
                query_vector, self.inference.generate_embedding(entry.question)
            )
            if similarity >= cutoff:
                matches.append(KnowledgeMatch(entry=entry, similarity=similarity))

        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[:limit]

    def best_match(
        self, query: str, team: str | None = None, *, threshold: float | None = None
    ) -> KnowledgeMatch | None:
        matches = self.find_matches(query, team, limit=1, threshold=threshold)
        if not matches:
            return None
        best = matches[0]
        logger.info(
            "Knowledge entry %s matched with similarity %.3f", best.entry.kb_id, best.similarity
        )
        return best
