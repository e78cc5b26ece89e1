"""
Score fusion ranking.

Merges vector and graph candidate sets by id and blends five signals:
- Semantic similarity (vector score)
- Graph score (centrality / edge weight)
- Relationship proximity (1 / (depth + 1))
- Recency (timestamp decay)
- Diversity (rewards under-represented content types)

The unified-store 0.7/0.3 split is the "unified" weight profile of the same
formula, not a separate code path.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from context_connector.query.models import Candidate, RankingWeights
from context_connector.shared.observability import get_logger
from context_connector.shared.observability.metrics import (
    ranking_candidates_total,
    ranking_latency_ms,
)

logger = get_logger(__name__)

DEFAULT_MAX_RESULTS = 20
NEUTRAL_RECENCY = 0.5
RECENCY_DECAY_DAYS = 365.0


def graph_relevance(neighbor_scores: Iterable[float]) -> float:
    """Mean of neighbor relationship scores; 0.0 when there are none."""
    scores = [s for s in neighbor_scores if _is_number(s)]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and not math.isnan(value)
    )


def _sort_key(candidate: Candidate) -> float:
    # Missing or NaN scores sort after every real score
    score = candidate.final_score
    if not _is_number(score):
        return math.inf
    return -score


class ScoreFusionRanker:
    """Merges per-backend candidates and orders them by a weighted score."""

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        now: Optional[datetime] = None,
    ):
        if max_results <= 0:
            raise ValueError("max_results must be positive")
        self.weights = weights or RankingWeights()
        self.max_results = max_results
        # Pinned clock for deterministic recency in tests
        self._now = now

    def merge(
        self, vector_results: List[Candidate], graph_results: List[Candidate]
    ) -> List[Candidate]:
        """
        Union of both result sets keyed by id, vector results first.

        A graph hit for an id already present only contributes its graph
        fields; the vector-origin content and semantic score are kept.
        """
        merged: Dict[str, Candidate] = {}

        for candidate in vector_results:
            if candidate.id in merged:
                continue
            merged[candidate.id] = candidate

        for candidate in graph_results:
            existing = merged.get(candidate.id)
            if existing is None:
                merged[candidate.id] = candidate
                continue

            existing.graph_score = candidate.graph_score
            existing.relationship_depth = candidate.relationship_depth
            for related_id in candidate.related_ids:
                if related_id not in existing.related_ids:
                    existing.related_ids.append(related_id)
            if existing.entity_id is None:
                existing.entity_id = candidate.entity_id
            if not existing.path and candidate.path:
                existing.path = candidate.path

        return list(merged.values())

    def rank(
        self,
        candidates: List[Candidate],
        weights: Optional[RankingWeights] = None,
    ) -> List[Candidate]:
        """
        Score, sort (stable, descending) and truncate to max_results.

        Diversity is computed in a single pass over the input order, before
        sorting.
        """
        if not candidates:
            return []

        start_time = time.time()
        weights = weights or self.weights
        type_counts: Dict[str, int] = {}

        for candidate in candidates:
            type_counts[candidate.content_type] = (
                type_counts.get(candidate.content_type, 0) + 1
            )
            diversity = 1.0 / type_counts[candidate.content_type]
            candidate.final_score = self.score(candidate, weights, diversity)

        ranked = sorted(candidates, key=_sort_key)[: self.max_results]

        ranking_latency_ms.observe((time.time() - start_time) * 1000)
        ranking_candidates_total.observe(len(candidates))
        logger.debug(
            "Ranked candidates",
            candidates=len(candidates),
            returned=len(ranked),
            top_score=ranked[0].final_score if ranked else None,
        )
        return ranked

    def score(
        self, candidate: Candidate, weights: RankingWeights, diversity: float
    ) -> float:
        depth = max(0, candidate.relationship_depth or 0)
        return (
            (candidate.semantic_score or 0.0) * weights.semantic
            + (candidate.graph_score or 0.0) * weights.graph
            + (1.0 / (depth + 1)) * weights.relationship
            + self.recency_score(candidate.timestamp) * weights.recency
            + diversity * weights.diversity
        )

    def recency_score(self, timestamp: Any) -> float:
        """
        Exponential decay of content age: e^(-age_days / 365), in [0, 1].

        Sources without a usable timestamp get a neutral 0.5 so they are not
        systematically penalized.
        """
        if not timestamp:
            return NEUTRAL_RECENCY

        if isinstance(timestamp, datetime):
            parsed = timestamp
        elif isinstance(timestamp, str):
            try:
                parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Unparsable timestamp", timestamp=timestamp)
                return NEUTRAL_RECENCY
        else:
            return NEUTRAL_RECENCY

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)

        now = self._now or datetime.now(timezone.utc)
        age_days = max(0.0, (now - parsed).total_seconds() / 86400.0)
        return max(0.0, min(1.0, math.exp(-age_days / RECENCY_DECAY_DAYS)))
