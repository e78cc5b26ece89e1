"""
Related-entity expansion.

For the top ranked candidates that carry a graph entity id, fetch one more
hop of neighbors and append them at a suppressed score tier. Expansion adds
context; it never displaces primary matches.
"""

import asyncio
from typing import Iterable, List, Optional, Set

from context_connector.query.backends import GraphSearchBackend, clamp_depth
from context_connector.query.fail_open import call_backend
from context_connector.query.models import Candidate, CandidateSource
from context_connector.shared.observability import get_logger
from context_connector.shared.observability.metrics import related_expansion_added
from context_connector.shared.resilience import CircuitBreaker

logger = get_logger(__name__)

MAX_SEEDS = 5
RELATED_SCORE = 0.3


class RelatedEntityExpander:
    """Bounded fan-out: at most ``max_seeds`` traversals, issued concurrently."""

    def __init__(
        self,
        graph_backend: GraphSearchBackend,
        *,
        max_seeds: int = MAX_SEEDS,
        related_score: float = RELATED_SCORE,
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.graph_backend = graph_backend
        self.max_seeds = max_seeds
        self.related_score = related_score
        self.timeout = timeout
        self.breaker = breaker

    def select_seeds(self, ranked: Iterable[Candidate]) -> List[Candidate]:
        seeds: List[Candidate] = []
        seen: Set[str] = set()
        for candidate in ranked:
            if not candidate.entity_id or candidate.entity_id in seen:
                continue
            seen.add(candidate.entity_id)
            seeds.append(candidate)
            if len(seeds) >= self.max_seeds:
                break
        return seeds

    async def expand(
        self,
        top_candidates: List[Candidate],
        depth: int,
        exclude_ids: Optional[Set[str]] = None,
        score: Optional[float] = None,
    ) -> List[Candidate]:
        """
        Traverse from each seed and return new neighbor candidates.

        Neighbors already in ``exclude_ids`` (the primary result set) or
        already returned from another seed are dropped. A failing seed is
        skipped; the other seeds still contribute.
        """
        seeds = self.select_seeds(top_candidates)
        if not seeds:
            return []

        depth = clamp_depth(depth)
        tier_score = self.related_score if score is None else score
        seen: Set[str] = set(exclude_ids or ())
        seen.update(seed.id for seed in seeds)

        per_seed = await asyncio.gather(
            *(self._traverse(seed.entity_id, depth) for seed in seeds)
        )

        related: List[Candidate] = []
        failed = 0
        for seed, neighbors in zip(seeds, per_seed):
            if neighbors is None:
                failed += 1
                continue
            for neighbor in neighbors:
                if neighbor.id in seen:
                    continue
                seen.add(neighbor.id)
                neighbor.source = CandidateSource.GRAPH_RELATED
                neighbor.final_score = tier_score
                if seed.entity_id not in neighbor.related_ids:
                    neighbor.related_ids.append(seed.entity_id)
                related.append(neighbor)

        related_expansion_added.observe(len(related))
        logger.debug(
            "Related expansion complete",
            seeds=len(seeds),
            failed_seeds=failed,
            added=len(related),
            depth=depth,
        )
        return related

    async def _traverse(self, entity_id: str, depth: int) -> Optional[List[Candidate]]:
        return await call_backend(
            lambda: self.graph_backend.traverse(entity_id, depth),
            backend=self.graph_backend.name,
            operation="traverse",
            timeout=self.timeout,
            breaker=self.breaker,
        )
