"""
Hybrid retrieval engine.

Pipeline per query, strictly sequenced:
1. Query expansion (optional, own short timeout, fails open to the original)
2. Vector + graph search, issued concurrently and joined
3. Merge by id and score-fusion ranking
4. Related-entity expansion from the top seeds (optional)
5. Greedy context assembly under the token budget

Retrieval failures never surface to the caller: a failed backend contributes
zero candidates, visible only through ``vectorMatches``/``graphMatches``.
Only request validation errors are raised.
"""

import asyncio
import math
from typing import Any, Dict, List, Optional, Union

from context_connector.query.backends import (
    MAX_TRAVERSAL_DEPTH,
    GraphSearchBackend,
    VectorSearchBackend,
    clamp_depth,
)
from context_connector.query.context_assembly import ContextAssembler
from context_connector.query.expansion import QueryExpander
from context_connector.query.fail_open import call_backend
from context_connector.query.graph_expansion import RelatedEntityExpander
from context_connector.query.models import Candidate, ContextBundle, ExpandedQuery
from context_connector.query.ranking import ScoreFusionRanker
from context_connector.query.schemas import (
    ContextBundleModel,
    ContextItemModel,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
)
from context_connector.shared.observability import (
    get_logger,
    set_correlation_id,
    trace_hybrid_search,
)
from context_connector.shared.resilience import CircuitBreaker

logger = get_logger(__name__)

DEFAULT_BACKEND_TIMEOUT = 10.0
OVERFETCH_FACTOR = 2
DEFAULT_LIMIT = 10
DEFAULT_CONTEXT_WINDOW = 8000
DEFAULT_MAX_DEPTH = 2


class HybridRetrievalEngine:
    """
    End-to-end query -> context bundle orchestration.

    Stateless across calls apart from the backend handles and circuit
    breakers it is constructed with.
    """

    def __init__(
        self,
        vector_backend: VectorSearchBackend,
        graph_backend: GraphSearchBackend,
        *,
        expander: Optional[QueryExpander] = None,
        ranker: Optional[ScoreFusionRanker] = None,
        assembler: Optional[ContextAssembler] = None,
        related_expander: Optional[RelatedEntityExpander] = None,
        vector_timeout: float = DEFAULT_BACKEND_TIMEOUT,
        graph_timeout: float = DEFAULT_BACKEND_TIMEOUT,
        similarity_threshold: float = 0.0,
        include_potential_names: bool = False,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
        default_limit: int = DEFAULT_LIMIT,
        default_context_window: int = DEFAULT_CONTEXT_WINDOW,
        default_max_depth: int = DEFAULT_MAX_DEPTH,
        max_depth: int = MAX_TRAVERSAL_DEPTH,
    ):
        self.vector_backend = vector_backend
        self.graph_backend = graph_backend
        self.expander = expander
        self.ranker = ranker or ScoreFusionRanker()
        self.assembler = assembler or ContextAssembler()
        self.vector_timeout = vector_timeout
        self.graph_timeout = graph_timeout
        self.similarity_threshold = similarity_threshold
        self.include_potential_names = include_potential_names
        self.breakers = breakers or {}
        # Deployment traversal ceiling; never above MAX_TRAVERSAL_DEPTH
        self.max_depth = clamp_depth(max_depth)
        # Applied to request fields the caller left out
        self.request_defaults = {
            "limit": default_limit,
            "context_window": default_context_window,
            "max_depth": self._depth_limit(default_max_depth),
        }
        self.related_expander = related_expander or RelatedEntityExpander(
            graph_backend,
            timeout=graph_timeout,
            breaker=self.breakers.get("graph"),
        )

    async def aclose(self) -> None:
        await self.vector_backend.aclose()
        await self.graph_backend.aclose()
        if self.expander is not None:
            await self.expander.aclose()

    async def search(
        self,
        request: Union[SearchRequest, Dict[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> SearchResponse:
        """
        Run the full pipeline for one request.

        A fresh correlation id is minted unless the caller supplies one.

        Raises:
            InvalidRequestError: request failed validation (no backend called)
        """
        if not isinstance(request, SearchRequest):
            request = SearchRequest.parse(request)
        request = self._apply_defaults(request)

        set_correlation_id(correlation_id)
        with trace_hybrid_search(request.query, request.limit) as span:
            search_text = await self._search_text(request)

            fetch = request.limit * OVERFETCH_FACTOR
            vector_results, graph_results = await asyncio.gather(
                self._vector_search(search_text, fetch, request.filters),
                self._graph_search(search_text, fetch),
            )

            merged = self.ranker.merge(vector_results, graph_results)
            ranked = self.ranker.rank(merged)

            related: List[Candidate] = []
            if request.include_related and ranked:
                related = await self.related_expander.expand(
                    ranked,
                    request.max_depth,
                    exclude_ids={c.id for c in ranked},
                    score=self._related_tier_score(ranked),
                )

            final = ranked + related
            bundle = self.assembler.assemble(
                final, request.query, request.context_window
            )

            span.set_attribute("search.vector_matches", len(vector_results))
            span.set_attribute("search.graph_matches", len(graph_results))
            span.set_attribute("search.related_matches", len(related))

        logger.info(
            "Hybrid search complete",
            vector_matches=len(vector_results),
            graph_matches=len(graph_results),
            ranked=len(ranked),
            related=len(related),
            bundle_items=len(bundle.items),
            bundle_tokens=bundle.total_tokens,
        )
        return self._build_response(
            request, final, vector_results, graph_results, related, bundle
        )

    async def expand(self, query: str) -> ExpandedQuery:
        """Query expansion on its own (identity when no expander is wired)."""
        if self.expander is None:
            return ExpandedQuery.identity(query)
        return await self.expander.expand(query)

    async def related(self, entity_id: str, depth: int) -> List[Candidate]:
        """Direct neighbor lookup; empty when the graph backend fails."""
        depth = self._depth_limit(depth)
        neighbors = await call_backend(
            lambda: self.graph_backend.traverse(entity_id, depth),
            backend=self.graph_backend.name,
            operation="traverse",
            timeout=self.graph_timeout,
            breaker=self.breakers.get("graph"),
        )
        return neighbors or []

    def _apply_defaults(self, request: SearchRequest) -> SearchRequest:
        update = {
            field: value
            for field, value in self.request_defaults.items()
            if field not in request.model_fields_set
        }
        depth = update.get("max_depth", request.max_depth)
        if depth > self.max_depth:
            update["max_depth"] = self.max_depth
        return request.model_copy(update=update) if update else request

    def _depth_limit(self, depth: int) -> int:
        return min(clamp_depth(depth), self.max_depth)

    async def _search_text(self, request: SearchRequest) -> str:
        if not request.expand_query or self.expander is None:
            return request.query
        expanded = await self.expander.expand(request.query)
        return expanded.search_text(include_names=self.include_potential_names)

    async def _vector_search(
        self, text: str, limit: int, filters: Optional[Dict[str, Any]]
    ) -> List[Candidate]:
        results = await call_backend(
            lambda: self.vector_backend.search_text(
                text, limit, self.similarity_threshold, filters
            ),
            backend=self.vector_backend.name,
            operation="search",
            timeout=self.vector_timeout,
            breaker=self.breakers.get("vector"),
        )
        return results or []

    async def _graph_search(self, text: str, limit: int) -> List[Candidate]:
        results = await call_backend(
            lambda: self.graph_backend.search(text, limit),
            backend=self.graph_backend.name,
            operation="search",
            timeout=self.graph_timeout,
            breaker=self.breakers.get("graph"),
        )
        return results or []

    def _related_tier_score(self, ranked: List[Candidate]) -> float:
        # Appended neighbors must not outrank the weakest primary match
        tier = self.related_expander.related_score
        scores = [
            c.final_score
            for c in ranked
            if isinstance(c.final_score, (int, float)) and not math.isnan(c.final_score)
        ]
        if scores:
            tier = min(tier, min(scores))
        return tier

    @staticmethod
    def _build_response(
        request: SearchRequest,
        final: List[Candidate],
        vector_results: List[Candidate],
        graph_results: List[Candidate],
        related: List[Candidate],
        bundle: ContextBundle,
    ) -> SearchResponse:
        return SearchResponse(
            query=request.query,
            total_results=len(final),
            vector_matches=len(vector_results),
            graph_matches=len(graph_results),
            related_matches=len(related),
            context_bundle=ContextBundleModel(
                query=bundle.query,
                total_tokens=bundle.total_tokens,
                context_window=bundle.context_window,
                items=[
                    ContextItemModel(
                        id=item.id,
                        title=item.title,
                        content=item.content,
                        path=item.path,
                        content_type=item.content_type,
                        relevance_score=item.relevance_score,
                        tokens=item.tokens,
                    )
                    for item in bundle.items
                ],
            ),
            results=[
                SearchResultItem(
                    id=c.id,
                    title=c.title,
                    path=c.path,
                    content_type=c.content_type,
                    relevance_score=c.final_score or 0.0,
                    semantic_score=c.semantic_score,
                    graph_score=c.graph_score,
                    source=getattr(c.source, "value", c.source),
                )
                for c in final[: request.limit]
            ],
        )
