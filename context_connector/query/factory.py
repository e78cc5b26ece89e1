"""
Engine construction from configuration.

The configuration is read once here and handed to the engine's components
as plain values; nothing below this module looks at the environment.
"""

from dataclasses import asdict
from typing import Dict, Optional, Tuple

from neo4j import AsyncGraphDatabase
from qdrant_client import AsyncQdrantClient

from context_connector.clients.embedding_client import AsyncEmbeddingClient
from context_connector.query.backends import (
    GraphSearchBackend,
    HttpGraphSearchBackend,
    HttpVectorSearchBackend,
    Neo4jHybridBackend,
    QdrantVectorSearchBackend,
    UnifiedGraphView,
    VectorSearchBackend,
)
from context_connector.query.context_assembly import ContextAssembler
from context_connector.query.expansion import QueryExpander
from context_connector.query.graph_expansion import RelatedEntityExpander
from context_connector.query.hybrid_retrieval import HybridRetrievalEngine
from context_connector.query.models import RankingWeights
from context_connector.query.ranking import ScoreFusionRanker
from context_connector.shared.config import (
    Config,
    Settings,
    Topology,
    VectorProvider,
    config_overrides,
    get_config,
    get_settings,
    validate_config_at_startup,
)
from context_connector.shared.observability import get_logger
from context_connector.shared.resilience import CircuitBreaker

logger = get_logger(__name__)


def build_weights(config: Config) -> RankingWeights:
    ranking = config.search.ranking
    profile = ranking.profile
    if profile is None and config.search.topology == Topology.UNIFIED:
        profile = "unified"
    if profile:
        return RankingWeights.profile(profile)
    return RankingWeights(**ranking.weights.model_dump())


def build_breakers(config: Config) -> Dict[str, CircuitBreaker]:
    resilience = config.resilience
    if not resilience.circuit_breaker_enabled:
        return {}
    return {
        name: CircuitBreaker.from_config(name, resilience)
        for name in ("vector", "graph")
    }


def _embedder(settings: Settings, timeout: float) -> AsyncEmbeddingClient:
    return AsyncEmbeddingClient(
        base_url=settings.embedding_base_url,
        model=settings.embedding_model,
        timeout=timeout,
    )


def build_backends(
    config: Config, settings: Settings
) -> Tuple[VectorSearchBackend, GraphSearchBackend]:
    search = config.search

    if search.topology == Topology.UNIFIED:
        driver = AsyncGraphDatabase.driver(
            settings.neo4j_uri,
            auth=(settings.neo4j_user, settings.neo4j_password),
        )
        unified = Neo4jHybridBackend(
            driver,
            _embedder(settings, search.vector.timeout_seconds),
            vector_index=search.vector.index_name,
            fulltext_index=search.graph.fulltext_index,
            score_vector_hits=search.graph.score_vector_hits,
            relevance_depth=search.default_max_depth,
        )
        return unified, UnifiedGraphView(unified)

    vector: VectorSearchBackend
    if search.vector.provider == VectorProvider.QDRANT:
        vector = QdrantVectorSearchBackend(
            AsyncQdrantClient(
                host=settings.qdrant_host,
                port=settings.qdrant_port,
                api_key=settings.qdrant_api_key,
            ),
            search.vector.collection_name,
            embedder=_embedder(settings, search.vector.timeout_seconds),
        )
    else:
        vector = HttpVectorSearchBackend(
            settings.embeddings_service_url,
            timeout=search.vector.timeout_seconds,
            include_content=search.vector.include_content,
        )

    graph = HttpGraphSearchBackend(
        settings.relation_graph_url, timeout=search.graph.timeout_seconds
    )
    return vector, graph


def build_engine(
    config: Config,
    settings: Settings,
    *,
    vector_backend: Optional[VectorSearchBackend] = None,
    graph_backend: Optional[GraphSearchBackend] = None,
    expander: Optional[QueryExpander] = None,
) -> HybridRetrievalEngine:
    """
    Wire a HybridRetrievalEngine for the configured topology.

    Backends and the expander can be injected (tests, embedding in another
    service); anything not injected is built from ``config``/``settings``.
    """
    search = config.search

    if (vector_backend is None) != (graph_backend is None):
        raise ValueError("Inject both vector_backend and graph_backend, or neither")
    if vector_backend is None or graph_backend is None:
        vector_backend, graph_backend = build_backends(config, settings)

    if expander is None:
        expander = QueryExpander(
            settings.ollama_url,
            model=search.expansion.model,
            timeout=search.expansion.timeout_seconds,
            enabled=search.expansion.enabled,
        )

    breakers = build_breakers(config)
    weights = build_weights(config)

    engine = HybridRetrievalEngine(
        vector_backend,
        graph_backend,
        expander=expander,
        ranker=ScoreFusionRanker(
            weights=weights, max_results=search.ranking.max_results
        ),
        assembler=ContextAssembler(tokens_per_char=search.context.tokens_per_char),
        related_expander=RelatedEntityExpander(
            graph_backend,
            max_seeds=search.related.max_seeds,
            related_score=search.related.score,
            timeout=search.graph.timeout_seconds,
            breaker=breakers.get("graph"),
        ),
        vector_timeout=search.vector.timeout_seconds,
        graph_timeout=search.graph.timeout_seconds,
        similarity_threshold=search.vector.similarity_threshold,
        include_potential_names=search.expansion.include_potential_names,
        breakers=breakers,
        default_limit=search.default_limit,
        default_context_window=search.context.default_window,
        default_max_depth=search.default_max_depth,
        max_depth=search.graph.max_depth,
    )

    logger.info(
        "Hybrid retrieval engine built",
        topology=search.topology.value,
        vector_backend=vector_backend.name,
        graph_backend=graph_backend.name,
        weights=asdict(weights),
        expansion_enabled=search.expansion.enabled,
    )
    return engine


def create_engine(
    config: Optional[Config] = None,
    settings: Optional[Settings] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> HybridRetrievalEngine:
    """
    Build the engine from the process-wide configuration.

    ``overrides`` maps dotted config paths to values (e.g.
    ``{"search.graph.max_depth": 1}``) and is re-validated before wiring.
    """
    config = config or get_config()
    settings = settings or get_settings()
    if overrides:
        config = config_overrides(config, overrides)
        validate_config_at_startup(config, settings)
    return build_engine(config, settings)
