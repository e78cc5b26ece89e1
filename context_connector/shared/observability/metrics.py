# Prometheus metrics for the retrieval engine

from prometheus_client import Counter, Histogram, Info, generate_latest

from ..config import Settings
from .logging import get_logger

logger = get_logger(__name__)

# ===== Tool metrics =====
tool_calls_total = Counter(
    "context_tool_calls_total",
    "Total context tool calls",
    ["tool_name", "status"],
)

tool_duration_seconds = Histogram(
    "context_tool_duration_seconds",
    "Context tool execution duration in seconds",
    ["tool_name"],
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0),
)

# ===== Backend metrics =====
retrieval_backend_calls_total = Counter(
    "retrieval_backend_calls_total",
    "Total retrieval backend calls",
    ["backend", "operation", "status"],
)

retrieval_backend_latency_ms = Histogram(
    "retrieval_backend_latency_ms",
    "Retrieval backend call latency in milliseconds",
    ["backend", "operation"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# ===== Query expansion metrics =====
query_expansion_total = Counter(
    "query_expansion_total",
    "Total query expansion attempts",
    ["status"],
)

# ===== Ranking metrics =====
ranking_latency_ms = Histogram(
    "ranking_latency_ms",
    "Ranking operation latency in milliseconds",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500),
)

ranking_candidates_total = Histogram(
    "ranking_candidates_total",
    "Number of candidates ranked",
    buckets=(1, 5, 10, 20, 50, 100, 200),
)

# ===== Context assembly metrics =====
context_bundle_tokens = Histogram(
    "context_bundle_tokens",
    "Estimated tokens packed into a context bundle",
    buckets=(0, 250, 500, 1000, 2000, 4000, 8000, 16000, 32000),
)

related_expansion_added = Histogram(
    "related_expansion_added",
    "Related entities appended per search",
    buckets=(0, 1, 2, 5, 10, 25, 50),
)

# ===== End-to-end search =====
hybrid_search_duration_seconds = Histogram(
    "hybrid_search_duration_seconds",
    "Hybrid search (expansion + vector + graph + assembly) duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

# ===== Service info =====
service_info = Info(
    "context_connector",
    "Context connector service information",
)


def setup_metrics(settings: Settings) -> None:
    """
    Setup Prometheus metrics collection.

    Args:
        settings: Application settings
    """
    logger.info("Setting up Prometheus metrics")

    service_info.info(
        {
            "environment": settings.env,
            "service_name": settings.otel_service_name,
        }
    )

    logger.info("Prometheus metrics enabled")


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()
