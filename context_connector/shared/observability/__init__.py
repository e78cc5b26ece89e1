# Observability package
from .exemplars import trace_backend_call, trace_hybrid_search, trace_tool_call
from .logging import (
    get_logger,
    set_correlation_id,
    setup_logging,
)
from .metrics import get_metrics, setup_metrics
from .tracing import get_tracer, setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "set_correlation_id",
    "setup_tracing",
    "get_tracer",
    "setup_metrics",
    "get_metrics",
    "trace_tool_call",
    "trace_backend_call",
    "trace_hybrid_search",
]
