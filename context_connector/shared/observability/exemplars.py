# Span + metric context managers linking traces to Prometheus exemplars

import time
from contextlib import contextmanager
from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from .logging import get_logger
from .metrics import (
    hybrid_search_duration_seconds,
    retrieval_backend_calls_total,
    retrieval_backend_latency_ms,
    tool_calls_total,
    tool_duration_seconds,
)

logger = get_logger(__name__)

SLOW_SEARCH_MS = 500


def get_trace_context() -> Dict[str, str]:
    """
    Get current trace context for exemplar linking.

    Returns:
        Dictionary with trace_id and span_id
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        return {
            "trace_id": format(ctx.trace_id, "032x"),
            "span_id": format(ctx.span_id, "016x"),
        }
    return {}


@contextmanager
def trace_tool_call(tool_name: str, arguments: Dict[str, Any]):
    """
    Trace a context tool invocation with metrics.

    Args:
        tool_name: Name of the tool
        arguments: Tool arguments

    Yields:
        Span object
    """
    tracer = trace.get_tracer(__name__)

    with tracer.start_as_current_span(
        f"context.tool.{tool_name}",
        kind=SpanKind.INTERNAL,
        attributes={
            "tool.name": tool_name,
            "tool.args": str(arguments)[:500],
        },
    ) as span:
        with tool_duration_seconds.labels(tool_name=tool_name).time():
            try:
                yield span
                tool_calls_total.labels(tool_name=tool_name, status="success").inc()
                span.set_attribute("tool.status", "success")
            except Exception as e:
                tool_calls_total.labels(tool_name=tool_name, status="error").inc()
                span.set_attribute("tool.status", "error")
                span.set_attribute("tool.error", str(e))
                span.record_exception(e)
                raise


@contextmanager
def trace_backend_call(backend: str, operation: str, **attributes: Any):
    """
    Trace a single retrieval backend call.

    Records retrieval_backend_calls_total{status} and the latency histogram.
    Exceptions are recorded on the span and re-raised; the caller decides
    whether to fail open.

    Args:
        backend: Backend name (e.g. "vector", "graph")
        operation: Operation name (e.g. "search", "traverse")
        **attributes: Extra span attributes

    Yields:
        Span object
    """
    tracer = trace.get_tracer(__name__)
    span_attributes = {"backend.name": backend, "backend.operation": operation}
    span_attributes.update({f"backend.{k}": v for k, v in attributes.items()})

    with tracer.start_as_current_span(
        f"backend.{backend}.{operation}",
        kind=SpanKind.CLIENT,
        attributes=span_attributes,
    ) as span:
        trace_ctx = get_trace_context()
        started = time.perf_counter()
        try:
            yield span
            retrieval_backend_calls_total.labels(
                backend=backend, operation=operation, status="success"
            ).inc(exemplar=trace_ctx or None)
            span.set_attribute("backend.status", "success")
        except Exception as e:
            retrieval_backend_calls_total.labels(
                backend=backend, operation=operation, status="error"
            ).inc(exemplar=trace_ctx or None)
            span.set_attribute("backend.status", "error")
            span.set_attribute("backend.error", str(e))
            span.record_exception(e)
            raise
        finally:
            retrieval_backend_latency_ms.labels(
                backend=backend, operation=operation
            ).observe((time.perf_counter() - started) * 1000)


@contextmanager
def trace_hybrid_search(query: str, limit: int):
    """
    Trace a full hybrid search (expansion, vector + graph, assembly).

    Args:
        query: Search query string
        limit: Requested result count

    Yields:
        Span object
    """
    tracer = trace.get_tracer(__name__)

    with tracer.start_as_current_span(
        "hybrid.search",
        kind=SpanKind.INTERNAL,
        attributes={
            "search.query": query[:200],
            "search.limit": limit,
        },
    ) as span:
        trace_ctx = get_trace_context()
        started = time.perf_counter()

        with hybrid_search_duration_seconds.time():
            try:
                yield span
                span.set_attribute("search.status", "success")
            except Exception as e:
                span.set_attribute("search.status", "error")
                span.set_attribute("search.error", str(e))
                span.record_exception(e)
                raise

        duration_ms = (time.perf_counter() - started) * 1000
        if duration_ms > SLOW_SEARCH_MS:
            logger.warning(
                "Slow hybrid search detected",
                duration_ms=round(duration_ms, 2),
                query=query[:50],
                trace_id=trace_ctx.get("trace_id"),
                span_id=trace_ctx.get("span_id"),
            )
