"""
Fail-open wrapper for retrieval backend calls.

Every backend call made by the engine goes through ``call_backend``: it
applies the per-call timeout, consults the backend's circuit breaker, records
metrics and a span, and turns any failure into an empty result. Recovery
happens here, at the narrowest scope, so one flaky dependency lowers
relevance without failing the request.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from context_connector.query.models import Candidate
from context_connector.shared.observability import get_logger, trace_backend_call
from context_connector.shared.resilience import CircuitBreaker

logger = get_logger(__name__)


async def call_backend(
    call: Callable[[], Awaitable[List[Candidate]]],
    *,
    backend: str,
    operation: str,
    timeout: float,
    breaker: Optional[CircuitBreaker] = None,
) -> Optional[List[Candidate]]:
    """
    Run one backend call; return its candidates, or None if it failed.

    None (rather than ``[]``) lets callers tell "backend answered with
    nothing" from "backend unavailable" for diagnostics; both are treated as
    zero candidates downstream.
    """
    if breaker is not None and not breaker.allow_request():
        logger.warning(
            "Backend call skipped; circuit open",
            backend=backend,
            operation=operation,
        )
        return None

    try:
        with trace_backend_call(backend, operation):
            results = await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.CancelledError:
        # Neither success nor failure; a pending half-open trial must not
        # keep the circuit blocked
        if breaker is not None:
            breaker.release_trial()
        raise
    except asyncio.TimeoutError:
        logger.warning(
            "Backend call timed out",
            backend=backend,
            operation=operation,
            timeout_seconds=timeout,
        )
        if breaker is not None:
            breaker.record_failure()
        return None
    except Exception as e:
        logger.warning(
            "Backend call failed",
            backend=backend,
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        if breaker is not None:
            breaker.record_failure()
        return None

    if breaker is not None:
        breaker.record_success()
    return list(results or [])
