"""Resilience patterns for backend calls."""

from context_connector.shared.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)

__all__ = ["CircuitBreaker", "CircuitState"]
