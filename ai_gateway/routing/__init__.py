"""Request routing: complexity scoring, provider ordering, circuit breaking."""

from ai_gateway.routing.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
)
from ai_gateway.routing.complexity import (
    QueryComplexityAnalyzer,
    estimate_messages_tokens,
    estimate_tokens,
)
from ai_gateway.routing.selector import FallbackPolicy, preferred_order

__all__ = [
    "QueryComplexityAnalyzer",
    "estimate_tokens",
    "estimate_messages_tokens",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "FallbackPolicy",
    "preferred_order",
]
