"""
Resilience patterns: circuit breakers, retry with backoff, fallback content.
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
    ServiceHealthRecord,
)
from .fallback import ContentTypes, FallbackResolver
from .protected import CallOptions, ProtectedCaller
from .retry import RetryPolicy, compute_delay, retry_with_backoff

__all__ = [
    "CallOptions",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerManager",
    "CircuitState",
    "ContentTypes",
    "FallbackResolver",
    "ProtectedCaller",
    "RetryPolicy",
    "ServiceHealthRecord",
    "compute_delay",
    "retry_with_backoff",
]
