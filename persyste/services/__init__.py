"""
Service layer infrastructure - resilience patterns for API calls.

Provides:
- Error taxonomy and the Success/Failure outcome type
- RetryPolicy: Backoff and retry predicate for transient failures
- CircuitBreaker: Short-circuits calls while the API is failing
- RequestDeduplicator: Collapses concurrent identical reads
- RequestTelemetry: Correlates calls with their completions
- QueryCache: Query results shared by reads and optimistic writes
- HttpxTransport: The HTTP boundary
"""

from persyste.services.errors import (
    ServiceError,
    ApiError,
    NetworkError,
    RequestTimeoutError,
    CircuitOpenError,
    classify_error,
)
from persyste.services.result import Success, Failure, Outcome, unwrap
from persyste.services.retry import RetryPolicy, run_with_retry
from persyste.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from persyste.services.deduplicator import RequestDeduplicator, make_dedupe_key
from persyste.services.telemetry import RequestIdentity, RequestTelemetry
from persyste.services.cache import QueryCache, CacheEntry
from persyste.services.transport import (
    HttpxTransport,
    Transport,
    TransportRequest,
    TransportResponse,
)

__all__ = [
    # Errors
    "ServiceError",
    "ApiError",
    "NetworkError",
    "RequestTimeoutError",
    "CircuitOpenError",
    "classify_error",
    # Outcomes
    "Success",
    "Failure",
    "Outcome",
    "unwrap",
    # Retry
    "RetryPolicy",
    "run_with_retry",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    # Deduplicator
    "RequestDeduplicator",
    "make_dedupe_key",
    # Telemetry
    "RequestIdentity",
    "RequestTelemetry",
    # Cache
    "QueryCache",
    "CacheEntry",
    # Transport
    "HttpxTransport",
    "Transport",
    "TransportRequest",
    "TransportResponse",
]
