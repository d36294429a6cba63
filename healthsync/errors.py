"""
Error taxonomy for the resilience layer.

Every failure that crosses a public entrypoint is one of these types, so
collaborators can branch on the class instead of parsing messages:

- NetworkError: transient connectivity loss (including timeouts)
- ServiceUnavailableError: circuit open or upstream failing
- StorageError: durable store read/write failure
- ValidationError: bad caller input, never retried
- SyncConflictError: replay rejected by remote state, terminal
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ResilienceError(Exception):
    """Base class for all typed failures raised by healthsync."""

    #: Whether the retry engine may attempt the operation again.
    retryable: bool = True
    #: Error log type tag.
    error_type: str = "RESILIENCE_ERROR"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        self.attempts: int | None = None
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and event payloads."""
        return {
            "type": self.error_type,
            "message": self.message,
            "context": self.context,
            "attempts": self.attempts,
        }


class NetworkError(ResilienceError):
    """Transient connectivity loss: DNS failure, reset connection, timeout."""

    error_type = "NETWORK_ERROR"


class ServiceUnavailableError(ResilienceError):
    """Upstream dependency is failing or its circuit is open."""

    error_type = "SERVICE_UNAVAILABLE"

    def __init__(
        self,
        service_name: str,
        message: str | None = None,
        *,
        status: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.service_name = service_name
        self.status = status
        super().__init__(
            message or f"Service '{service_name}' is temporarily unavailable",
            context=context,
        )


class CircuitOpenError(ServiceUnavailableError):
    """Call rejected without being attempted because the circuit is not accepting calls."""

    retryable = False
    error_type = "CIRCUIT_OPEN"

    def __init__(self, service_name: str, state: str):
        self.state = state
        super().__init__(
            service_name,
            f"Circuit breaker '{service_name}' is {state}",
            context={"state": state},
        )


class StorageError(ResilienceError):
    """Durable store failure.

    ``fatal`` is set once the alternate persistence target has also failed;
    at that point the data may not be safe and the UI must be told.
    """

    error_type = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        region: str | None = None,
        fatal: bool = False,
        context: dict[str, Any] | None = None,
    ):
        self.region = region
        self.fatal = fatal
        super().__init__(message, context=context)


class ValidationError(ResilienceError):
    """Caller supplied bad input. Returned immediately with guidance."""

    retryable = False
    error_type = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        suggestions: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(message, context=context)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        data["suggestions"] = list(self.suggestions)
        return data


class SyncConflictError(ResilienceError):
    """Replay rejected because remote state no longer matches.

    Not auto-resolved: the queued operation is parked as failed until the
    caller intervenes.
    """

    retryable = False
    error_type = "SYNC_CONFLICT"

    def __init__(
        self,
        message: str,
        *,
        server_data: Any = None,
        context: dict[str, Any] | None = None,
    ):
        self.server_data = server_data
        super().__init__(message, context=context)


class RateLimitExceeded(ResilienceError):
    """Per-action attempt budget exhausted."""

    retryable = False
    error_type = "RATE_LIMITED"

    def __init__(self, key: str, limit: int, window: float, retry_after: float):
        self.key = key
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for '{key}': {limit} attempts per {window}s. "
            f"Retry after {retry_after:.1f}s",
            context={"key": key, "retry_after": retry_after},
        )


def is_retryable(error: BaseException) -> bool:
    """Whether an error may be retried; unknown exceptions count as transient."""
    if isinstance(error, ResilienceError):
        return error.retryable
    return True


# =============================================================================
# Explicit result union
# =============================================================================


@dataclass
class CallResult(Generic[T]):
    """Outcome of a protected call: exactly one of ``value`` or ``error`` is meaningful.

    Attributes:
        ok: True when the call (or its fallback) produced a value
        value: Result value when ok
        error: Typed failure when not ok
        from_fallback: Value came from a fallback rather than the live call
    """

    ok: bool
    value: T | None = None
    error: ResilienceError | None = None
    from_fallback: bool = False
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T, *, from_fallback: bool = False) -> CallResult[T]:
        return cls(ok=True, value=value, from_fallback=from_fallback)

    @classmethod
    def failure(cls, error: ResilienceError) -> CallResult[T]:
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default  # type: ignore[return-value]
