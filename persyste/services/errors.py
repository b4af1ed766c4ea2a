"""
Client error taxonomy.

Every failure observed above the transport boundary is one of:
- ApiError: the server answered with a non-2xx status (or a malformed envelope)
- NetworkError: no response was received
- RequestTimeoutError: the call exceeded its deadline
- CircuitOpenError: the call was short-circuited by the circuit breaker
"""

from typing import Any

import httpx


class ServiceError(Exception):
    """Base exception for client errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ApiError(ServiceError):
    """Server responded with a non-success status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        details: Any = None,
    ):
        self.status = status
        self.code = code
        self.details = details
        super().__init__(message)

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return self.status is not None and 500 <= self.status < 600

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class NetworkError(ServiceError):
    """No response was received (DNS, connection refused, reset...)."""

    def __init__(
        self,
        message: str = "Network error - please check your connection",
        cause: BaseException | None = None,
    ):
        self.cause = cause
        super().__init__(message)


class RequestTimeoutError(ServiceError):
    """Request timed out before a response arrived."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        msg = "Request timeout"
        if timeout is not None:
            msg += f" after {timeout}s"
        super().__init__(msg)


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            "Circuit breaker is open - service temporarily unavailable, "
            f"retry after {reset_after_seconds:.1f}s"
        )


def classify_error(exc: BaseException, timeout: float | None = None) -> ServiceError:
    """Map a raw transport failure onto the client taxonomy."""
    if isinstance(exc, ServiceError):
        return exc

    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(timeout)

    if isinstance(exc, httpx.RequestError):
        return NetworkError(cause=exc)

    return NetworkError(f"Unexpected transport failure: {exc}", cause=exc)


def api_error_from_response(status: int, body: Any) -> ApiError:
    """Build an ApiError from a non-2xx response payload."""
    message = None
    code = None
    if isinstance(body, dict):
        message = body.get("message")
        code = body.get("code")
    return ApiError(
        message or f"HTTP {status}: An error occurred",
        status=status,
        code=code,
        details=body,
    )
