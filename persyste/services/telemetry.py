"""
RequestTelemetry - Correlates each outbound call with its completion.

Every dispatched call gets a RequestIdentity keyed by method, path and a
sequence number. The key travels with the call, so completions can arrive
in any order and still be matched to the right start time.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

SENSITIVE_FIELDS = {"password", "token", "authorization"}


@dataclass(frozen=True)
class RequestIdentity:
    """Identity of one outbound call."""

    sequence_number: int
    start_time: float  # Monotonic seconds
    method: str
    path: str

    @property
    def key(self) -> str:
        return f"{self.method}_{self.path}_{self.sequence_number}"


def redact(payload: Any) -> Any:
    """Strip credentials from a payload before it is logged."""
    if isinstance(payload, dict):
        return {
            k: ("***" if k.lower() in SENSITIVE_FIELDS else redact(v))
            for k, v in payload.items()
        }
    if isinstance(payload, list):
        return [redact(item) for item in payload]
    return payload


def log_user_action(action: str, **context: Any) -> None:
    """Log a user-initiated action with redacted context."""
    logger.bind(user_action=action, **redact(context)).info(f"User action: {action}")


class RequestTelemetry:
    """
    Assigns identities to outbound calls and logs their timing.

    Usage:
        identity = telemetry.start("GET", "/todos")
        ...
        telemetry.finish(identity, status=200)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, debug: bool = False):
        self._clock = clock
        self._debug = debug
        self._counter = 0
        self._pending: dict[str, RequestIdentity] = {}

    def start(self, method: str, path: str, body: Any = None) -> RequestIdentity:
        """Register an outbound call and log the request."""
        self._counter += 1
        identity = RequestIdentity(
            sequence_number=self._counter,
            start_time=self._clock(),
            method=method.upper(),
            path=path,
        )
        self._pending[identity.key] = identity

        log = logger.bind(
            request_id=identity.sequence_number, method=identity.method, path=path
        )
        if self._debug and body is not None:
            log.debug(f"API Request: {identity.method} {path} {redact(body)}")
        else:
            log.debug(f"API Request: {identity.method} {path}")
        return identity

    def finish(
        self,
        identity: RequestIdentity,
        status: int | None = None,
        error: BaseException | None = None,
    ) -> float | None:
        """
        Record the completion of a call.

        Returns elapsed milliseconds, or None if the identity was already
        recorded (or never started here).
        """
        started = self._pending.pop(identity.key, None)
        if started is None:
            return None

        duration_ms = round((self._clock() - started.start_time) * 1000, 2)
        outcome = status if status is not None else type(error).__name__
        log = logger.bind(
            request_id=identity.sequence_number,
            method=identity.method,
            path=identity.path,
            status=outcome,
            duration_ms=duration_ms,
        )

        if error is not None and status is None:
            log.error(
                f"API Error: {identity.method} {identity.path} "
                f"{outcome} ({duration_ms}ms): {error}"
            )
        elif status is not None and status >= 400:
            log.warning(
                f"API Response: {identity.method} {identity.path} "
                f"{status} ({duration_ms}ms)"
            )
        else:
            log.info(
                f"API Response: {identity.method} {identity.path} "
                f"{status} ({duration_ms}ms)"
            )
        return duration_ms

    def pending_count(self) -> int:
        """Number of calls started but not yet recorded."""
        return len(self._pending)
