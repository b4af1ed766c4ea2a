"""
RequestDeduplicator - Collapses concurrent identical reads into one call.

When multiple callers request the same key while a call is in flight,
only one actual call is made and every caller observes its result,
including the same error if it fails.
"""

import asyncio
from typing import Any, Awaitable, Callable, Mapping, TypeVar
from urllib.parse import urlencode

from loguru import logger

T = TypeVar("T")


def canonical_params(params: Mapping[str, Any] | None) -> str:
    """Order-independent encoding of query parameters (None values dropped)."""
    if not params:
        return ""
    items = sorted((k, v) for k, v in params.items() if v is not None)
    return urlencode(items)


def make_dedupe_key(operation: str, params: Mapping[str, Any] | None = None) -> str:
    """Deduplication key: operation name plus canonical parameters."""
    encoded = canonical_params(params)
    return f"{operation}?{encoded}" if encoded else operation


class RequestDeduplicator:
    """
    Deduplicates concurrent async reads.

    Usage:
        dedup = RequestDeduplicator()

        tasks = await dedup.dedupe(
            key=make_dedupe_key("get_tasks", {"filter": "today"}),
            request_fn=lambda: client.fetch_tasks(...),
        )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight,
        wait for and return its result instead of making a new request.
        A cancelled waiter does not cancel the shared request.
        """
        task = self._in_flight.get(key)
        if task is not None:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {key[:50]}")
            task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
            self._in_flight[key] = task

        return await asyncio.shield(task)

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and drop its entry before any waiter resumes."""
        try:
            return await request_fn()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
            self._log(f"DONE: Request settled: {key[:50]}")

    def cancel(self, key: str) -> bool:
        """Cancel an in-flight request."""
        task = self._in_flight.pop(key, None)
        if task is None:
            return False
        task.cancel()
        self._log(f"CANCEL: Request cancelled: {key[:50]}")
        return True

    def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        count = len(self._in_flight)
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} requests cancelled")
        return count

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Unique requests made
        self.deduplicated: int = 0  # Requests that joined an in-flight one
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
