"""
LatestOnly - Cooperative cancellation of superseded user operations.

Starting a new run cancels the previous one if it is still pending, e.g. a
search or voice submission replaced by a newer one. The superseded caller
sees asyncio.CancelledError.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class LatestOnly:
    def __init__(self, name: str = "operation"):
        self.name = name
        self._current: asyncio.Task[Any] | None = None

    @property
    def pending(self) -> bool:
        return self._current is not None and not self._current.done()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.cancel()
        task = asyncio.ensure_future(operation())
        self._current = task
        try:
            return await task
        finally:
            if self._current is task:
                self._current = None

    def cancel(self) -> bool:
        """Cancel the pending run, if any."""
        if not self.pending:
            return False
        self._current.cancel()
        logger.debug(f"Superseded pending {self.name}")
        return True
