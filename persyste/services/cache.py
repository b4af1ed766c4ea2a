"""
QueryCache - In-memory query cache shared by reads and optimistic mutations.

Features:
- Hierarchical tuple keys with enumerate/invalidate/remove by prefix
- Per-entry staleness (stale time + explicit invalidation)
- Monotonic per-write versions, used to drop superseded fetch results
- Change notifications published to per-key subscribers
- Tracked fetches that can be superseded or cancelled by key prefix
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")

QueryKey = tuple[Any, ...]
Listener = Callable[[QueryKey], None]


def matches(key: QueryKey, prefix: QueryKey) -> bool:
    """Check if key falls under prefix."""
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with staleness metadata."""

    data: T
    updated_at: datetime
    stale_time: timedelta
    version: int
    invalidated: bool = False

    def is_stale(self, now: datetime) -> bool:
        """Check if entry should be refetched before use."""
        return self.invalidated or now > self.updated_at + self.stale_time


class QueryCache:
    """
    Key→value cache for query results.

    Usage:
        cache = QueryCache(default_stale_time=timedelta(minutes=2))

        tasks = await cache.fetch(
            query_keys.task_list(query),
            lambda: api.get_tasks(query),
        )
        unsubscribe = cache.subscribe(query_keys.tasks(), on_change)
    """

    def __init__(
        self,
        default_stale_time: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._entries: dict[QueryKey, CacheEntry[Any]] = {}
        self._fetches: dict[QueryKey, asyncio.Task[Any]] = {}
        self._superseded: set[asyncio.Task[Any]] = set()
        self._listeners: dict[QueryKey, list[Listener]] = {}
        self._default_stale_time = default_stale_time
        self._clock = clock
        self._debug = debug
        self._version = 0
        self._stats = CacheStats()

    # Reads

    def get(self, key: QueryKey) -> Any | None:
        """Get cached data for key, or None."""
        entry = self._entries.get(key)
        return entry.data if entry else None

    def get_entry(self, key: QueryKey) -> CacheEntry[Any] | None:
        return self._entries.get(key)

    def version(self, key: QueryKey) -> int | None:
        """Version of the last write to key, or None if absent."""
        entry = self._entries.get(key)
        return entry.version if entry else None

    def entries(self, prefix: QueryKey = ()) -> list[tuple[QueryKey, Any]]:
        """Enumerate (key, data) pairs under prefix, in insertion order."""
        return [(k, e.data) for k, e in self._entries.items() if matches(k, prefix)]

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.is_stale(self._clock())

    # Writes

    def set(
        self,
        key: QueryKey,
        data: Any,
        stale_time: timedelta | None = None,
    ) -> int:
        """Write data for key and publish the change. Returns the new version."""
        previous = self._entries.get(key)
        if stale_time is None:
            stale_time = previous.stale_time if previous else self._default_stale_time

        self._version += 1
        self._entries[key] = CacheEntry(
            data=data,
            updated_at=self._clock(),
            stale_time=stale_time,
            version=self._version,
        )
        self._stats.writes += 1
        self._log(f"SET: {key} (v{self._version})")
        self._publish(key)
        return self._version

    def invalidate(self, prefix: QueryKey) -> int:
        """Mark entries under prefix stale. Returns count of entries marked."""
        keys = [k for k in self._entries if matches(k, prefix)]
        for key in keys:
            self._entries[key].invalidated = True
        if keys:
            self._log(f"INVALIDATE: {len(keys)} entries under {prefix}")
        for key in keys:
            self._publish(key)
        return len(keys)

    def remove(self, prefix: QueryKey) -> int:
        """Remove entries (and cancel fetches) under prefix. Returns count removed."""
        self.cancel_fetches(prefix)
        keys = [k for k in self._entries if matches(k, prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            self._log(f"REMOVE: {len(keys)} entries under {prefix}")
        for key in keys:
            self._publish(key)
        return len(keys)

    def clear(self) -> None:
        """Drop every entry."""
        count = self.remove(())
        self._log(f"CLEAR: {count} entries removed")

    # Fetching

    async def fetch(
        self,
        key: QueryKey,
        fetch_fn: Callable[[], Awaitable[T]],
        stale_time: timedelta | None = None,
        force: bool = False,
    ) -> T:
        """
        Return fresh cached data, or fetch and store it.

        Concurrent fetches for the same key share one task. The fetched value
        is not written if the key was written after the fetch started.
        """
        entry = self._entries.get(key)
        if entry is not None and not force:
            if not entry.is_stale(self._clock()):
                self._stats.hits += 1
                return entry.data
            self._stats.stale_hits += 1
        else:
            self._stats.misses += 1

        task = self._fetches.get(key)
        if task is None:
            task = asyncio.create_task(
                self._run_fetch(key, fetch_fn, self.version(key), stale_time)
            )
            self._fetches[key] = task

        return await asyncio.shield(task)

    async def _run_fetch(
        self,
        key: QueryKey,
        fetch_fn: Callable[[], Awaitable[T]],
        start_version: int | None,
        stale_time: timedelta | None,
    ) -> T:
        current = asyncio.current_task()
        try:
            data = await fetch_fn()
        finally:
            if self._fetches.get(key) is current:
                del self._fetches[key]
            superseded = current in self._superseded
            self._superseded.discard(current)

        if superseded or self.version(key) != start_version:
            self._stats.discarded += 1
            logger.debug(f"Discarding superseded fetch result for {key}")
            return data

        self.set(key, data, stale_time)
        return data

    def supersede_fetches(self, prefix: QueryKey) -> int:
        """
        Detach in-flight fetches under prefix.

        Their callers still get the fetched data but it is not written to the
        cache; the next fetch of the key starts a new request.
        """
        keys = [k for k in self._fetches if matches(k, prefix)]
        for key in keys:
            self._superseded.add(self._fetches.pop(key))
        if keys:
            self._log(f"SUPERSEDE: {len(keys)} fetches under {prefix}")
        return len(keys)

    def cancel_fetches(self, prefix: QueryKey) -> int:
        """Cancel in-flight fetches under prefix."""
        keys = [k for k in self._fetches if matches(k, prefix)]
        for key in keys:
            self._fetches.pop(key).cancel()
        if keys:
            self._log(f"CANCEL: {len(keys)} fetches under {prefix}")
        return len(keys)

    def fetching(self, prefix: QueryKey = ()) -> list[QueryKey]:
        """Keys with a fetch in flight under prefix."""
        return [k for k in self._fetches if matches(k, prefix)]

    # Notifications

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """
        Subscribe to changes of key and every key under it.

        Returns a function that removes the subscription.
        """
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def _publish(self, changed: QueryKey) -> None:
        for key, listeners in list(self._listeners.items()):
            if not matches(changed, key):
                continue
            for listener in list(listeners):
                try:
                    listener(changed)
                except Exception:
                    logger.exception(f"Cache listener failed for {changed}")

    # Diagnostics

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        now = self._clock()
        self._stats.size = len(self._entries)
        self._stats.stale = sum(1 for e in self._entries.values() if e.is_stale(now))
        self._stats.fetching = len(self._fetches)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[QueryCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    writes: int = 0
    discarded: int = 0  # Fetch results dropped because the key moved on
    size: int = 0
    stale: int = 0
    fetching: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "writes": self.writes,
            "discarded": self.discarded,
            "size": self.size,
            "stale": self.stale,
            "fetching": self.fetching,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
