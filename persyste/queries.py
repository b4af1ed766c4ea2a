"""
TaskQueries - Cached reads of task lists and system health.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable

from loguru import logger

from persyste import query_keys
from persyste.api import ApiClient
from persyste.models import Task, TaskFilter, TaskQuery
from persyste.services.cache import QueryCache
from persyste.services.errors import ServiceError
from persyste.settings import Settings, global_settings


@dataclass
class SystemHealth:
    """Combined result of the health and status probes."""

    is_healthy: bool
    health: dict[str, Any] | None = None
    status: dict[str, Any] | None = None
    error: ServiceError | None = None


def filter_tasks(tasks: list[Task], task_filter: TaskFilter, today: date) -> list[Task]:
    """Client-side view filter applied on top of a fetched list."""
    if task_filter == "today":
        return [t for t in tasks if _local_date(t.due_date) == today]
    if task_filter == "completed":
        return [t for t in tasks if t.completed]
    return list(tasks)


def _local_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone()
    return value.date()


class TaskQueries:
    """
    Read side of the client: every read goes through the QueryCache so
    optimistic writes and refetches share one view of each query.
    """

    def __init__(
        self,
        api: ApiClient,
        cache: QueryCache,
        tasks_stale_time: timedelta = timedelta(minutes=2),
        health_stale_time: timedelta = timedelta(seconds=30),
        status_stale_time: timedelta = timedelta(minutes=5),
        today: Callable[[], date] = date.today,
    ):
        self._api = api
        self._cache = cache
        self._tasks_stale_time = tasks_stale_time
        self._health_stale_time = health_stale_time
        self._status_stale_time = status_stale_time
        self._today = today

    @classmethod
    def from_settings(
        cls, api: ApiClient, cache: QueryCache, settings: Settings | None = None
    ) -> "TaskQueries":
        settings = settings or global_settings
        return cls(
            api,
            cache,
            tasks_stale_time=timedelta(seconds=settings.tasks_stale_seconds),
            health_stale_time=timedelta(seconds=settings.health_stale_seconds),
            status_stale_time=timedelta(seconds=settings.status_stale_seconds),
        )

    async def tasks(self, query: TaskQuery | None = None, force: bool = False) -> list[Task]:
        """Cached task list for query."""
        query = query or TaskQuery()

        async def load() -> list[Task]:
            return (await self._api.get_tasks(query)).tasks

        return await self._cache.fetch(
            query_keys.task_list(query),
            load,
            stale_time=self._tasks_stale_time,
            force=force,
        )

    async def filtered_tasks(self, task_filter: TaskFilter = "all") -> list[Task]:
        tasks = await self.tasks(TaskQuery(filter=task_filter))
        return filter_tasks(tasks, task_filter, self._today())

    async def prefetch_tasks(self, task_filter: TaskFilter) -> None:
        await self.tasks(TaskQuery(filter=task_filter))
        logger.debug(f"Prefetched tasks for filter '{task_filter}'")

    def invalidate_all_tasks(self) -> int:
        count = self._cache.invalidate(query_keys.tasks())
        logger.debug(f"Invalidated {count} task queries")
        return count

    def invalidate_filter(self, task_filter: TaskFilter) -> int:
        count = self._cache.invalidate(query_keys.task_list(TaskQuery(filter=task_filter)))
        logger.debug(f"Invalidated task filter '{task_filter}'")
        return count

    async def system_health(self) -> SystemHealth:
        """Probe health and status together."""
        results = await asyncio.gather(
            self._cache.fetch(
                query_keys.health(),
                self._api.health_check,
                stale_time=self._health_stale_time,
            ),
            self._cache.fetch(
                query_keys.status(),
                self._api.api_status,
                stale_time=self._status_stale_time,
            ),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, ServiceError):
                raise result

        health, status = results
        error = next((r for r in results if isinstance(r, ServiceError)), None)
        if error is not None:
            logger.warning(f"System health check failed: {error.message}")

        return SystemHealth(
            is_healthy=error is None,
            health=None if isinstance(health, BaseException) else health,
            status=None if isinstance(status, BaseException) else status,
            error=error,
        )

    def cache_stats(self) -> dict[str, Any]:
        stats = self._cache.get_stats()
        return {
            "total_queries": stats.size,
            "fresh_queries": stats.size - stats.stale,
            "stale_queries": stats.stale,
            "fetching_queries": stats.fetching,
        }
