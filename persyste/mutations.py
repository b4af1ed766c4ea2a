"""
TaskMutations - Optimistic create/update/toggle/delete over the query cache.

Each mutation:
1. snapshots every task list under the tasks namespace
2. applies its speculative change to those lists
3. dispatches the real call through the ApiClient
4. reconciles with the server's Task on success, or rolls back on failure

Rollback is scoped to the entries the mutation snapshotted. An entry nobody
else wrote since the speculative change is restored verbatim. An entry that
another mutation (or reconciliation) wrote in the meantime only has this
mutation's own record-level change undone, and mutations on the same record
still in flight are replayed on top of the restored record. Their snapshots
are rebased so a later rollback never restores this mutation's speculation.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, TypeVar
from uuid import uuid4

from loguru import logger

from persyste import query_keys
from persyste.api import ApiClient
from persyste.models import (
    TEMP_ID_PREFIX,
    CreateTaskRequest,
    Task,
    UpdateTaskRequest,
    utcnow,
)
from persyste.services.cache import QueryCache, QueryKey

R = TypeVar("R")

TaskListTransform = Callable[[list[Task]], list[Task]]
TaskChange = Callable[[Task], Task]
# (value before the mutation, current value) -> current value without the mutation
TaskListRevert = Callable[[list[Task], list[Task]], list[Task]]


@dataclass
class OptimisticSnapshot:
    """Cache state captured before one speculative mutation."""

    mutation: str
    task_id: str
    change: TaskChange | None = None
    revert: TaskListRevert | None = None
    temp_id: str | None = None
    previous: dict[QueryKey, list[Task]] = field(default_factory=dict)
    applied: dict[QueryKey, int] = field(default_factory=dict)
    # Record this mutation wrote, per entry (record-level changes only)
    written: dict[QueryKey, Task] = field(default_factory=dict)
    id: int = 0


def replace_task(tasks: list[Task], task: Task) -> list[Task]:
    """Swap the record with task.id for task."""
    return [task if t.id == task.id else t for t in tasks]


def find_task(tasks: list[Task], task_id: str) -> Task | None:
    return next((t for t in tasks if t.id == task_id), None)


def replace_placeholder(tasks: list[Task], temp_id: str, task: Task) -> list[Task]:
    """Swap the placeholder for the confirmed task, keeping one copy of it."""
    result: list[Task] = []
    seen = False
    for t in tasks:
        if t.id == temp_id:
            t = task
        if t.id == task.id:
            if seen:
                continue
            seen = True
        result.append(t)
    return result


def toggled(task: Task, now: datetime) -> Task:
    completed = not task.completed
    return task.model_copy(
        update={
            "completed": completed,
            "completed_at": now if completed else None,
            "updated_at": now,
        }
    )


def _apply_change(task_id: str, change: TaskChange) -> TaskListTransform:
    def apply(tasks: list[Task]) -> list[Task]:
        return [change(t) if t.id == task_id else t for t in tasks]

    return apply


def _revert_removal(task_id: str) -> TaskListRevert:
    def revert(prior: list[Task], current: list[Task]) -> list[Task]:
        if find_task(current, task_id) is not None:
            return current
        for index, t in enumerate(prior):
            if t.id == task_id:
                return current[:index] + [t] + current[index:]
        return current

    return revert


def _revert_insert(temp_id: str) -> TaskListRevert:
    def revert(prior: list[Task], current: list[Task]) -> list[Task]:
        return [t for t in current if t.id != temp_id]

    return revert


class TaskMutations:
    """
    Optimistic mutation coordinator for task lists.

    Usage:
        mutations = TaskMutations(api, cache)
        task = await mutations.create_task(CreateTaskRequest(title="Buy milk"))
    """

    def __init__(
        self,
        api: ApiClient,
        cache: QueryCache,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] | None = None,
    ):
        self._api = api
        self._cache = cache
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"{TEMP_ID_PREFIX}{uuid4().hex}")
        self._live: dict[int, OptimisticSnapshot] = {}
        self._ids = itertools.count(1)

    @property
    def live_snapshots(self) -> int:
        """Number of mutations still holding a snapshot."""
        return len(self._live)

    async def create_task(self, data: CreateTaskRequest) -> Task:
        temp_id = self._id_factory()
        placeholder = data.placeholder(temp_id, self._clock())

        snapshot = self._begin(
            "create",
            temp_id,
            apply=lambda tasks: [placeholder, *tasks],
            revert=_revert_insert(temp_id),
            temp_id=temp_id,
        )

        def reconcile(task: Task) -> None:
            self.reconcile_create(snapshot, task)
            logger.info(f"Task created successfully: {task.id} ({task.title})")

        return await self._run(
            snapshot, lambda: self._api.create_task(data), reconcile, invalidate=True
        )

    async def update_task(self, task_id: str, data: UpdateTaskRequest) -> Task:
        changes = data.changes()
        now = self._clock()

        def change(task: Task) -> Task:
            return task.model_copy(update={**changes, "updated_at": now})

        snapshot = self._begin("update", task_id, change=change)

        def reconcile(task: Task) -> None:
            self._replace_everywhere(task)
            logger.info(f"Task updated successfully: {task.id}")

        return await self._run(
            snapshot, lambda: self._api.update_task(task_id, data), reconcile
        )

    async def toggle_task(self, task_id: str) -> Task:
        now = self._clock()
        snapshot = self._begin("toggle", task_id, change=lambda t: toggled(t, now))

        def reconcile(task: Task) -> None:
            self._replace_everywhere(task)
            logger.info(f"Task toggled successfully: {task.id}")
            if task.completed and task.repeat_type == "daily":
                # The server created the next occurrence; pick it up by refetch
                self._cache.invalidate(query_keys.tasks())

        return await self._run(
            snapshot, lambda: self._api.toggle_task(task_id), reconcile
        )

    async def delete_task(self, task_id: str) -> str:
        snapshot = self._begin(
            "delete",
            task_id,
            apply=lambda tasks: [t for t in tasks if t.id != task_id],
            revert=_revert_removal(task_id),
        )

        async def dispatch() -> str:
            await self._api.delete_task(task_id)
            return task_id

        def reconcile(_: str) -> None:
            logger.info(f"Task deleted successfully: {task_id}")

        return await self._run(snapshot, dispatch, reconcile, invalidate=True)

    # Snapshot lifecycle

    def _begin(
        self,
        mutation: str,
        task_id: str,
        *,
        change: TaskChange | None = None,
        apply: TaskListTransform | None = None,
        revert: TaskListRevert | None = None,
        temp_id: str | None = None,
    ) -> OptimisticSnapshot:
        """Snapshot task lists and write the speculative change."""
        if change is not None:
            apply = _apply_change(task_id, change)

        snapshot = OptimisticSnapshot(
            mutation=mutation,
            task_id=task_id,
            change=change,
            revert=revert,
            temp_id=temp_id,
            id=next(self._ids),
        )

        # Reads started before this write must not land on top of it
        self._cache.supersede_fetches(query_keys.tasks())

        for key, data in self._cache.entries(query_keys.tasks()):
            if not isinstance(data, list):
                continue
            updated = apply(data)
            snapshot.previous[key] = data
            snapshot.applied[key] = self._cache.set(key, updated)
            if change is not None:
                record = find_task(updated, task_id)
                if record is not None:
                    snapshot.written[key] = record

        self._live[snapshot.id] = snapshot
        logger.debug(
            f"Optimistic {mutation}: {len(snapshot.previous)} cache entries snapshotted"
        )
        return snapshot

    async def _run(
        self,
        snapshot: OptimisticSnapshot,
        dispatch: Callable[[], Awaitable[R]],
        reconcile: Callable[[R], None],
        invalidate: bool = False,
    ) -> R:
        cancelled = False
        try:
            result = await dispatch()
        except asyncio.CancelledError:
            cancelled = True
            logger.info(f"Task {snapshot.mutation} cancelled, rolling back")
            self.rollback(snapshot)
            raise
        except Exception as e:
            self.rollback(snapshot)
            logger.error(f"Failed to {snapshot.mutation} task: {e}")
            raise
        else:
            reconcile(result)
            return result
        finally:
            self._live.pop(snapshot.id, None)
            if invalidate and not cancelled:
                self._cache.invalidate(query_keys.tasks())

    def rollback(self, snapshot: OptimisticSnapshot) -> None:
        """Undo the speculative change of snapshot in every entry it touched."""
        followers = [s for s in self._live.values() if s.id > snapshot.id]

        for key, prior in snapshot.previous.items():
            current = self._cache.get(key)
            if not isinstance(current, list):
                continue
            if self._cache.version(key) == snapshot.applied.get(key):
                self._cache.set(key, prior)
                continue

            later = [s for s in followers if key in s.previous]
            if snapshot.change is not None:
                reverted = self._undo_change(snapshot, key, prior, current, later)
            else:
                for s in later:
                    s.previous[key] = snapshot.revert(prior, s.previous[key])
                reverted = snapshot.revert(prior, current)

            if reverted != current:
                self._cache.set(key, reverted)

        logger.debug(
            f"Rolled back {snapshot.mutation}: {len(snapshot.previous)} entries"
        )

    def _undo_change(
        self,
        snapshot: OptimisticSnapshot,
        key: QueryKey,
        prior: list[Task],
        current: list[Task],
        later: list[OptimisticSnapshot],
    ) -> list[Task]:
        """
        Restore the record snapshot changed, replaying later pending changes
        to the same record on top of it.

        The record is only touched while it still holds speculative state; a
        reconciled server value is left alone.
        """
        task_id = snapshot.task_id
        record = find_task(prior, task_id)
        if record is None:
            return current

        expected = snapshot.written.get(key)
        for s in later:
            if find_task(s.previous[key], task_id) is not None:
                s.previous[key] = replace_task(s.previous[key], record)
            if s.task_id == task_id and s.change is not None and key in s.written:
                expected = s.written[key]
                record = s.change(record)
                s.written[key] = record

        if find_task(current, task_id) != expected:
            return current
        return replace_task(current, record)

    def reconcile_create(self, snapshot: OptimisticSnapshot, task: Task) -> None:
        """Replace the placeholder with the confirmed task (idempotent)."""
        for key in snapshot.previous:
            current = self._cache.get(key)
            if not isinstance(current, list):
                continue
            updated = replace_placeholder(current, snapshot.temp_id or "", task)
            if updated != current:
                self._cache.set(key, updated)

    def _replace_everywhere(self, task: Task) -> None:
        for key, data in self._cache.entries(query_keys.tasks()):
            if not isinstance(data, list) or find_task(data, task.id) is None:
                continue
            updated = replace_task(data, task)
            if updated != data:
                self._cache.set(key, updated)
