"""
Hierarchical cache keys.

Keys are tuples so that enumerate/invalidate by prefix works on whole
namespaces, e.g. every task list is under tasks().
"""

from persyste.models import TaskQuery

ROOT = ("persyste",)


def auth() -> tuple:
    return ROOT + ("auth",)


def current_user() -> tuple:
    return auth() + ("currentUser",)


def tasks() -> tuple:
    return ROOT + ("tasks",)


def task_list(query: TaskQuery | None = None) -> tuple:
    return tasks() + ("list", (query or TaskQuery()).canonical())


def task(task_id: str) -> tuple:
    return tasks() + ("detail", task_id)


def system() -> tuple:
    return ROOT + ("system",)


def health() -> tuple:
    return system() + ("health",)


def status() -> tuple:
    return system() + ("status",)
