"""
Persyste task client - resilient API access with optimistic caching.
"""

from persyste.api import ApiClient
from persyste.cancellation import LatestOnly
from persyste.credentials import FileCredentialStore, MemoryCredentialStore
from persyste.mutations import TaskMutations
from persyste.queries import SystemHealth, TaskQueries
from persyste.session import AuthSession

__all__ = [
    "ApiClient",
    "AuthSession",
    "FileCredentialStore",
    "LatestOnly",
    "MemoryCredentialStore",
    "SystemHealth",
    "TaskMutations",
    "TaskQueries",
]
