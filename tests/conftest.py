# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from persyste.api import ApiClient
from persyste.credentials import MemoryCredentialStore
from persyste.mutations import TaskMutations
from persyste.queries import TaskQueries
from persyste.services.cache import QueryCache
from persyste.services.circuit_breaker import CircuitBreaker
from persyste.services.retry import RetryPolicy
from persyste.session import AuthSession

from .fakes import FakeTransport, ManualClock, RecordingNavigation, RecordingSleep

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def navigation() -> RecordingNavigation:
    return RecordingNavigation()


@pytest.fixture()
def credentials() -> MemoryCredentialStore:
    return MemoryCredentialStore("token-123")


@pytest.fixture()
def breaker(clock: ManualClock) -> CircuitBreaker:
    return CircuitBreaker(clock=clock)


@pytest.fixture()
def api(
    transport: FakeTransport,
    credentials: MemoryCredentialStore,
    breaker: CircuitBreaker,
    sleep: RecordingSleep,
    navigation: RecordingNavigation,
) -> ApiClient:
    """ApiClient wired with deterministic fakes (default retry policy)."""
    return ApiClient(
        transport,
        credentials,
        breaker=breaker,
        retry_policy=RetryPolicy(),
        on_unauthorized=navigation,
        sleep=sleep,
    )


@pytest.fixture()
def cache(clock: ManualClock) -> QueryCache:
    return QueryCache(clock=clock)


@pytest.fixture()
def mutations(api: ApiClient, cache: QueryCache) -> TaskMutations:
    counter = iter(range(1, 1000))
    return TaskMutations(
        api, cache, clock=lambda: NOW, id_factory=lambda: f"temp_{next(counter)}"
    )


@pytest.fixture()
def queries(api: ApiClient, cache: QueryCache) -> TaskQueries:
    return TaskQueries(api, cache, today=lambda: NOW.date())


@pytest.fixture()
def session(api: ApiClient, cache: QueryCache) -> AuthSession:
    return AuthSession(api, cache)
