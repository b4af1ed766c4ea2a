# tests/test_session.py

from __future__ import annotations

import pytest

from persyste import query_keys
from persyste.api import ApiClient
from persyste.credentials import FileCredentialStore
from persyste.models import LoginRequest, RegisterRequest, User, UserPreferences
from persyste.services.cache import QueryCache
from persyste.services.errors import ApiError
from persyste.session import AuthSession
from persyste.settings import Settings

from .fakes import FakeTransport, ManualClock, error, ok, user_payload


@pytest.mark.asyncio
async def test_login_stores_token_and_seeds_user(
    session: AuthSession, cache: QueryCache, transport: FakeTransport
) -> None:
    session.logout()
    transport.on(
        "POST", "/auth/login", ok({"success": True, "token": "fresh", "user": user_payload()})
    )

    user = await session.login(LoginRequest(email="ada@example.com", password="pw"))

    assert user.email == "ada@example.com"
    assert session.is_authenticated()
    assert cache.get(query_keys.current_user()) == user
    assert transport.requests[0].body == {"email": "ada@example.com", "password": "pw"}

    # Cached user is served without another request
    assert await session.current_user() == user
    assert transport.calls() == 1


@pytest.mark.asyncio
async def test_failed_registration_keeps_signed_out(
    session: AuthSession, transport: FakeTransport
) -> None:
    session.logout()
    transport.on("POST", "/auth/register", error(400, "User already exists"))

    with pytest.raises(ApiError) as info:
        await session.register(RegisterRequest(email="ada@example.com", password="pw"))

    assert info.value.message == "User already exists"
    assert not session.is_authenticated()
    assert transport.calls() == 1


@pytest.mark.asyncio
async def test_current_user_is_none_when_signed_out(
    session: AuthSession, transport: FakeTransport
) -> None:
    session.logout()

    assert await session.current_user() is None
    assert transport.calls() == 0


@pytest.mark.asyncio
async def test_current_user_fetches_with_token(
    session: AuthSession, transport: FakeTransport
) -> None:
    transport.on("GET", "/auth/me", ok({"success": True, "user": user_payload()}))

    user = await session.current_user()

    assert isinstance(user, User)
    assert transport.calls("GET", "/auth/me") == 1


@pytest.mark.asyncio
async def test_preferences_update_is_optimistic_and_rolled_back(
    session: AuthSession, cache: QueryCache, transport: FakeTransport
) -> None:
    original = User.model_validate(user_payload(theme="light"))
    cache.set(query_keys.current_user(), original)
    transport.on("PATCH", "/auth/preferences", error(422, "Invalid theme"))

    with pytest.raises(ApiError):
        await session.update_preferences(UserPreferences(theme="dark"))

    assert cache.get(query_keys.current_user()) is original
    assert cache.is_stale(query_keys.current_user())


@pytest.mark.asyncio
async def test_preferences_update_merges_server_result(
    session: AuthSession, cache: QueryCache, transport: FakeTransport
) -> None:
    cache.set(query_keys.current_user(), User.model_validate(user_payload(theme="light")))
    transport.on(
        "PATCH",
        "/auth/preferences",
        ok({"success": True, "preferences": {"theme": "dark", "defaultView": "today"}}),
    )

    prefs = await session.update_preferences(UserPreferences(theme="dark"))

    user = cache.get(query_keys.current_user())
    assert prefs.theme == "dark"
    assert user.preferences.theme == "dark"
    assert user.preferences.default_view == "today"


def test_logout_clears_token_and_cache(session: AuthSession, cache: QueryCache) -> None:
    cache.set(query_keys.current_user(), User.model_validate(user_payload()))
    cache.set(query_keys.tasks() + ("list", ""), [])

    session.logout()

    assert not session.is_authenticated()
    assert cache.entries() == []


def test_file_credential_store_round_trip(tmp_path) -> None:
    store = FileCredentialStore(tmp_path / "auth" / "token.json")
    assert store.get() is None

    store.set("abc")
    assert FileCredentialStore(tmp_path / "auth" / "token.json").get() == "abc"

    store.clear()
    assert store.get() is None
    store.clear()


@pytest.mark.asyncio
async def test_user_stale_time_comes_from_settings(
    api: ApiClient, cache: QueryCache, transport: FakeTransport, clock: ManualClock
) -> None:
    session = AuthSession.from_settings(
        api, cache, Settings.model_validate({"USER_STALE_SECONDS": "60"})
    )
    transport.on("GET", "/auth/me", ok({"success": True, "user": user_payload()}))

    await session.current_user()
    clock.advance(59)
    await session.current_user()
    assert transport.calls("GET", "/auth/me") == 1

    clock.advance(2)
    await session.current_user()
    assert transport.calls("GET", "/auth/me") == 2
