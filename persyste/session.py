"""
AuthSession - Credential lifecycle and the cached current user.
"""

import asyncio
from datetime import timedelta

from loguru import logger

from persyste import query_keys
from persyste.api import ApiClient
from persyste.models import AuthResult, LoginRequest, RegisterRequest, User, UserPreferences
from persyste.services.cache import QueryCache
from persyste.services.errors import ServiceError
from persyste.services.telemetry import log_user_action
from persyste.settings import Settings, global_settings


class AuthSession:
    """
    Sign-in state on top of the ApiClient.

    Usage:
        session = AuthSession(api, cache)
        user = await session.login(LoginRequest(email=..., password=...))
        await session.update_preferences(UserPreferences(theme="dark"))
        session.logout()
    """

    def __init__(
        self,
        api: ApiClient,
        cache: QueryCache,
        user_stale_time: timedelta = timedelta(minutes=5),
    ):
        self._api = api
        self._cache = cache
        self._credentials = api.credentials
        self._user_stale_time = user_stale_time

    @classmethod
    def from_settings(
        cls, api: ApiClient, cache: QueryCache, settings: Settings | None = None
    ) -> "AuthSession":
        settings = settings or global_settings
        return cls(
            api, cache, user_stale_time=timedelta(seconds=settings.user_stale_seconds)
        )

    async def login(self, data: LoginRequest) -> User:
        try:
            result = await self._api.login(data)
        except ServiceError as e:
            logger.error(f"Login failed: {e.message}")
            raise
        self._start(result)
        log_user_action("Login successful", user_id=result.user.id)
        return result.user

    async def register(self, data: RegisterRequest) -> User:
        try:
            result = await self._api.register(data)
        except ServiceError as e:
            logger.error(f"Registration failed: {e.message}")
            raise
        self._start(result)
        log_user_action("Registration successful", user_id=result.user.id)
        return result.user

    def _start(self, result: AuthResult) -> None:
        self._credentials.set(result.token)
        self._cache.set(
            query_keys.current_user(), result.user, stale_time=self._user_stale_time
        )

    async def current_user(self, force: bool = False) -> User | None:
        """Cached current user, or None when signed out."""
        if not self._credentials.get():
            return None
        return await self._cache.fetch(
            query_keys.current_user(),
            self._api.get_current_user,
            stale_time=self._user_stale_time,
            force=force,
        )

    async def update_preferences(self, preferences: UserPreferences) -> UserPreferences:
        """Merge preferences into the cached user optimistically."""
        key = query_keys.current_user()
        previous: User | None = self._cache.get(key)
        applied = None

        if previous is not None:
            merged = previous.preferences.model_copy(
                update=preferences.model_dump(exclude_none=True)
            )
            applied = self._cache.set(key, previous.model_copy(update={"preferences": merged}))

        cancelled = False
        try:
            updated = await self._api.update_preferences(preferences)
        except asyncio.CancelledError:
            cancelled = True
            self._restore_user(previous, applied)
            raise
        except Exception as e:
            self._restore_user(previous, applied)
            logger.error(f"Failed to update preferences: {e}")
            raise
        finally:
            if not cancelled:
                self._cache.invalidate(key)

        current: User | None = self._cache.get(key)
        if current is not None:
            self._cache.set(key, current.model_copy(update={"preferences": updated}))
        return updated

    def _restore_user(self, previous: User | None, applied: int | None) -> None:
        key = query_keys.current_user()
        if previous is not None and self._cache.version(key) == applied:
            self._cache.set(key, previous)

    def logout(self) -> None:
        """Forget the token and every cached query."""
        self._credentials.clear()
        self._cache.clear()
        log_user_action("User logged out")

    def is_authenticated(self) -> bool:
        return bool(self._credentials.get()) and self._cache.get(
            query_keys.current_user()
        ) is not None
