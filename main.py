"""
Persyste client entry point.
Runs the periodic API health monitor.
"""

import asyncio
from datetime import timedelta

from loguru import logger

from persyste.api import ApiClient
from persyste.credentials import FileCredentialStore, MemoryCredentialStore
from persyste.queries import TaskQueries
from persyste.services.cache import QueryCache
from persyste.services.errors import ServiceError
from persyste.session import AuthSession
from persyste.settings import global_settings


def on_unauthorized() -> None:
    logger.warning("Session expired - sign in again")


async def main() -> None:
    """Main loop"""
    logger.info("Starting Persyste health monitor...")

    credentials = (
        FileCredentialStore(global_settings.credentials_path)
        if global_settings.credentials_path
        else MemoryCredentialStore()
    )
    api = ApiClient.from_settings(
        credentials=credentials, on_unauthorized=on_unauthorized
    )
    cache = QueryCache(
        default_stale_time=timedelta(seconds=global_settings.tasks_stale_seconds),
        debug=global_settings.debug,
    )
    queries = TaskQueries.from_settings(api, cache)
    session = AuthSession.from_settings(api, cache)

    try:
        try:
            user = await session.current_user()
        except ServiceError as e:
            logger.warning(f"Could not load the signed-in user: {e.message}")
        else:
            logger.info(f"Signed in as {user.email}" if user else "Not signed in")

        while True:
            health = await queries.system_health()
            state = api.get_circuit_breaker_state()
            logger.info(
                f"API healthy: {health.is_healthy}, circuit breaker: {state.value}"
            )
            await asyncio.sleep(global_settings.health_check_interval)

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await api.close()
        logger.info("Persyste health monitor stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
