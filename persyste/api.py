"""
ApiClient - Typed façade over the task API.

Every call is routed:
    Deduplicator (reads only) → CircuitBreaker → RetryPolicy → Transport

Transport failures are classified into the client error taxonomy here and
nowhere else; callers only ever see ServiceError subclasses.
"""

import asyncio
import hashlib
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from persyste.credentials import CredentialStore, MemoryCredentialStore
from persyste.models import (
    AuthResult,
    CreateTaskRequest,
    LoginRequest,
    RegisterRequest,
    Task,
    TaskList,
    TaskQuery,
    UpdateTaskRequest,
    User,
    UserPreferences,
)
from persyste.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from persyste.services.deduplicator import RequestDeduplicator, make_dedupe_key
from persyste.services.errors import (
    ApiError,
    ServiceError,
    api_error_from_response,
    classify_error,
)
from persyste.services.result import Failure, Outcome, Success, unwrap
from persyste.services.retry import RetryPolicy, run_with_retry
from persyste.services.telemetry import RequestTelemetry, log_user_action
from persyste.services.transport import HttpxTransport, Transport, TransportRequest
from persyste.settings import Settings, global_settings

M = TypeVar("M", bound=BaseModel)

# Repeating a credential submission is unsafe
NO_RETRY = 0


class ApiClient:
    """
    Resilient client for the task API.

    Usage:
        async with ApiClient.from_settings() as api:
            await api.login(LoginRequest(email="a@b.c", password="..."))
            tasks = await api.get_tasks(TaskQuery(filter="today"))
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        deduplicator: RequestDeduplicator | None = None,
        telemetry: RequestTelemetry | None = None,
        on_unauthorized: Callable[[], None] | None = None,
        timeout: float = 10.0,
        health_url: str = "/health",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._transport = transport
        self._credentials = credentials or MemoryCredentialStore()
        self._breaker = breaker or CircuitBreaker()
        self._retry_policy = retry_policy or RetryPolicy()
        self._deduplicator = deduplicator or RequestDeduplicator()
        self._telemetry = telemetry or RequestTelemetry()
        self._on_unauthorized = on_unauthorized
        self._timeout = timeout
        self._health_url = health_url
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        credentials: CredentialStore | None = None,
        on_unauthorized: Callable[[], None] | None = None,
    ) -> "ApiClient":
        """Build a client wired with an httpx transport from settings."""
        settings = settings or global_settings
        api_url = settings.api_url.rstrip("/")
        base_url = api_url[: -len("/api")] if api_url.endswith("/api") else api_url

        return cls(
            HttpxTransport(api_url, timeout=settings.api_timeout),
            credentials,
            breaker=CircuitBreaker(
                CircuitBreakerConfig(
                    failure_threshold=settings.circuit_failure_threshold,
                    reset_timeout=timedelta(seconds=settings.circuit_reset_timeout),
                )
            ),
            retry_policy=RetryPolicy(
                max_retries=settings.retry_max_retries,
                retry_delay=settings.retry_delay_ms / 1000,
                exponential_backoff=settings.retry_exponential,
            ),
            deduplicator=RequestDeduplicator(debug=settings.debug),
            telemetry=RequestTelemetry(debug=settings.debug),
            on_unauthorized=on_unauthorized,
            timeout=settings.api_timeout,
            health_url=f"{base_url}/health",
        )

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    # Dispatch pipeline

    async def _send(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        body: Any = None,
        authenticated: bool = True,
    ) -> Outcome[Any]:
        """One transport attempt, classified into an Outcome."""
        headers: dict[str, str] = {}
        token = self._credentials.get() if authenticated else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        identity = self._telemetry.start(method, path, body)
        try:
            response = await self._transport.send(
                TransportRequest(
                    method=method,
                    path=path,
                    query=query,
                    body=body,
                    headers=headers,
                    timeout=self._timeout,
                )
            )
        except asyncio.CancelledError as e:
            self._telemetry.finish(identity, error=e)
            raise
        except Exception as e:
            error = classify_error(e, self._timeout)
            self._telemetry.finish(identity, error=error)
            return Failure(error)

        self._telemetry.finish(identity, status=response.status)

        if response.is_success:
            return Success(response.body)

        error = api_error_from_response(response.status, response.body)
        if error.is_unauthorized and token:
            self._handle_unauthorized()
        return Failure(error)

    def _handle_unauthorized(self) -> None:
        logger.warning("Unauthorized access - clearing auth token")
        self._credentials.clear()
        if self._on_unauthorized is not None:
            self._on_unauthorized()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body: Any = None,
        retry: RetryPolicy | None = None,
        dedupe_key: str | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Run a call through the full pipeline and return the response body."""
        policy = retry or self._retry_policy

        async def attempt() -> Outcome[Any]:
            return await self._send(method, path, query, body, authenticated)

        async def guarded() -> Outcome[Any]:
            return await self._breaker.call(
                lambda: run_with_retry(attempt, policy, self._sleep)
            )

        if dedupe_key is not None:
            if authenticated:
                # Reads are only shared within one credential
                dedupe_key = f"{dedupe_key}#{_credential_tag(self._credentials.get())}"
            outcome = await self._deduplicator.dedupe(dedupe_key, guarded)
        else:
            outcome = await guarded()
        return unwrap(outcome)

    # Auth API

    async def register(self, data: RegisterRequest) -> AuthResult:
        log_user_action("Attempting registration", email=data.email)
        body = await self._request(
            "POST",
            "/auth/register",
            body=data.to_wire(),
            retry=self._retry_policy.with_retries(NO_RETRY),
            authenticated=False,
        )
        return _parse(AuthResult, _payload(body))

    async def login(self, data: LoginRequest) -> AuthResult:
        log_user_action("Attempting login", email=data.email)
        body = await self._request(
            "POST",
            "/auth/login",
            body=data.to_wire(),
            retry=self._retry_policy.with_retries(NO_RETRY),
            authenticated=False,
        )
        return _parse(AuthResult, _payload(body))

    async def get_current_user(self) -> User:
        body = await self._request(
            "GET", "/auth/me", dedupe_key=make_dedupe_key("get_current_user")
        )
        payload = _payload(body)
        return _parse(User, payload.get("user", payload))

    async def update_preferences(self, preferences: UserPreferences) -> UserPreferences:
        log_user_action("Updating user preferences", **preferences.to_wire())
        body = await self._request(
            "PATCH", "/auth/preferences", body=preferences.to_wire()
        )
        payload = _payload(body)
        return _parse(UserPreferences, payload.get("preferences", payload))

    # Task API

    async def get_tasks(self, query: TaskQuery | None = None) -> TaskList:
        query = query or TaskQuery()
        params = query.to_params()
        body = await self._request(
            "GET",
            "/todos",
            query=params or None,
            dedupe_key=make_dedupe_key("get_tasks", params),
        )
        payload = _payload(body)
        items = payload.get("todos", payload.get("tasks"))
        if not isinstance(items, list):
            raise ApiError(
                "Failed to fetch tasks", code="INVALID_RESPONSE", details=body
            )
        task_list = _parse(TaskList, {"tasks": items, "count": len(items)})
        task_list.count = payload.get("count", task_list.count)
        return task_list

    async def create_task(self, data: CreateTaskRequest) -> Task:
        log_user_action(
            "Creating task", title=data.title, created_via=data.created_via or "text"
        )
        body = await self._request("POST", "/todos", body=data.to_wire())
        return _parse_task(body)

    async def update_task(self, task_id: str, data: UpdateTaskRequest) -> Task:
        log_user_action("Updating task", id=task_id, **data.to_wire())
        body = await self._request("PUT", f"/todos/{task_id}", body=data.to_wire())
        return _parse_task(body)

    async def toggle_task(self, task_id: str) -> Task:
        log_user_action("Toggling task", id=task_id)
        body = await self._request("PATCH", f"/todos/{task_id}/toggle")
        return _parse_task(body)

    async def delete_task(self, task_id: str) -> None:
        log_user_action("Deleting task", id=task_id)
        await self._request("DELETE", f"/todos/{task_id}")

    # System API

    async def health_check(self) -> dict[str, Any]:
        body = await self._request("GET", self._health_url, authenticated=False)
        return _envelope(body)

    async def api_status(self) -> dict[str, Any]:
        body = await self._request("GET", "/status")
        return _envelope(body)

    # Diagnostics

    def get_circuit_breaker_state(self) -> CircuitState:
        return self._breaker.state

    async def monitor_health(self) -> bool:
        """Probe the health endpoint, reporting failure as False."""
        try:
            await self.health_check()
            return True
        except ServiceError as e:
            logger.warning(f"Health check failed: {e.message}")
            return False

    def get_health_status(self) -> dict[str, Any]:
        return {
            "circuit_breaker": self._breaker.get_status(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "pending_requests": self._telemetry.pending_count(),
        }

    async def close(self) -> None:
        """Cancel in-flight reads and close the transport."""
        self._deduplicator.cancel_all()
        await self._transport.close()
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _credential_tag(token: str | None) -> str:
    if not token:
        return "anonymous"
    return hashlib.sha256(token.encode()).hexdigest()[:12]


def _envelope(body: Any) -> dict[str, Any]:
    """Check the {success, ...} envelope of a 2xx response."""
    if not isinstance(body, dict):
        raise ApiError(
            "Unexpected response payload", code="INVALID_RESPONSE", details=body
        )
    if body.get("success") is False:
        raise ApiError(
            body.get("message") or "Request was not successful",
            code=body.get("code") or "INVALID_RESPONSE",
            details=body,
        )
    return body


def _payload(body: Any) -> dict[str, Any]:
    """Return the data section of an envelope ({data: {...}} or flat)."""
    envelope = _envelope(body)
    data = envelope.get("data")
    return data if isinstance(data, dict) else envelope


def _parse(model: type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ApiError(
            f"Malformed {model.__name__} in response",
            code="INVALID_RESPONSE",
            details=e.errors(),
        ) from e


def _parse_task(body: Any) -> Task:
    payload = _payload(body)
    return _parse(Task, payload.get("todo", payload.get("task", payload)))
