"""
HTTP transport for the task API.

The transport only moves bytes: it returns {status, body} for any response
(2xx or not) and lets httpx exceptions escape. Classification into the
client error taxonomy happens in the API client.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from loguru import logger


@dataclass
class TransportRequest:
    """One HTTP-shaped call."""

    method: str
    path: str
    query: dict[str, Any] | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0


@dataclass
class TransportResponse:
    """Raw response: status code and parsed body."""

    status: int
    body: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    async def send(self, request: TransportRequest) -> TransportResponse: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """
    Transport backed by httpx.AsyncClient.

    Usage:
        async with HttpxTransport("http://localhost:5000/api") as transport:
            response = await transport.send(TransportRequest("GET", "/todos"))
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = client

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Content-Type": "application/json"},
                follow_redirects=True,
            )
        return self._http_client

    async def send(self, request: TransportRequest) -> TransportResponse:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        response = await client.request(
            method=request.method,
            url=self._resolve(request.path),
            params=request.query,
            headers=request.headers,
            json=request.body,
            timeout=request.timeout,
        )
        return TransportResponse(status=response.status_code, body=_parse_body(response))

    def _resolve(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("HttpxTransport closed")

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
