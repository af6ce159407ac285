"""Interfaces of the systems node executors call out to.

The record store, script sandbox and connector gateway are supplied by the
host application. Outbound HTTP has a default ``httpx`` implementation.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


# ─── Records ─────────────────────────────────────────────────────────────


class RecordStore(Protocol):
    """Create/read/update/delete records of a business object."""

    async def create(self, object_name: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a record; returns it including its id."""

    async def update(self, object_name: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Patch a record; returns the updated record."""

    async def delete(self, object_name: str, record_id: str) -> bool:
        """Delete a record; returns False when it did not exist."""

    async def get(self, object_name: str, record_id: str) -> Optional[dict[str, Any]]:
        """Fetch one record, or None."""


# ─── HTTP ────────────────────────────────────────────────────────────────


@dataclass
class HttpResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


class HttpTransportError(Exception):
    """The request never produced a response (DNS, connect, read timeout, ...)."""


class HttpTransport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> HttpResponse:
        """Send one request. Raises HttpTransportError when no response arrived."""


class HttpxTransport:
    """Default outbound HTTP transport on top of ``httpx.AsyncClient``."""

    def __init__(self, default_timeout_ms: int = 30_000, client: Optional[httpx.AsyncClient] = None):
        self._default_timeout_ms = default_timeout_ms
        self._client = client

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> HttpResponse:
        timeout = (timeout_ms or self._default_timeout_ms) / 1000
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        try:
            if self._client is not None:
                response = await self._client.request(method.upper(), url, timeout=timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(method.upper(), url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("http_transport_error", method=method, url=url, error=str(exc))
            raise HttpTransportError(str(exc) or type(exc).__name__) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        return HttpResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=payload,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


# ─── Scripts ─────────────────────────────────────────────────────────────


@dataclass
class ScriptResult:
    output: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)


class ScriptError(Exception):
    """The sandboxed script raised or was rejected."""


class ScriptSandbox(Protocol):
    async def run(
        self, source: str, variables: dict[str, Any], language: str = "javascript", timeout_ms: Optional[int] = None
    ) -> ScriptResult:
        """Run ``source`` isolated from the engine. Raises ScriptError on failure."""


# ─── Connectors ──────────────────────────────────────────────────────────


class ConnectorError(Exception):
    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ConnectorGateway(Protocol):
    async def invoke(self, connector: str, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Call one action of a configured connector. Raises ConnectorError on failure."""
