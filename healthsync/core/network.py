"""
Network client abstraction.

Everything that leaves the device goes through a ``NetworkClient`` so the
cache engine and the queue replayer can be driven by a fake in tests.
``AiohttpNetworkClient`` is the production implementation.

Failure mapping:
- connection errors and timeouts raise NetworkError
- HTTP 5xx raises ServiceUnavailableError (counts against the circuit)
- HTTP 4xx is returned as a normal Response; callers decide what it means
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin, urlsplit

import aiohttp

from healthsync.errors import NetworkError, ServiceUnavailableError
from healthsync.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Request:
    """Outbound request.

    Attributes:
        url: Absolute URL or path relative to the client's base URL
        method: HTTP method
        resource_hint: Host hint about the resource ("image", "navigate", ...)
        headers: Request headers
        body: JSON-serializable payload for mutating requests
    """

    url: str
    method: str = "GET"
    resource_hint: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def host(self) -> str:
        return (urlsplit(self.url).hostname or "").lower()


@dataclass
class Response:
    """Inbound response.

    ``body`` is a decoded JSON value for JSON content, ``str`` for text and
    ``bytes`` otherwise. Header names are lowercase.
    """

    status: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type

    @property
    def content_length(self) -> int | None:
        value = self.headers.get("content-length")
        if value is None:
            if isinstance(self.body, bytes | str):
                return len(self.body)
            return None
        try:
            return int(value)
        except ValueError:
            return None


class NetworkClient(ABC):
    """Async HTTP client interface."""

    @abstractmethod
    async def fetch(self, request: Request, timeout_ms: float | None = None) -> Response:
        """Perform the request.

        Raises:
            NetworkError: Connectivity loss or timeout
            ServiceUnavailableError: Upstream answered 5xx
        """

    async def close(self) -> None:
        """Release connections."""


def service_for(request: Request) -> str:
    """Dependency name a request is attributed to for circuit breaking."""
    url = request.url.lower()
    if "gemini" in url or "googleapis" in url or "/ai/" in url:
        return "ai"
    if "/api/" in url:
        return "api"
    return "network"


class AiohttpNetworkClient(NetworkClient):
    """
    aiohttp-backed network client.

    Usage:
        async with AiohttpNetworkClient(base_url="https://app.example") as client:
            response = await client.fetch(Request("/api/moods"))
    """

    def __init__(self, base_url: str | None = None, default_timeout_ms: float = 10000):
        self.base_url = base_url
        self.default_timeout_ms = default_timeout_ms
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> AiohttpNetworkClient:
        await self._ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _resolve(self, url: str) -> str:
        if self.base_url and not urlsplit(url).scheme:
            return urljoin(self.base_url, url)
        return url

    async def fetch(self, request: Request, timeout_ms: float | None = None) -> Response:
        session = await self._ensure_session()
        url = self._resolve(request.url)
        timeout = aiohttp.ClientTimeout(
            total=(timeout_ms or self.default_timeout_ms) / 1000.0
        )
        kwargs: dict[str, Any] = {"headers": request.headers, "timeout": timeout}
        if request.body is not None:
            kwargs["json"] = request.body

        try:
            async with session.request(request.method, url, **kwargs) as resp:
                headers = {k.lower(): v for k, v in resp.headers.items()}
                content_type = headers.get("content-type", "")
                if "application/json" in content_type:
                    body: Any = await resp.json(content_type=None)
                elif content_type.startswith("text/"):
                    body = await resp.text()
                else:
                    body = await resp.read()
                status = resp.status
        except TimeoutError as e:
            raise NetworkError(
                f"{request.method} {url} timed out", context={"url": url}
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(
                f"{request.method} {url} failed: {e}", context={"url": url}
            ) from e

        if status >= 500:
            logger.warning("upstream_error", url=url, status=status)
            raise ServiceUnavailableError(
                service_for(request),
                f"{request.method} {url} returned {status}",
                status=status,
                context={"url": url, "body": body if not isinstance(body, bytes) else None},
            )

        return Response(status=status, body=body, headers=headers)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


async def is_reachable(client: NetworkClient, url: str, timeout_ms: float = 3000) -> bool:
    """Cheap connectivity probe: any HTTP answer counts as reachable."""
    try:
        await client.fetch(Request(url, method="HEAD"), timeout_ms=timeout_ms)
    except NetworkError:
        return False
    except ServiceUnavailableError:
        return True
    return True
