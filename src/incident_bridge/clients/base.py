"""Shared HTTP plumbing for the platform clients."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from incident_bridge.errors.exceptions import PlatformError

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Read-through cache whose entries expire ``ttl_seconds`` after being set.

    Misses (``None`` values) are cached too, so a name that does not exist is
    not looked up again until the entry expires.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Any, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Any, default: Any = _MISSING) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            stored_at, value = entry
            if self._clock() - stored_at < self.ttl_seconds:
                self.hits += 1
                return value
            del self._entries[key]
        self.misses += 1
        return default

    def set(self, key: Any, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def __contains__(self, key: Any) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() - entry[0] < self.ttl_seconds

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }


class PlatformClient:
    """Thin async REST client with bounded exponential-backoff retries.

    Retries 5xx responses and transport failures (connection reset, DNS
    failure, timeouts). Any other error response raises ``PlatformError``
    immediately.
    """

    platform: str = "unknown"

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | None = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                **(headers or {}),
            },
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying transient failures.

        Raises:
            PlatformError: on a non-retryable error response, or once the
                retry budget is spent.
        """
        delay = self.retry_delay
        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                if attempt < self.retry_attempts:
                    logger.warning(
                        "Retrying %s request (attempt %d): %s",
                        self.platform, attempt + 1, exc,
                        extra={"method": method, "url": url},
                    )
                    await self._sleep(delay)
                    delay *= 2
                    continue
                raise PlatformError(self.platform, f"{method} {url} failed: {exc}") from exc

            if response.status_code >= 500 and attempt < self.retry_attempts:
                logger.warning(
                    "Retrying %s request after HTTP %s (attempt %d)",
                    self.platform, response.status_code, attempt + 1,
                    extra={"method": method, "url": url},
                )
                await self._sleep(delay)
                delay *= 2
                continue

            if response.is_error:
                raise PlatformError(
                    self.platform,
                    f"{method} {url} returned {response.status_code}",
                    http_status=response.status_code,
                    details={
                        "platform": self.platform,
                        "http_status": response.status_code,
                        "body": response.text[:500],
                    },
                )
            return response

        raise PlatformError(self.platform, f"{method} {url} exhausted retries")

    async def get_json(self, url: str, **kwargs) -> Any:
        response = await self.request("GET", url, **kwargs)
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
