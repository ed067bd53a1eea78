from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import aiohttp

logger = logging.getLogger("regdesk.client")


class DeliveryError(Exception):
    """Raised when an event could not be handed to the ingestion endpoint.

    ``retryable`` is False when the server rejected the payload itself, so
    sending it again cannot succeed.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


# Client errors that may clear up on their own.
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


class Transport(Protocol):
    async def post(self, endpoint: str, payload: dict[str, Any]) -> None: ...

    async def beacon(self, endpoint: str, payload: dict[str, Any]) -> None: ...


class AiohttpTransport:
    """POSTs JSON events to ``<base_url>/<endpoint>`` over a shared client session."""

    def __init__(self, base_url: str, timeout: float = 10.0, beacon_timeout: float = 2.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.beacon_timeout = beacon_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _send(self, endpoint: str, payload: dict[str, Any], timeout: float) -> None:
        url = self.url_for(endpoint)
        try:
            async with self._get_session().post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status >= 400:
                    retryable = response.status >= 500 or response.status in RETRYABLE_CLIENT_STATUSES
                    raise DeliveryError(f"{url} answered HTTP {response.status}", retryable=retryable)
        except asyncio.TimeoutError as exc:
            raise DeliveryError(f"{url} timed out") from exc
        except aiohttp.ClientError as exc:
            raise DeliveryError(f"{url} unreachable: {exc}") from exc

    async def post(self, endpoint: str, payload: dict[str, Any]) -> None:
        await self._send(endpoint, payload, self.timeout)

    async def beacon(self, endpoint: str, payload: dict[str, Any]) -> None:
        await self._send(endpoint, payload, self.beacon_timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
