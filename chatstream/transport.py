"""
Transport boundary for streaming sessions.

A transport opens one request and yields a ``TransportResponse`` whose body is
an async iterator of raw byte chunks. Reading from it is cancelled by
cancelling the task that iterates it, so every read has a cancellation path.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .logging_utils import StreamErrorHandler

HTTP_NO_CONTENT = 204
ERROR_TEXT_LIMIT = 500


@dataclass(frozen=True)
class TransportResponse:
    """Status line plus a readable body stream."""
    status: int
    reason: str = ""
    body: AsyncIterator[bytes] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    error_text: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """Anything that can open a streaming request."""

    def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: dict[str, Any] | None,
    ) -> AbstractAsyncContextManager[TransportResponse]:
        ...


class HttpxTransport:
    """Transport on top of ``httpx.AsyncClient.stream``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str = "",
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
    ) -> None:
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout or httpx.Timeout(10.0, read=None),
            limits=limits or httpx.Limits(),
        )

    @classmethod
    def from_config(cls, transport_config: dict[str, Any]) -> HttpxTransport:
        """Build from the validated ``transport`` configuration section."""
        timeout = httpx.Timeout(
            connect=transport_config["connect_timeout"],
            read=transport_config["read_timeout"],
            write=transport_config["write_timeout"],
            pool=transport_config["pool_timeout"],
        )
        limits = httpx.Limits(max_connections=transport_config["max_connections"])
        return cls(
            base_url=transport_config.get("base_url") or "",
            timeout=timeout,
            limits=limits,
        )

    @asynccontextmanager
    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: dict[str, Any] | None,
    ) -> AsyncIterator[TransportResponse]:
        """Open the stream; httpx failures surface as ``TransportError``."""
        try:
            async with self.client.stream(
                method, url, headers=dict(headers), json=body
            ) as response:
                error_text = None
                if response.is_error:
                    raw = await response.aread()
                    error_text = raw[:ERROR_TEXT_LIMIT].decode(errors="replace")

                has_body = (
                    response.status_code != HTTP_NO_CONTENT and not response.is_error
                )
                yield TransportResponse(
                    status=response.status_code,
                    reason=response.reason_phrase,
                    body=response.aiter_bytes() if has_body else None,
                    headers=response.headers,
                    error_text=error_text,
                )
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise StreamErrorHandler.create_transport_error(
                e, "http_stream", context={"method": method, "url": url}
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
