"""Shared fixtures: an httpx-backed transport driven by in-memory handlers."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from chatstream.transport import HttpxTransport

NDJSON_HEADERS = {"content-type": "application/x-ndjson"}


async def byte_stream(chunks, *, hang: bool = False):
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk
    if hang:
        # Never finishes on its own; only cancellation ends the read
        await asyncio.Event().wait()


@pytest.fixture
def make_transport():
    """Build an HttpxTransport whose requests are answered by ``handler``."""
    def factory(handler) -> HttpxTransport:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://test"
        )
        return HttpxTransport(client)
    return factory


@pytest.fixture
def stream_handler():
    """
    Build a MockTransport handler serving ``chunks`` as a chunked body.

    Returns (handler, requests); every request received is appended to
    ``requests``.
    """
    def factory(chunks=(), *, status: int = 200, hang: bool = False, content=None):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if content is not None:
                return httpx.Response(status, content=content)
            return httpx.Response(
                status,
                headers=NDJSON_HEADERS,
                content=byte_stream(list(chunks), hang=hang),
            )

        return handler, requests
    return factory
