"""Server-push text-event transports consumed by the stream session."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncContextManager, AsyncIterable, AsyncIterator, Mapping, Protocol

import httpx

from .errors import TransportError

LOGGER = logging.getLogger(__name__)

_STREAM_HEADERS = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}


class StreamTransport(Protocol):
    """Opens one connection to a push endpoint.

    Entering the returned context manager corresponds to the transport being
    open; it raises :class:`TransportError` when the connection cannot be
    established. The yielded iterator produces the raw ``data`` payload of
    each event in arrival order and finishes when the server closes the
    stream. Failures mid-stream surface as :class:`TransportError`.
    """

    def connect(
        self, url: str, params: Mapping[str, Any]
    ) -> AsyncContextManager[AsyncIterator[str]]:
        ...


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield ``data`` payloads from Server-Sent-Events lines.

    Multi-line ``data`` fields are joined with newlines and dispatched at the
    blank line terminating the event. Comment lines (heartbeat pings sent as
    ``:``) and the ``event``/``id``/``retry`` fields are ignored.
    """

    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)


def encode_params(params: Mapping[str, Any]) -> dict[str, str]:
    """Drop ``None`` values and stringify the rest for a query string."""

    encoded: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "1" if value else "0"
        else:
            encoded[key] = str(value)
    return encoded


class HttpxSSETransport:
    """SSE transport backed by :class:`httpx.AsyncClient` streaming responses."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, read=None)
        )
        self._headers = dict(_STREAM_HEADERS)
        if headers:
            self._headers.update(headers)

    @contextlib.asynccontextmanager
    async def connect(self, url: str, params: Mapping[str, Any]) -> AsyncIterator[AsyncIterator[str]]:
        query = encode_params(params)
        LOGGER.debug("Opening event stream %s params=%s", url, sorted(query))
        try:
            async with self._client.stream("GET", url, params=query, headers=self._headers) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"Stream request failed with HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                yield iter_sse_data(response.aiter_lines())
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream connection error: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["StreamTransport", "HttpxSSETransport", "iter_sse_data", "encode_params"]
