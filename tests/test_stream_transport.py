"""Tests for the httpx-backed Server-Sent-Events transport."""

from __future__ import annotations

import json
from typing import AsyncIterator

import httpx
import pytest

from chapterstream.streaming.errors import TransportError
from chapterstream.streaming.transport import HttpxSSETransport, encode_params, iter_sse_data


async def _lines(*lines: str) -> AsyncIterator[str]:
    for line in lines:
        yield line


async def _collect(iterator: AsyncIterator[str]) -> list[str]:
    return [item async for item in iterator]


@pytest.mark.asyncio
async def test_iter_sse_data_dispatches_on_blank_lines() -> None:
    events = await _collect(
        iter_sse_data(
            _lines(
                ": keep-alive",
                "",
                "event: message",
                "data: first",
                "",
                "data: multi",
                "data:line",
                "id: 7",
                "",
                "data: trailing",
            )
        )
    )

    assert events == ["first", "multi\nline", "trailing"]


def test_encode_params_drops_none_and_stringifies() -> None:
    assert encode_params({"resume_from": 10, "generation_id": None, "flag": True}) == {
        "resume_from": "10",
        "flag": "1",
    }


@pytest.mark.asyncio
async def test_connect_streams_data_payloads() -> None:
    seen: list[httpx.Request] = []
    body = "".join(
        f"data: {json.dumps(message)}\n\n"
        for message in (
            {"type": "start", "generation_id": "g"},
            {"type": "content", "content": "Hello world "},
            {"type": "complete", "final_word_count": 2},
        )
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = HttpxSSETransport(client, headers={"Authorization": "Bearer t"})

    async with transport.connect(
        "https://thesis.test/stream", {"generation_type": "section", "resume_from": 12, "generation_id": None}
    ) as events:
        payloads = [json.loads(item) async for item in events]

    await client.aclose()
    assert [payload["type"] for payload in payloads] == ["start", "content", "complete"]
    request = seen[0]
    assert request.headers["accept"] == "text/event-stream"
    assert request.headers["authorization"] == "Bearer t"
    assert request.url.params["resume_from"] == "12"
    assert request.url.params["generation_type"] == "section"
    assert "generation_id" not in request.url.params


@pytest.mark.asyncio
async def test_http_error_status_raises_transport_error() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    transport = HttpxSSETransport(client)

    with pytest.raises(TransportError) as excinfo:
        async with transport.connect("https://thesis.test/stream", {}):
            pass

    await client.aclose()
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_connection_failure_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = HttpxSSETransport(client)

    with pytest.raises(TransportError, match="connection refused"):
        async with transport.connect("https://thesis.test/stream", {}):
            pass

    await client.aclose()
