"""Tests for the backend HTTP client."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from chapterstream.services.api import (
    ApiError,
    ClientSettings,
    CollectionInProgressError,
    GenerationApiClient,
)


def make_client(
    handler: Callable[[httpx.Request], httpx.Response], **settings: Any
) -> tuple[GenerationApiClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = {"base_url": "https://thesis.test/", "api_token": "tok", "retry_min_seconds": 0.0, **settings}
    return GenerationApiClient(ClientSettings(**options), client=http), http


# =============================================================================
# Requests
# =============================================================================


def test_stream_url_joins_base_without_double_slash() -> None:
    api, _ = make_client(lambda request: httpx.Response(200))

    assert api.stream_url("my-thesis", 3) == "https://thesis.test/projects/my-thesis/chapters/3/stream"


@pytest.mark.asyncio
async def test_fetch_balance_sends_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"balance": {"balance": 1200}})

    api, http = make_client(handler, default_headers={"X-Client": "cli"})
    payload = await api.fetch_balance()
    await http.aclose()

    assert payload == {"balance": {"balance": 1200}}
    assert seen[0].url.path == "/api/balance"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert seen[0].headers["X-Client"] == "cli"
    assert seen[0].headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_record_word_usage_posts_payload_once() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(500, json={"message": "boom"})

    api, http = make_client(handler, max_retries=3)
    with pytest.raises(ApiError) as excinfo:
        await api.record_word_usage(420, "Chapter generation (2)", "chapter", 9)
    await http.aclose()

    assert len(bodies) == 1
    assert bodies[0] == {
        "words": 420,
        "description": "Chapter generation (2)",
        "reference_type": "chapter",
        "reference_id": 9,
    }
    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "boom"


@pytest.mark.asyncio
async def test_reads_retry_on_server_errors() -> None:
    responses = [httpx.Response(503), httpx.Response(200, json={"status": "processing", "progress": 40})]
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return responses.pop(0)

    api, http = make_client(handler, max_retries=3)
    payload = await api.bulk_generation_status("demo")
    await http.aclose()

    assert payload["progress"] == 40
    assert calls == ["/api/projects/demo/bulk-generate/status"] * 2


@pytest.mark.asyncio
async def test_reads_do_not_retry_client_errors() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(404, json={"error": "missing"})

    api, http = make_client(handler, max_retries=3)
    with pytest.raises(ApiError, match="missing"):
        await api.paper_collection_status("demo")
    await http.aclose()

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_start_paper_collection_conflict_raises_in_progress() -> None:
    api, http = make_client(lambda request: httpx.Response(409, json={"message": "Already collecting"}))

    with pytest.raises(CollectionInProgressError) as excinfo:
        await api.start_paper_collection("demo")
    await http.aclose()

    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_non_object_json_is_wrapped_and_invalid_json_raises() -> None:
    bodies = [httpx.Response(200, json=[1, 2]), httpx.Response(200, content=b"<html>")]
    api, http = make_client(lambda request: bodies.pop(0))

    assert await api.fetch_balance() == {"data": [1, 2]}
    with pytest.raises(ApiError, match="Invalid JSON"):
        await api.fetch_balance()
    await http.aclose()


@pytest.mark.asyncio
async def test_ping_raises_on_error_status() -> None:
    api, http = make_client(lambda request: httpx.Response(502))

    with pytest.raises(ApiError):
        await api.ping()
    await http.aclose()
