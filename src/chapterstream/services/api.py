"""Async HTTP client for the thesis backend's generation endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..streaming.transport import HttpxSSETransport

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the backend client."""

    base_url: str
    api_token: str = ""
    request_timeout: float | None = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class ApiError(Exception):
    """Raised when the backend answers with an error status or bad payload."""

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    @classmethod
    def from_response(cls, response: httpx.Response) -> ApiError:
        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        message = None
        if isinstance(payload, Mapping):
            message = payload.get("message") or payload.get("error")
        text = message or f"HTTP {response.status_code} from {response.request.url.path}"
        return cls(str(text), status_code=response.status_code, payload=payload)


class CollectionInProgressError(ApiError):
    """Raised when paper collection is already running for the project."""


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.is_server_error


class GenerationApiClient:
    """Thin wrapper over :class:`httpx.AsyncClient` with retry semantics.

    Idempotent reads are retried with exponential backoff on transport errors
    and 5xx responses. Writes (starting collection, recording usage) are sent
    once.
    """

    def __init__(self, settings: ClientSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout)
        self._base_url = settings.base_url.rstrip("/")

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------
    def stream_url(self, project: str, chapter: int | str) -> str:
        return self._url(f"/projects/{project}/chapters/{chapter}/stream")

    def build_stream_transport(self) -> HttpxSSETransport:
        """Return an SSE transport sharing this client's connection pool."""

        return HttpxSSETransport(self._client, headers=self._auth_headers())

    async def ping(self) -> None:
        """Lightweight reachability check used by the connection probe."""

        response = await self._client.head(self._url("/api/ping"), headers=self._headers())
        if response.status_code >= 400:
            raise ApiError.from_response(response)

    async def start_paper_collection(self, project: str) -> Dict[str, Any]:
        try:
            return await self._request(
                "POST", f"/api/projects/{project}/paper-collection/start", retry=False
            )
        except ApiError as exc:
            if exc.status_code == 409:
                raise CollectionInProgressError(
                    str(exc), status_code=exc.status_code, payload=exc.payload
                ) from exc
            raise

    async def paper_collection_status(self, project: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/projects/{project}/paper-collection/status")

    async def record_word_usage(
        self,
        words: int,
        description: str,
        reference_type: str,
        reference_id: int | str | None = None,
    ) -> Dict[str, Any]:
        payload = {
            "words": words,
            "description": description,
            "reference_type": reference_type,
            "reference_id": reference_id,
        }
        return await self._request("POST", "/api/words/record-usage", json=payload, retry=False)

    async def fetch_balance(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/balance")

    async def bulk_generation_status(self, project: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/projects/{project}/bulk-generate/status")

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this instance created it."""

        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        retry: bool = True,
    ) -> Dict[str, Any]:
        if not retry:
            return await self._send(method, path, json=json)
        result: Dict[str, Any] = {}
        async for attempt in self._retrying():
            with attempt:
                result = await self._send(method, path, json=json)
        return result

    async def _send(self, method: str, path: str, *, json: Mapping[str, Any] | None) -> Dict[str, Any]:
        url = self._url(path)
        if self._settings.debug_logging:
            LOGGER.debug("%s %s payload=%s", method, url, json)
        response = await self._client.request(method, url, json=json, headers=self._headers())
        if response.status_code >= 400:
            raise ApiError.from_response(response)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError(
                f"Invalid JSON from {path}", status_code=response.status_code, payload=response.text
            ) from exc
        if isinstance(data, dict):
            return data
        return {"data": data}

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(httpx.TransportError) | retry_if_exception(_is_retryable),
        )

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _auth_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        if self._settings.api_token:
            headers["Authorization"] = f"Bearer {self._settings.api_token}"
        return headers

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", **self._auth_headers()}


__all__ = [
    "ApiError",
    "ClientSettings",
    "CollectionInProgressError",
    "GenerationApiClient",
]
