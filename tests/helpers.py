"""Shared test helpers and stub classes.

This module contains reusable fakes used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

from chapterstream.streaming.types import StreamCallbacks, StreamProgress

CLOSE = object()
"""Sentinel that ends a fake connection as if the server closed the stream."""


def words(count: int, offset: int = 0) -> str:
    """Return ``count`` distinct words followed by a trailing space."""

    return "".join(f"word{index} " for index in range(offset, offset + count))


def content(text: str, **extra: Any) -> dict[str, Any]:
    return {"type": "content", "content": text, **extra}


class FakeConnection:
    """One scripted connection; items are delivered in order, then it idles."""

    def __init__(self, script: Iterable[Any]) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        for item in script:
            self.push(item)

    def push(self, item: Any) -> None:
        self.queue.put_nowait(item)

    async def events(self) -> AsyncIterator[str]:
        while True:
            item = await self.queue.get()
            if item is CLOSE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item if isinstance(item, str) else json.dumps(item)


class FakeTransport:
    """Transport whose connections replay scripts, one script per connect.

    A script is a list of messages (dicts are JSON encoded), an exception
    raised when the connection opens, or a callable receiving the request
    params and returning a list. Once scripts run out, connections stay open
    without sending anything.
    """

    def __init__(self, *scripts: Any) -> None:
        self._scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []
        self.connections: list[FakeConnection] = []

    @contextlib.asynccontextmanager
    async def connect(self, url: str, params: Mapping[str, Any]) -> AsyncIterator[AsyncIterator[str]]:
        self.calls.append({"url": url, **params})
        script: Any = self._scripts.pop(0) if self._scripts else []
        if isinstance(script, BaseException):
            raise script
        if callable(script):
            script = script(params)
        connection = FakeConnection(script)
        self.connections.append(connection)
        try:
            yield connection.events()
        finally:
            connection.closed = True


class RecordingSleep:
    """Drop-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class CallbackRecorder:
    def __init__(self) -> None:
        self.contents: list[tuple[str, int]] = []
        self.progress: list[StreamProgress] = []
        self.completed: list[tuple[str, int]] = []
        self.errors: list[Any] = []
        self.reconnecting: list[tuple[int, int]] = []
        self.autosaves: list[int] = []

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_content=lambda text, count: self.contents.append((text, count)),
            on_progress=self.progress.append,
            on_complete=lambda text, count: self.completed.append((text, count)),
            on_error=self.errors.append,
            on_reconnecting=lambda attempt, maximum: self.reconnecting.append((attempt, maximum)),
            on_autosave=self.autosaves.append,
        )

    def total_calls(self) -> int:
        return sum(
            len(items)
            for items in (
                self.contents,
                self.progress,
                self.completed,
                self.errors,
                self.reconnecting,
                self.autosaves,
            )
        )


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds or fail after ``timeout``."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


class FakeApi:
    """In-memory stand-in for :class:`GenerationApiClient`.

    ``paper_statuses`` and ``bulk_statuses`` are served in order; the last one
    repeats. Exceptions in either list are raised instead of returned.
    """

    def __init__(
        self,
        *,
        paper_statuses: Iterable[Any] | None = None,
        bulk_statuses: Iterable[Any] | None = None,
        start_error: BaseException | None = None,
        balance: int = 10_000,
    ) -> None:
        self.paper_statuses = list(
            paper_statuses
            if paper_statuses is not None
            else [{"success": True, "data": {"status": "completed", "papers_count": 12, "sources_completed": ["arxiv"]}}]
        )
        self.bulk_statuses = list(bulk_statuses or [])
        self.start_error = start_error
        self.balance = balance
        self.started: list[str] = []
        self.usage: list[dict[str, Any]] = []
        self.pings = 0
        self.balance_fetches = 0

    def stream_url(self, project: str, chapter: int | str) -> str:
        return f"https://thesis.test/projects/{project}/chapters/{chapter}/stream"

    async def ping(self) -> None:
        self.pings += 1

    async def start_paper_collection(self, project: str) -> dict[str, Any]:
        self.started.append(project)
        if self.start_error is not None:
            raise self.start_error
        return {"success": True}

    async def paper_collection_status(self, project: str) -> dict[str, Any]:
        return self._next(self.paper_statuses)

    async def record_word_usage(
        self, words: int, description: str, reference_type: str, reference_id: Any = None
    ) -> dict[str, Any]:
        self.usage.append(
            {
                "words": words,
                "description": description,
                "reference_type": reference_type,
                "reference_id": reference_id,
            }
        )
        self.balance -= words
        return {"success": True}

    async def fetch_balance(self) -> dict[str, Any]:
        self.balance_fetches += 1
        return {"balance": {"balance": self.balance, "percentage_remaining": 80.0}}

    async def bulk_generation_status(self, project: str) -> dict[str, Any]:
        return self._next(self.bulk_statuses)

    @staticmethod
    def _next(items: list[Any]) -> Any:
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, BaseException):
            raise item
        return item
