"""Rate-limited rendering of streamed chunks."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class ChunkRenderBatcher:
    """Throttles the render callback while chunks keep arriving.

    Chunks are counted as they are applied to the owner's buffer. The render
    callback fires as soon as ``batch_size`` chunks are pending or
    ``interval`` seconds have passed since the previous render, whichever
    comes first; the interval case is driven by a timer. The callback takes no
    arguments and is expected to read the owner's buffer at flush time, so a
    render never shows content older than the latest applied chunk.
    """

    def __init__(
        self,
        render: Callable[[], None],
        *,
        batch_size: int = 3,
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._render = render
        self._batch_size = max(1, int(batch_size))
        self._interval = max(0.0, float(interval))
        self._clock = clock
        self._scheduler = scheduler or loop_scheduler
        self._pending = 0
        self._last_render: float | None = None
        self._timer: TimerHandle | None = None
        self._renders = 0

    @property
    def has_pending(self) -> bool:
        return self._pending > 0

    @property
    def pending_chunks(self) -> int:
        return self._pending

    @property
    def render_count(self) -> int:
        return self._renders

    def add(self) -> None:
        """Record one applied chunk and render or schedule a render."""

        self._pending += 1
        if self._pending >= self._batch_size:
            self.flush()
            return
        if self._timer is not None:
            return
        delay = max(0.0, self._interval - self._elapsed())
        self._timer = self._scheduler(delay, self._on_timer)

    def flush(self) -> bool:
        """Render synchronously when chunks are pending. Returns ``True`` if rendered."""

        self._cancel_timer()
        if not self._pending:
            return False
        self._pending = 0
        self._last_render = self._clock()
        self._renders += 1
        self._render()
        return True

    def cancel(self) -> None:
        """Drop the scheduled render without flushing."""

        self._cancel_timer()

    def reset(self) -> None:
        self._cancel_timer()
        self._pending = 0
        self._last_render = None

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _elapsed(self) -> float:
        if self._last_render is None:
            return float("inf")
        return self._clock() - self._last_render

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


__all__ = ["ChunkRenderBatcher", "Scheduler", "TimerHandle", "loop_scheduler"]
