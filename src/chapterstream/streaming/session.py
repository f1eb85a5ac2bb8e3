"""State machine driving one resumable generation stream."""

from __future__ import annotations

import asyncio
import json
import logging
import random as _random
import time
from dataclasses import replace
from functools import partial
from typing import Any, Awaitable, Callable, Mapping

from ..core.words import count_words, reconcile_word_count
from .batcher import ChunkRenderBatcher, Scheduler, TimerHandle, loop_scheduler
from .connectivity import ConnectionQuality, ConnectionQualityProbe, NetworkMonitor, ProbeResult
from .errors import ErrorCode, InvalidTransitionError, SessionBusyError, StreamingError, TransportError
from .reconnect import ReconnectPolicy
from .transport import StreamTransport
from .types import (
    StreamCallbacks,
    StreamConfig,
    StreamError,
    StreamProgress,
    StreamStatus,
    can_transition,
)

LOGGER = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]

_ACTIVE_STATUSES = frozenset(
    {
        StreamStatus.CHECKING_CONNECTION,
        StreamStatus.CONNECTING,
        StreamStatus.STREAMING,
        StreamStatus.PAUSED,
        StreamStatus.RECONNECTING,
    }
)


class StreamSession:
    """Owns one generation attempt sequence: connect, stream, reconnect, finish.

    Content is appended to :attr:`buffer` in arrival order as soon as it is
    received; the ``on_content`` callback is rate limited through a
    :class:`ChunkRenderBatcher`. Transport failures and heartbeat silence are
    retried with exponential backoff, resuming from the current word count so
    the server never resends content the session already holds. Server
    declared errors are always reported through ``on_error``.

    Every connection is tagged with an epoch; events from a connection whose
    epoch is no longer current (after ``stop()``, ``pause()``, a reconnect, or
    ``aclose()``) are dropped without touching state or invoking callbacks.

    Args:
        transport: Push transport used to open each connection.
        callbacks: Optional hooks for content, progress, completion and errors.
        config: Overrides merged over :class:`StreamConfig` defaults.
        network: Runtime connectivity source, defaults to always online.
        probe: Pre-flight connection check; built from ``network`` when omitted.
        sleep: Coroutine used for backoff waits.
        random: Jitter source returning values in ``[0, 1)``.
        clock: Monotonic clock for render throttling.
        scheduler: ``(delay, callback) -> handle`` timer factory.
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        callbacks: StreamCallbacks | None = None,
        config: StreamConfig | Mapping[str, Any] | None = None,
        network: NetworkMonitor | None = None,
        probe: ConnectionQualityProbe | None = None,
        sleep: SleepFunc = asyncio.sleep,
        random: Callable[[], float] = _random.random,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._transport = transport
        self._callbacks = callbacks or StreamCallbacks()
        self._config = StreamConfig.merged(config)
        self._network = network or NetworkMonitor()
        self._probe = probe or ConnectionQualityProbe(
            self._network, timeout=self._config.connection_check_timeout
        )
        self._policy = ReconnectPolicy(self._config, random=random)
        self._sleep = sleep
        self._scheduler = scheduler or loop_scheduler
        self._batcher = ChunkRenderBatcher(
            self._render,
            batch_size=self._config.chunk_batch_size,
            interval=self._config.render_interval,
            clock=clock,
            scheduler=self._scheduler,
        )

        self._status = StreamStatus.IDLE
        self._buffer = ""
        self._word_count = 0
        self._server_ack_word_count = 0
        self._generation_id: str | None = None
        self._reconnect_attempts = 0
        self._progress = StreamProgress()
        self._errors: list[StreamError] = []
        self._last_probe: ProbeResult | None = None

        self._url: str | None = None
        self._params: dict[str, Any] = {}
        self._epoch = 0
        self._destroyed = False
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat: TimerHandle | None = None
        self._settled = asyncio.Event()
        self._settled.set()

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------
    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def word_count(self) -> int:
        return self._word_count

    @property
    def server_ack_word_count(self) -> int:
        return self._server_ack_word_count

    @property
    def generation_id(self) -> str | None:
        return self._generation_id

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def progress(self) -> StreamProgress:
        return self._progress

    @property
    def errors(self) -> tuple[StreamError, ...]:
        return tuple(self._errors)

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def last_probe(self) -> ProbeResult | None:
        return self._last_probe

    @property
    def is_streaming(self) -> bool:
        return self._status is StreamStatus.STREAMING

    @property
    def is_connecting(self) -> bool:
        return self._status in (StreamStatus.CHECKING_CONNECTION, StreamStatus.CONNECTING)

    @property
    def is_reconnecting(self) -> bool:
        return self._status is StreamStatus.RECONNECTING

    @property
    def has_error(self) -> bool:
        return self._status is StreamStatus.ERROR

    @property
    def is_complete(self) -> bool:
        return self._status is StreamStatus.COMPLETE

    @property
    def is_active(self) -> bool:
        return self._status in _ACTIVE_STATUSES

    @property
    def can_retry(self) -> bool:
        """Return ``True`` while the session is in error with attempts remaining."""

        return self.has_error and self._policy.can_attempt(self._reconnect_attempts)

    @property
    def safe_word_count(self) -> int:
        """Best-known count of words that survive a terminal failure.

        The server acknowledgement wins; otherwise the local count is reported
        only when it is substantial.
        """

        if self._server_ack_word_count > 0:
            return self._server_ack_word_count
        if self._word_count > self._config.substantial_word_count:
            return self._word_count
        return 0

    def get_content(self) -> str:
        return self._buffer

    def get_word_count(self) -> int:
        return self._word_count

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    async def start(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        target_word_count: int = 0,
        *,
        initial_content: str = "",
    ) -> bool:
        """Probe connectivity and open the stream.

        ``initial_content`` seeds the buffer with text the server already
        holds, so the first connection resumes after it.

        Returns ``True`` once the first connection attempt has been launched,
        ``False`` when the session ended in ``error`` because the runtime is
        offline or was stopped during the probe. Use :meth:`wait` to await the
        final outcome.

        Raises:
            SessionBusyError: If the session is already active.
            StreamingError: If the session has been closed.
        """

        if self._destroyed:
            raise StreamingError("session_closed", "Stream session has been closed")
        if self.is_active:
            raise SessionBusyError(self._status.value)

        self.reset()
        if initial_content:
            self._buffer = initial_content
            self._word_count = count_words(initial_content)
        self._url = url
        self._params = dict(params or {})
        self._progress = replace(self._progress, target_word_count=max(0, int(target_word_count)))
        self._settled.clear()
        self._set_status(StreamStatus.CHECKING_CONNECTION)
        self._update_progress("Connecting", "Checking connection...")
        epoch = self._epoch

        connection_ok = await self.check_connection_quality()
        if epoch != self._epoch or self._status is not StreamStatus.CHECKING_CONNECTION:
            LOGGER.debug("Session stopped during connection check")
            return False
        if not connection_ok:
            self._fail(self._errors[-1])
            return False

        self._open_connection()
        return True

    async def check_connection_quality(self) -> bool:
        """Run the probe; records an ``OFFLINE`` error and returns ``False`` when offline."""

        result = await self._probe.check()
        self._last_probe = result
        if result.quality is ConnectionQuality.OFFLINE:
            self._add_error(
                StreamError(
                    code=ErrorCode.OFFLINE,
                    message=result.advisory or "No internet connection",
                    recoverable=True,
                )
            )
            return False
        if result.advisory:
            LOGGER.info("Connection advisory: %s", result.advisory)
        return True

    async def wait(self) -> StreamStatus:
        """Wait until the session completes, fails, or is stopped."""

        await self._settled.wait()
        return self._status

    def stop(self) -> None:
        """Close the transport and cancel timers; in-flight events are discarded."""

        self._teardown()
        if self._status in _ACTIVE_STATUSES:
            self._set_status(StreamStatus.IDLE)
            self._update_progress("Stopped", "Generation stopped")
        self._settled.set()

    def pause(self) -> bool:
        if self._status is not StreamStatus.STREAMING:
            return False
        self._close_connection()
        self._batcher.cancel()
        self._set_status(StreamStatus.PAUSED)
        self._update_progress("Paused", "Generation paused")
        return True

    def resume(self) -> bool:
        if self._status is not StreamStatus.PAUSED:
            return False
        self._open_connection()
        return True

    def retry(self) -> bool:
        """Reconnect from ``error`` using the remaining attempt budget."""

        if not self.can_retry or self._url is None:
            return False
        self._settled.clear()
        self._open_connection()
        return True

    def reset(self) -> None:
        """Return to ``idle`` and clear all buffered content and diagnostics."""

        self._teardown()
        self._batcher.reset()
        self._buffer = ""
        self._word_count = 0
        self._server_ack_word_count = 0
        self._generation_id = None
        self._reconnect_attempts = 0
        self._errors = []
        self._progress = StreamProgress(target_word_count=self._progress.target_word_count)
        if self._status is not StreamStatus.IDLE:
            self._set_status(StreamStatus.IDLE)
        self._settled.set()

    async def aclose(self) -> None:
        """Destroy the session. No callback fires afterwards."""

        if self._destroyed:
            return
        self._destroyed = True
        pending = [task for task in (self._reader, self._reconnect_task) if task is not None]
        self._teardown()
        self._set_status(StreamStatus.IDLE)
        self._settled.set()
        current = asyncio.current_task()
        pending = [task for task in pending if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _connection_params(self) -> dict[str, Any]:
        params = dict(self._params)
        if self._word_count > 0:
            params["resume_from"] = self._word_count
        if self._generation_id:
            params["generation_id"] = self._generation_id
        return params

    def _open_connection(self) -> None:
        if self._destroyed or self._url is None:
            return
        self._close_connection()
        self._set_status(StreamStatus.CONNECTING)
        epoch = self._epoch
        params = self._connection_params()
        LOGGER.info(
            "Connecting to stream %s (resume_from=%s, generation_id=%s)",
            self._url,
            params.get("resume_from"),
            params.get("generation_id"),
        )
        self._arm_heartbeat()
        self._reader = asyncio.create_task(self._read(epoch, self._url, params))

    def _close_connection(self) -> None:
        self._epoch += 1
        self._cancel_heartbeat()
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()

    def _teardown(self) -> None:
        self._close_connection()
        self._batcher.cancel()
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _is_current(self, epoch: int) -> bool:
        return not self._destroyed and epoch == self._epoch

    async def _read(self, epoch: int, url: str, params: Mapping[str, Any]) -> None:
        try:
            async with self._transport.connect(url, params) as events:
                if not self._is_current(epoch):
                    return
                self._on_open()
                async for data in events:
                    if not self._is_current(epoch):
                        return
                    self._on_data(data)
                    if not self._is_current(epoch):
                        return
            if self._is_current(epoch):
                self._handle_transport_failure(ErrorCode.STREAM_CLOSED, "Stream closed by server")
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            if self._is_current(epoch):
                self._handle_transport_failure(ErrorCode.CONNECTION_ERROR, str(exc))
        except Exception as exc:
            if self._is_current(epoch):
                LOGGER.warning("Unexpected stream failure", exc_info=True)
                self._handle_transport_failure(ErrorCode.CONNECTION_ERROR, f"Stream connection error: {exc}")

    def _on_open(self) -> None:
        LOGGER.debug("Stream connected")
        if self._status is StreamStatus.CONNECTING:
            self._set_status(StreamStatus.STREAMING)
        self._arm_heartbeat()

    def _on_data(self, data: str) -> None:
        self._arm_heartbeat()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.warning("Failed to parse stream message: %.200s", data)
            return
        if not isinstance(message, dict):
            LOGGER.warning("Ignoring non-object stream message: %.200s", data)
            return
        self._handle_message(message)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------
    def _handle_message(self, message: Mapping[str, Any]) -> None:
        kind = message.get("type")
        if kind == "start":
            self._handle_start(message)
        elif kind == "content":
            self._handle_content(message)
        elif kind == "heartbeat":
            saved = _as_int(message.get("last_saved_words"))
            if saved:
                self._server_ack_word_count = saved
            self._emit("on_heartbeat")
        elif kind == "autosave":
            saved = _as_int(message.get("word_count"))
            if saved:
                self._server_ack_word_count = saved
                self._emit("on_autosave", saved)
        elif kind == "complete":
            self._handle_complete(message)
        elif kind == "error":
            self._handle_server_error(message)
        elif kind == "end":
            if not self._status.is_terminal:
                self._handle_complete({"final_word_count": self._word_count})
        else:
            LOGGER.debug("Ignoring stream message of type %r", kind)

    def _handle_start(self, message: Mapping[str, Any]) -> None:
        if self._status is StreamStatus.CONNECTING:
            self._set_status(StreamStatus.STREAMING)
        self._reconnect_attempts = 0
        generation_id = message.get("generation_id")
        if generation_id:
            self._generation_id = str(generation_id)
        self._update_progress("Initializing", message.get("message") or "Starting generation...")

    def _handle_content(self, message: Mapping[str, Any]) -> None:
        chunk = message.get("content") or ""
        if not isinstance(chunk, str) or not chunk:
            return
        self._buffer += chunk
        self._reconnect_attempts = 0
        self._word_count = reconcile_word_count(
            count_words(self._buffer),
            _as_int(message.get("word_count")),
            tolerance=self._config.word_count_tolerance,
        )
        target = self._progress.target_word_count
        percentage = min(self._word_count / target * 100, 99.0) if target > 0 else 0.0
        self._update_progress(
            "Generating", f"Generating content... ({self._word_count} words)", percentage
        )
        self._batcher.add()

    def _handle_complete(self, message: Mapping[str, Any]) -> None:
        self._close_connection()
        self._set_status(StreamStatus.COMPLETE)
        self._batcher.flush()
        final = _as_int(message.get("final_word_count")) or self._word_count
        self._word_count = final
        self._server_ack_word_count = final
        self._update_progress("Complete", f"Generated {final} words", 100.0)
        LOGGER.info("Stream complete (%s words)", final)
        self._settled.set()
        self._emit("on_complete", self._buffer, final)

    def _handle_server_error(self, message: Mapping[str, Any]) -> None:
        recoverable = bool(message.get("recoverable", message.get("can_resume", False)))
        saved = _as_int(message.get("saved_word_count")) if message.get("partial_saved") else None
        if saved:
            self._server_ack_word_count = saved
        error = StreamError(
            code=str(message.get("code") or ErrorCode.SERVER_ERROR),
            message=str(message.get("message") or "Server error"),
            recoverable=recoverable,
            saved_word_count=saved,
        )
        self._add_error(error)
        LOGGER.warning("Server reported error %s: %s (recoverable=%s)", error.code, error.message, recoverable)
        if self._policy.should_reconnect(error, self._reconnect_attempts):
            self._schedule_reconnect()
            self._emit("on_error", error)
        else:
            self._fail(error)

    def _handle_transport_failure(self, code: str, message: str) -> None:
        if self._destroyed or self._status not in (StreamStatus.CONNECTING, StreamStatus.STREAMING):
            return
        error = StreamError(code=code, message=message, recoverable=True)
        self._add_error(error)
        LOGGER.warning("Stream transport error: %s", message)
        if self._policy.can_attempt(self._reconnect_attempts):
            self._schedule_reconnect()
            return
        terminal = StreamError(
            code=ErrorCode.RETRIES_EXHAUSTED,
            message=f"Connection lost after {self._reconnect_attempts} reconnection attempts",
            recoverable=False,
            saved_word_count=self.safe_word_count,
        )
        self._add_error(terminal)
        self._fail(terminal)

    def _fail(self, error: StreamError) -> None:
        self._close_connection()
        self._batcher.flush()
        self._set_status(StreamStatus.ERROR)
        self._update_progress("Error", error.message)
        self._settled.set()
        self._emit("on_error", error)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------
    def _schedule_reconnect(self) -> None:
        self._close_connection()
        self._reconnect_attempts += 1
        attempt = self._reconnect_attempts
        maximum = self._policy.max_attempts
        self._set_status(StreamStatus.RECONNECTING)
        self._emit("on_reconnecting", attempt, maximum)
        self._update_progress("Reconnecting", f"Reconnecting... ({attempt}/{maximum})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after_backoff(self._epoch, attempt))

    async def _reconnect_after_backoff(self, epoch: int, attempt: int) -> None:
        delay = self._policy.delay_for(attempt)
        LOGGER.info("Reconnecting in %.2fs (attempt %s/%s)", delay, attempt, self._policy.max_attempts)
        if not self._network.is_online():
            await self._network.wait_for_online(self._config.offline_wait_timeout)
        await self._sleep(delay)
        if not self._is_current(epoch) or self._status is not StreamStatus.RECONNECTING:
            return
        self._reconnect_task = None
        self._open_connection()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------
    def _arm_heartbeat(self) -> None:
        self._cancel_heartbeat()
        if self._status not in (StreamStatus.CONNECTING, StreamStatus.STREAMING):
            return
        timeout = self._config.heartbeat_timeout
        if timeout <= 0:
            return
        self._heartbeat = self._scheduler(timeout, partial(self._on_heartbeat_timeout, self._epoch))

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def _on_heartbeat_timeout(self, epoch: int) -> None:
        self._heartbeat = None
        if not self._is_current(epoch):
            return
        LOGGER.warning("Heartbeat timeout after %.1fs without data", self._config.heartbeat_timeout)
        self._handle_transport_failure(ErrorCode.HEARTBEAT_TIMEOUT, "Heartbeat timeout")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_status(self, target: StreamStatus) -> None:
        current = self._status
        if current is target and target is not StreamStatus.STREAMING:
            return
        if not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)
        if current is not target:
            LOGGER.debug("Stream status %s -> %s", current.value, target.value)
        self._status = target

    def _update_progress(self, phase: str, message: str, percentage: float | None = None) -> None:
        self._progress = replace(
            self._progress,
            phase=phase,
            message=message,
            word_count=self._word_count,
            percentage=self._progress.percentage if percentage is None else percentage,
        )
        self._emit("on_progress", self._progress)

    def _add_error(self, error: StreamError) -> None:
        self._errors.append(error)

    def _render(self) -> None:
        self._emit("on_content", self._buffer, self._word_count)

    def _emit(self, name: str, *args: Any) -> None:
        if self._destroyed:
            return
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("Stream callback %s failed", name)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = ["StreamSession"]
