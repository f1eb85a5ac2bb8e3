"""Value types shared by the stream session and its collaborators."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    """Lifecycle states of a :class:`~chapterstream.streaming.session.StreamSession`."""

    IDLE = "idle"
    CHECKING_CONNECTION = "checking_connection"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    PAUSED = "paused"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    COMPLETE = "complete"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETE, StreamStatus.ERROR)


_ANY = frozenset(StreamStatus)

# Allowed transitions keyed by target status.
TRANSITIONS: Mapping[StreamStatus, frozenset[StreamStatus]] = {
    StreamStatus.CHECKING_CONNECTION: frozenset({StreamStatus.IDLE}),
    StreamStatus.CONNECTING: frozenset(
        {
            StreamStatus.CHECKING_CONNECTION,
            StreamStatus.PAUSED,
            StreamStatus.RECONNECTING,
            StreamStatus.ERROR,
        }
    ),
    StreamStatus.STREAMING: frozenset({StreamStatus.CONNECTING, StreamStatus.STREAMING}),
    StreamStatus.PAUSED: frozenset({StreamStatus.STREAMING}),
    StreamStatus.RECONNECTING: frozenset({StreamStatus.CONNECTING, StreamStatus.STREAMING}),
    StreamStatus.ERROR: frozenset(
        {
            StreamStatus.CHECKING_CONNECTION,
            StreamStatus.CONNECTING,
            StreamStatus.STREAMING,
        }
    ),
    StreamStatus.COMPLETE: frozenset({StreamStatus.STREAMING}),
    StreamStatus.IDLE: _ANY,
}


def can_transition(current: StreamStatus, target: StreamStatus) -> bool:
    """Return ``True`` when ``current -> target`` is a permitted transition."""

    return current in TRANSITIONS.get(target, frozenset())


@dataclass(slots=True, frozen=True)
class StreamError:
    """Diagnostic record appended to a session's error log."""

    code: str
    message: str
    recoverable: bool
    timestamp: float = field(default_factory=time.time)
    saved_word_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
            "recoverable": self.recoverable,
        }
        if self.saved_word_count is not None:
            payload["saved_word_count"] = self.saved_word_count
        return payload


@dataclass(slots=True)
class StreamProgress:
    """Presentation-facing progress snapshot."""

    word_count: int = 0
    target_word_count: int = 0
    percentage: float = 0.0
    phase: str = ""
    message: str = ""


@dataclass(slots=True, frozen=True)
class StreamConfig:
    """Tunables for a stream session; durations are in seconds."""

    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    jitter_factor: float = 0.3
    chunk_batch_size: int = 3
    render_interval: float = 0.1
    heartbeat_timeout: float = 30.0
    connection_check_timeout: float = 5.0
    offline_wait_timeout: float = 30.0
    word_count_tolerance: int = 10
    substantial_word_count: int = 100

    @classmethod
    def merged(cls, overrides: Mapping[str, Any] | StreamConfig | None = None) -> StreamConfig:
        """Shallow-merge ``overrides`` over the defaults.

        Unknown keys are logged and ignored; ``None`` values keep the default.
        """

        if isinstance(overrides, StreamConfig):
            return overrides
        base = cls()
        if not overrides:
            return base
        allowed = {item.name for item in fields(cls)}
        filtered: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed:
                LOGGER.warning("Ignoring unknown stream config option %r", key)
                continue
            if value is None:
                continue
            filtered[key] = value
        return replace(base, **filtered) if filtered else base


ContentCallback = Callable[[str, int], None]
ProgressCallback = Callable[[StreamProgress], None]
CompleteCallback = Callable[[str, int], None]
ErrorCallback = Callable[[StreamError], None]
ReconnectingCallback = Callable[[int, int], None]
AutosaveCallback = Callable[[int], None]
HeartbeatCallback = Callable[[], None]


@dataclass(slots=True)
class StreamCallbacks:
    """Optional hooks invoked by a stream session."""

    on_content: ContentCallback | None = None
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None
    on_reconnecting: ReconnectingCallback | None = None
    on_autosave: AutosaveCallback | None = None
    on_heartbeat: HeartbeatCallback | None = None


__all__ = [
    "StreamStatus",
    "TRANSITIONS",
    "can_transition",
    "StreamError",
    "StreamProgress",
    "StreamConfig",
    "StreamCallbacks",
]
