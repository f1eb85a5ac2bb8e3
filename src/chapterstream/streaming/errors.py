"""Error codes and exceptions raised by the streaming engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Codes attached to :class:`~chapterstream.streaming.types.StreamError` records."""

    # Connectivity
    OFFLINE = "OFFLINE"

    # Transport
    CONNECTION_ERROR = "CONNECTION_ERROR"
    HEARTBEAT_TIMEOUT = "HEARTBEAT_TIMEOUT"
    STREAM_CLOSED = "STREAM_CLOSED"

    # Server declared
    SERVER_ERROR = "SERVER_ERROR"
    OFFLINE_MODE = "OFFLINE_MODE"

    # Terminal
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------

@dataclass
class StreamingError(Exception):
    """Base exception for misuse of, or failures inside, the streaming engine.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class SessionBusyError(StreamingError):
    """Raised when ``start()`` is called while a session is already active."""

    def __init__(self, status: str) -> None:
        super().__init__(
            error_code="session_busy",
            message=f"Stream session already active (status={status})",
            details={"status": status},
        )


class InvalidTransitionError(StreamingError):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            error_code="invalid_transition",
            message=f"Cannot move stream session from {current} to {target}",
            details={"from": current, "to": target},
        )


class TransportError(StreamingError):
    """Raised by transports when the stream connection fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(
            error_code=ErrorCode.CONNECTION_ERROR,
            message=message,
            details={"status_code": status_code} if status_code is not None else {},
        )
        self.status_code = status_code


__all__ = [
    "ErrorCode",
    "StreamingError",
    "SessionBusyError",
    "InvalidTransitionError",
    "TransportError",
]
