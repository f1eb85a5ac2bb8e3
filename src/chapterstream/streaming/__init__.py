"""Resumable server-push streaming engine."""

from .batcher import ChunkRenderBatcher
from .connectivity import ConnectionQuality, ConnectionQualityProbe, NetworkMonitor, ProbeResult
from .errors import ErrorCode, InvalidTransitionError, SessionBusyError, StreamingError, TransportError
from .reconnect import ReconnectPolicy
from .session import StreamSession
from .transport import HttpxSSETransport, StreamTransport, iter_sse_data
from .types import StreamCallbacks, StreamConfig, StreamError, StreamProgress, StreamStatus

__all__ = [
    "ChunkRenderBatcher",
    "ConnectionQuality",
    "ConnectionQualityProbe",
    "NetworkMonitor",
    "ProbeResult",
    "ErrorCode",
    "InvalidTransitionError",
    "SessionBusyError",
    "StreamingError",
    "TransportError",
    "ReconnectPolicy",
    "StreamSession",
    "HttpxSSETransport",
    "StreamTransport",
    "iter_sse_data",
    "StreamCallbacks",
    "StreamConfig",
    "StreamError",
    "StreamProgress",
    "StreamStatus",
]
