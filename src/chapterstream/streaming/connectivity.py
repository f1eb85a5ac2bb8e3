"""Network reachability checks performed before a stream opens."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

LOGGER = logging.getLogger(__name__)

SLOW_EFFECTIVE_TYPES = frozenset({"slow-2g", "2g"})

PingFunc = Callable[[], Awaitable[Any]]


class ConnectionQuality(str, Enum):
    OFFLINE = "offline"
    SLOW = "slow"
    OK = "ok"


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of a connection quality probe."""

    quality: ConnectionQuality
    latency: float | None = None
    reachable: bool | None = None
    advisory: str | None = None

    @property
    def can_proceed(self) -> bool:
        return self.quality is not ConnectionQuality.OFFLINE


class NetworkMonitor:
    """Runtime connectivity flag with an awaitable online transition.

    Hosts wire platform signals into :meth:`set_online`; the stream session
    only reads the flag and waits on it.
    """

    def __init__(self, *, online: bool = True, effective_type: str | None = None) -> None:
        self._online = online
        self.effective_type = effective_type
        self._online_event = asyncio.Event()
        if online:
            self._online_event.set()

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        LOGGER.info("Network is now %s", "online" if online else "offline")
        if online:
            self._online_event.set()
        else:
            self._online_event.clear()

    async def wait_for_online(self, timeout: float | None = None) -> bool:
        """Wait up to ``timeout`` seconds for connectivity. Returns the final state."""

        if self._online:
            return True
        try:
            await asyncio.wait_for(self._online_event.wait(), timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Still offline after waiting %.1fs", timeout or 0.0)
        return self._online


class ConnectionQualityProbe:
    """Classifies connectivity as offline, slow, or ok.

    Only an offline runtime blocks a stream. A failed or timed-out ping is
    advisory because the stream connection itself is the authoritative test.

    Args:
        network: Source of the runtime online flag and link metadata.
        ping: Optional coroutine factory performing a lightweight request.
        timeout: Upper bound in seconds for the ping.
        slow_latency: Latency in seconds above which the link is reported slow.
    """

    def __init__(
        self,
        network: NetworkMonitor,
        ping: PingFunc | None = None,
        *,
        timeout: float = 5.0,
        slow_latency: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._network = network
        self._ping = ping
        self._timeout = timeout
        self._slow_latency = slow_latency
        self._clock = clock

    async def check(self) -> ProbeResult:
        if not self._network.is_online():
            return ProbeResult(
                ConnectionQuality.OFFLINE,
                reachable=False,
                advisory="No internet connection. Please check your network and try again.",
            )

        quality = ConnectionQuality.OK
        advisory: str | None = None
        effective_type = (self._network.effective_type or "").lower()
        if effective_type in SLOW_EFFECTIVE_TYPES:
            LOGGER.warning("Slow connection detected (effective type %s)", effective_type)
            quality = ConnectionQuality.SLOW
            advisory = "Slow connection detected. Generation may take longer."

        if self._ping is None:
            return ProbeResult(quality, advisory=advisory)

        started = self._clock()
        try:
            await asyncio.wait_for(self._ping(), self._timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Connection probe timed out after %.1fs; proceeding anyway", self._timeout)
            return ProbeResult(quality, reachable=False, advisory=advisory or "Connection check timed out.")
        except Exception as exc:
            LOGGER.warning("Connection probe failed (%s); proceeding anyway", exc)
            return ProbeResult(quality, reachable=False, advisory=advisory or "Connection check failed.")

        latency = self._clock() - started
        if latency > self._slow_latency:
            LOGGER.warning("High latency detected: %.0fms", latency * 1000)
            quality = ConnectionQuality.SLOW
            advisory = advisory or "Slow connection detected. Generation may take longer."
        return ProbeResult(quality, latency=latency, reachable=True, advisory=advisory)


__all__ = [
    "ConnectionQuality",
    "ConnectionQualityProbe",
    "NetworkMonitor",
    "ProbeResult",
    "SLOW_EFFECTIVE_TYPES",
]
