"""Backoff and recoverability decisions for stream reconnection."""

from __future__ import annotations

import random as _random
from dataclasses import dataclass
from typing import Callable

from .types import StreamConfig, StreamError


@dataclass(slots=True)
class ReconnectPolicy:
    """Exponential backoff with jitter, bounded by an attempt cap.

    Args:
        config: Stream configuration supplying delays, jitter and the cap.
        random: Source of uniform ``[0, 1)`` values used for jitter.
    """

    config: StreamConfig
    random: Callable[[], float] = _random.random

    @property
    def max_attempts(self) -> int:
        return self.config.max_reconnect_attempts

    def base_delay_for(self, attempt: int) -> float:
        """Return the pre-jitter delay for a 1-based ``attempt``."""

        exponent = max(0, attempt - 1)
        delay = self.config.reconnect_base_delay * (2**exponent)
        return min(delay, self.config.reconnect_max_delay)

    def jitter_for(self, delay: float) -> float:
        return delay * self.config.jitter_factor * self.random()

    def delay_for(self, attempt: int) -> float:
        """Return the full delay for ``attempt`` including jitter."""

        base = self.base_delay_for(attempt)
        return base + self.jitter_for(base)

    def can_attempt(self, attempts_made: int) -> bool:
        """Return ``True`` while ``attempts_made`` is below the cap."""

        return attempts_made < self.config.max_reconnect_attempts

    def is_recoverable(self, error: StreamError) -> bool:
        """Return the error's own flag, whatever its code."""

        return error.recoverable

    def should_reconnect(self, error: StreamError, attempts_made: int) -> bool:
        return self.is_recoverable(error) and self.can_attempt(attempts_made)


__all__ = ["ReconnectPolicy"]
