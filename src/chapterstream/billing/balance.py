"""Shared word-balance store and per-action word estimates."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import httpx

from ..services.api import ApiError, GenerationApiClient

__all__ = [
    "BalanceCheckResult",
    "BalanceFeed",
    "BalanceListener",
    "BalanceStore",
    "LOW_BALANCE_PERCENT",
    "WordBalance",
    "WordEstimates",
]

LOGGER = logging.getLogger(__name__)

LOW_BALANCE_PERCENT = 20.0

BalanceListener = Callable[["WordBalance | None"], None]


@dataclass(slots=True, frozen=True)
class WordBalance:
    """Snapshot of the user's word allowance as reported by the backend."""

    balance: int = 0
    formatted_balance: str = "0"
    total_purchased: int = 0
    total_used: int = 0
    bonus_received: int = 0
    total_allocated: int = 0
    percentage_used: float = 0.0
    percentage_remaining: float = 100.0

    @property
    def is_low(self) -> bool:
        return self.percentage_remaining < LOW_BALANCE_PERCENT

    @property
    def has_words(self) -> bool:
        return self.balance > 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> WordBalance:
        """Build a balance from an API or broadcast payload.

        Accepts either the bare balance object or one wrapped under a
        ``balance`` key, which is how ``GET /api/balance`` answers.
        """

        data = payload.get("balance") if isinstance(payload.get("balance"), Mapping) else payload
        balance = _as_int(data.get("balance"))
        formatted = data.get("formatted_balance")
        return cls(
            balance=balance,
            formatted_balance=str(formatted) if formatted is not None else f"{balance:,}",
            total_purchased=_as_int(data.get("total_purchased")),
            total_used=_as_int(data.get("total_used")),
            bonus_received=_as_int(data.get("bonus_received")),
            total_allocated=_as_int(data.get("total_allocated")),
            percentage_used=_as_float(data.get("percentage_used"), 0.0),
            percentage_remaining=_as_float(data.get("percentage_remaining"), 100.0),
        )


@dataclass(slots=True, frozen=True)
class BalanceCheckResult:
    can_proceed: bool
    balance: int
    required: int
    shortage: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "canProceed": self.can_proceed,
            "balance": self.balance,
            "required": self.required,
            "shortage": self.shortage,
        }


class WordEstimates:
    """Word requirements checked before an action is allowed to start.

    Estimates are deliberately pessimistic: chapter-length work reserves a
    10% safety margin over the target, quick actions reserve a flat amount.
    """

    SAFETY_MULTIPLIER = 1.1
    SECTION_WORDS = 600
    IMPROVE_WORDS = 300
    SELECTION_WORDS = 300

    @classmethod
    def chapter(cls, target_words: int | None) -> int:
        # Rounded first so 3000 * 1.1 reserves 3300, not 3301.
        return math.ceil(round(max(target_words or 0, 0) * cls.SAFETY_MULTIPLIER, 6))

    @classmethod
    def section(cls) -> int:
        return cls.chapter(cls.SECTION_WORDS)

    @staticmethod
    def improve() -> int:
        return WordEstimates.IMPROVE_WORDS

    @staticmethod
    def selection() -> int:
        return WordEstimates.SELECTION_WORDS


class BalanceFeed(Protocol):
    """Push source of balance updates (e.g. a websocket broadcast channel)."""

    def attach(self, handler: Callable[[Mapping[str, Any]], None]) -> Callable[[], None]:
        """Start delivering payloads to ``handler``; return a detach callable."""


class BalanceStore:
    """Observable balance shared by every component of one editing context.

    The optional push feed is attached when the first listener subscribes and
    detached when the last one leaves, so an idle store holds no connection.
    """

    def __init__(
        self,
        initial: WordBalance | Mapping[str, Any] | None = None,
        *,
        feed: BalanceFeed | None = None,
    ) -> None:
        if isinstance(initial, Mapping):
            initial = WordBalance.from_payload(initial)
        self._balance: WordBalance | None = initial
        self._feed = feed
        self._detach: Callable[[], None] | None = None
        self._listeners: list[BalanceListener] = []
        self._closed = False
        self._loading = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def balance(self) -> WordBalance | None:
        return self._balance

    @property
    def words(self) -> int:
        return self._balance.balance if self._balance else 0

    @property
    def is_low(self) -> bool:
        return bool(self._balance and self._balance.is_low)

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    @property
    def feed_attached(self) -> bool:
        return self._detach is not None

    def check_balance(self, required_words: int) -> BalanceCheckResult:
        """Return whether ``required_words`` can be spent right now."""

        current = self.words
        required = max(int(required_words), 0)
        can_proceed = current >= required
        return BalanceCheckResult(
            can_proceed=can_proceed,
            balance=current,
            required=required,
            shortage=0 if can_proceed else required - current,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, listener: BalanceListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it.

        The unsubscribe callable is idempotent.
        """

        if self._closed:
            raise RuntimeError("BalanceStore is closed")
        self._listeners.append(listener)
        if len(self._listeners) == 1:
            self._attach_feed()

        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            if not subscribed:
                return
            subscribed = False
            try:
                self._listeners.remove(listener)
            except ValueError:
                return
            if not self._listeners:
                self._detach_feed()

        return unsubscribe

    def apply_update(self, payload: WordBalance | Mapping[str, Any]) -> WordBalance:
        """Replace the current balance and notify listeners."""

        balance = payload if isinstance(payload, WordBalance) else WordBalance.from_payload(payload)
        self._balance = balance
        LOGGER.debug("Word balance updated: %s remaining", balance.balance)
        self._notify()
        return balance

    async def refresh(self, api: GenerationApiClient) -> WordBalance | None:
        """Fetch the balance from the backend; failures keep the cached value."""

        self._loading = True
        try:
            payload = await api.fetch_balance()
        except (ApiError, httpx.HTTPError) as exc:
            LOGGER.error("Failed to fetch balance: %s", exc)
            return None
        finally:
            self._loading = False
        if not isinstance(payload.get("balance"), Mapping):
            LOGGER.warning("Balance response did not include a balance object")
            return None
        return self.apply_update(payload)

    def close(self) -> None:
        self._listeners.clear()
        self._detach_feed()
        self._closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _attach_feed(self) -> None:
        if self._feed is None or self._detach is not None:
            return
        self._detach = self._feed.attach(self._on_feed_payload)
        LOGGER.debug("Balance feed attached")

    def _detach_feed(self) -> None:
        detach, self._detach = self._detach, None
        if detach is None:
            return
        try:
            detach()
        except Exception:  # pragma: no cover - feed implementations vary
            LOGGER.exception("Balance feed detach failed")
        LOGGER.debug("Balance feed detached")

    def _on_feed_payload(self, payload: Mapping[str, Any]) -> None:
        if self._closed:
            return
        try:
            self.apply_update(payload)
        except (TypeError, ValueError, AttributeError) as exc:
            LOGGER.warning("Ignoring malformed balance update: %s", exc)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._balance)
            except Exception:
                LOGGER.exception("Balance listener failed")


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
