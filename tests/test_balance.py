"""Tests for the shared word balance store."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import httpx
import pytest

from chapterstream.billing import BalanceStore, WordBalance, WordEstimates
from chapterstream.services.api import ApiError


class FakeFeed:
    def __init__(self) -> None:
        self.handler: Callable[[Mapping[str, Any]], None] | None = None
        self.attached = 0
        self.detached = 0

    def attach(self, handler: Callable[[Mapping[str, Any]], None]) -> Callable[[], None]:
        self.attached += 1
        self.handler = handler

        def detach() -> None:
            self.detached += 1
            self.handler = None

        return detach


class BalanceApi:
    def __init__(self, result: Any) -> None:
        self.result = result

    async def fetch_balance(self) -> dict[str, Any]:
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


# =============================================================================
# Estimates and checks
# =============================================================================


def test_estimates_add_safety_margin() -> None:
    assert WordEstimates.chapter(3000) == 3300
    assert WordEstimates.chapter(None) == 0
    assert WordEstimates.section() == 660
    assert WordEstimates.improve() == 300
    assert WordEstimates.selection() == 300


def test_estimates_cover_only_the_generation_actions() -> None:
    public = sorted(name for name in vars(WordEstimates) if not name.startswith("_") and name.islower())

    assert public == ["chapter", "improve", "section", "selection"]


def test_check_balance_reports_shortage() -> None:
    store = BalanceStore({"balance": 250})

    blocked = store.check_balance(300)
    allowed = store.check_balance(250)

    assert not blocked.can_proceed
    assert blocked.shortage == 50
    assert blocked.to_dict() == {"canProceed": False, "balance": 250, "required": 300, "shortage": 50}
    assert allowed.can_proceed and allowed.shortage == 0


def test_unknown_balance_blocks_everything_but_free_work() -> None:
    store = BalanceStore()

    assert not store.check_balance(1).can_proceed
    assert store.check_balance(0).can_proceed


def test_balance_payload_accepts_wrapped_and_bare_objects() -> None:
    wrapped = WordBalance.from_payload({"balance": {"balance": 1500, "percentage_remaining": 10}})
    bare = WordBalance.from_payload({"balance": 1500, "formatted_balance": "1.5k"})

    assert wrapped.balance == 1500
    assert wrapped.is_low
    assert wrapped.formatted_balance == "1,500"
    assert bare.formatted_balance == "1.5k"
    assert not bare.is_low


# =============================================================================
# Subscriptions
# =============================================================================


def test_feed_attached_for_first_subscriber_and_detached_after_last() -> None:
    feed = FakeFeed()
    store = BalanceStore(feed=feed)
    seen: list[int] = []

    first = store.subscribe(lambda balance: seen.append(balance.balance if balance else -1))
    second = store.subscribe(lambda balance: None)
    assert feed.attached == 1 and store.feed_attached

    assert feed.handler is not None
    feed.handler({"balance": 900})
    first()
    first()
    assert feed.detached == 0
    second()

    assert seen == [900]
    assert feed.detached == 1
    assert store.subscriber_count == 0
    assert not store.feed_attached
    assert store.words == 900


def test_malformed_feed_payload_is_ignored(caplog: pytest.LogCaptureFixture) -> None:
    feed = FakeFeed()
    store = BalanceStore({"balance": 10}, feed=feed)
    store.subscribe(lambda balance: None)

    assert feed.handler is not None
    with caplog.at_level(logging.WARNING):
        feed.handler(["not", "a", "mapping"])  # type: ignore[arg-type]

    assert store.words == 10
    assert "Ignoring malformed balance update" in caplog.text


def test_listener_failure_does_not_block_others() -> None:
    store = BalanceStore()
    seen: list[int] = []

    def broken(balance: WordBalance | None) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(lambda balance: seen.append(balance.balance if balance else 0))
    store.apply_update({"balance": 42})

    assert seen == [42]


def test_closed_store_rejects_subscribers() -> None:
    store = BalanceStore()
    store.close()

    with pytest.raises(RuntimeError):
        store.subscribe(lambda balance: None)


# =============================================================================
# Refresh
# =============================================================================


@pytest.mark.asyncio
async def test_refresh_updates_balance() -> None:
    store = BalanceStore()

    balance = await store.refresh(BalanceApi({"balance": {"balance": 3000}}))  # type: ignore[arg-type]

    assert balance is not None and balance.balance == 3000
    assert store.words == 3000
    assert not store.is_loading


@pytest.mark.asyncio
async def test_refresh_failures_keep_cached_value() -> None:
    store = BalanceStore({"balance": 700})

    assert await store.refresh(BalanceApi(ApiError("down", status_code=503))) is None  # type: ignore[arg-type]
    assert await store.refresh(BalanceApi(httpx.ConnectError("refused"))) is None  # type: ignore[arg-type]
    assert await store.refresh(BalanceApi({"error": "nope"})) is None  # type: ignore[arg-type]
    assert store.words == 700
