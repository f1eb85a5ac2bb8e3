"""Tests for word counting and count reconciliation."""

from __future__ import annotations

import logging

import pytest

from chapterstream.core.words import count_words, reconcile_word_count


@pytest.mark.parametrize(
    "text, expected",
    [
        ("", 0),
        ("   \n\t ", 0),
        (None, 0),
        ("<p>Hello world</p>", 2),
        ("<h2>Methodology</h2><p>We sampled 120 respondents.</p>", 5),
        ("one<br>two", 2),
        ("It's a well-known result.", 6),
    ],
)
def test_count_words(text: str | None, expected: int) -> None:
    assert count_words(text) == expected


def test_count_words_is_deterministic() -> None:
    text = "<div>Repeated   counting\nshould never drift</div>"
    assert count_words(text) == count_words(text) == 5


def test_reconcile_prefers_server_count(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        assert reconcile_word_count(100, 104) == 104
    assert caplog.text == ""


def test_reconcile_logs_large_divergence(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        assert reconcile_word_count(100, 140) == 140
    assert "Word count mismatch" in caplog.text


def test_reconcile_falls_back_to_local_count() -> None:
    assert reconcile_word_count(42, None) == 42
    assert reconcile_word_count(42, 0) == 42
