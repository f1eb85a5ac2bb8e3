"""Word counting used for progress reporting and billing reconciliation."""

from __future__ import annotations

import logging
import re

__all__ = ["count_words", "reconcile_word_count", "DEFAULT_WORD_COUNT_TOLERANCE"]

LOGGER = logging.getLogger(__name__)

DEFAULT_WORD_COUNT_TOLERANCE = 10

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_WORD_PATTERN = re.compile(r"\b\w+\b")


def count_words(text: str | None) -> int:
    """Return the number of words in ``text`` after stripping tag-like markup."""

    if not text:
        return 0
    stripped = _TAG_PATTERN.sub(" ", text)
    collapsed = _WHITESPACE_PATTERN.sub(" ", stripped).strip()
    if not collapsed:
        return 0
    return len(_WORD_PATTERN.findall(collapsed))


def reconcile_word_count(
    local: int,
    server: int | None,
    *,
    tolerance: int = DEFAULT_WORD_COUNT_TOLERANCE,
) -> int:
    """Return the authoritative word count for a buffer.

    The server's figure wins whenever it is reported. Divergence beyond
    ``tolerance`` words is logged but never treated as an error since the
    server tokenizes differently.
    """

    if not server:
        return local
    if abs(local - server) > tolerance:
        LOGGER.warning("Word count mismatch (local=%s, server=%s)", local, server)
    return server
