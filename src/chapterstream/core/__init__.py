"""Core text helpers shared by the streaming and generation layers."""

from .ranges import TextRange
from .words import count_words, reconcile_word_count

__all__ = ["TextRange", "count_words", "reconcile_word_count"]
