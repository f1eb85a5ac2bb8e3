"""In-memory chapter text with version tracking for selection splices."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from ..core.ranges import TextRange
from ..core.words import count_words

__all__ = ["ChapterDocument", "SelectionSnapshot"]

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class SelectionSnapshot:
    """A selection captured when a rephrase/expand request starts."""

    range: TextRange
    text: str
    version_id: int
    content_hash: str

    @property
    def word_count(self) -> int:
        return count_words(self.text)


@dataclass(slots=True)
class ChapterDocument:
    """Text of the chapter being edited.

    Every mutation bumps ``version_id`` so callers holding a
    :class:`SelectionSnapshot` can tell whether the text moved underneath them.
    """

    chapter_id: int | str | None = None
    chapter_number: int | None = None
    title: str = ""
    text: str = ""
    target_word_count: int = 0
    version_id: int = 1
    content_hash: str = field(default_factory=str)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = _hash_text(self.text)

    @property
    def word_count(self) -> int:
        return count_words(self.text)

    def set_text(self, new_text: str) -> bool:
        """Replace the chapter text; returns ``False`` when nothing changed."""

        if new_text == self.text:
            return False
        self.text = new_text
        self.version_id += 1
        self.content_hash = _hash_text(new_text)
        self.updated_at = _utcnow()
        return True

    def capture_selection(self, selection: Any) -> SelectionSnapshot:
        """Freeze ``selection`` (anything :meth:`TextRange.from_value` accepts)."""

        text_range = TextRange.from_value(selection).clamp(upper=len(self.text))
        return SelectionSnapshot(
            range=text_range,
            text=text_range.extract(self.text),
            version_id=self.version_id,
            content_hash=self.content_hash,
        )

    def can_splice(self, snapshot: SelectionSnapshot) -> bool:
        """Return whether ``snapshot`` still points at the text it captured.

        An untouched document always accepts the splice. After other edits
        the range is accepted only if it still covers the captured text.
        """

        if snapshot.version_id == self.version_id and snapshot.content_hash == self.content_hash:
            return True
        return snapshot.range.fits(self.text) and snapshot.range.extract(self.text) == snapshot.text

    def splice(self, snapshot: SelectionSnapshot, replacement: str) -> bool:
        if not self.can_splice(snapshot):
            LOGGER.info(
                "Selection %s is stale (captured v%s, now v%s)",
                snapshot.range.to_dict(),
                snapshot.version_id,
                self.version_id,
            )
            return False
        self.set_text(snapshot.range.splice(self.text, replacement))
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "chapter_id": self.chapter_id,
            "chapter_number": self.chapter_number,
            "text": self.text,
            "word_count": self.word_count,
            "version_id": self.version_id,
            "content_hash": self.content_hash,
        }
