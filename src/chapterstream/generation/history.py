"""Bounded undo history for whole-chapter rewrites."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field

__all__ = ["ContentHistory", "HistoryEntry", "MAX_HISTORY_ENTRIES"]

MAX_HISTORY_ENTRIES = 10


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    content: str
    action: str
    timestamp: float = field(default_factory=time.time)


class ContentHistory:
    """Stack of prior chapter contents, oldest dropped once full.

    Only a single level of redo is kept: the content replaced by the most
    recent :meth:`undo`.
    """

    def __init__(self, max_entries: int = MAX_HISTORY_ENTRIES) -> None:
        self._entries: deque[HistoryEntry] = deque(maxlen=max(1, max_entries))
        self._redo_content: str | None = None

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    @property
    def can_undo(self) -> bool:
        return bool(self._entries)

    @property
    def can_redo(self) -> bool:
        return self._redo_content is not None

    def push(self, content: str, action: str) -> bool:
        """Record ``content`` before ``action`` overwrites it.

        Empty content and repeats of the newest entry are skipped.
        """

        if not content:
            return False
        if self._entries and self._entries[-1].content == content:
            return False
        self._entries.append(HistoryEntry(content=content, action=action))
        return True

    def undo(self, current: str) -> HistoryEntry | None:
        """Pop the newest entry, remembering ``current`` for :meth:`redo`."""

        if not self._entries:
            return None
        entry = self._entries.pop()
        self._redo_content = current
        return entry

    def redo(self, current: str) -> str | None:
        """Return the content replaced by the last undo, if any."""

        content = self._redo_content
        if content is None:
            return None
        self.push(current, "Redo")
        self._redo_content = None
        return content

    def clear(self) -> None:
        self._entries.clear()
        self._redo_content = None

    def __len__(self) -> int:
        return len(self._entries)
