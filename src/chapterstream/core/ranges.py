"""Character spans captured from an editor selection."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class TextRange:
    """Selection expressed as absolute ``[start, end)`` character offsets."""

    start: int
    end: int

    def __post_init__(self) -> None:
        start = self._coerce_index(self.start, "start")
        end = self._coerce_index(self.end, "end")
        if end < start:
            start, end = end, start
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @staticmethod
    def _coerce_index(value: Any, label: str) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Selection {label} must be an integer offset") from exc

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def is_caret(self) -> bool:
        """Return ``True`` when the range collapses to a caret."""

        return self.start == self.end

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}

    def clamp(self, *, upper: int) -> TextRange:
        """Pull both offsets back inside a document of length ``upper``."""

        return TextRange(min(self.start, upper), min(self.end, upper))

    def extract(self, text: str) -> str:
        """Return the slice of ``text`` covered by this range."""

        return text[self.start : self.end]

    def fits(self, text: str) -> bool:
        return self.end <= len(text)

    def splice(self, text: str, replacement: str) -> str:
        """Return ``text`` with this range replaced by ``replacement``."""

        return f"{text[: self.start]}{replacement}{text[self.end :]}"

    @classmethod
    def from_value(cls, value: Any) -> TextRange:
        """Build a range from a selection payload.

        Accepts another :class:`TextRange`, a ``{"start", "end"}`` mapping, a
        ``(start, end)`` pair, or any object exposing ``start``/``end``.
        """

        if isinstance(value, TextRange):
            return value
        if isinstance(value, Mapping):
            if "start" not in value or "end" not in value:
                raise ValueError("Selection needs both start and end offsets")
            return cls(value["start"], value["end"])
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            if len(value) != 2:
                raise ValueError("Selection pairs must have exactly two offsets")
            return cls(value[0], value[1])
        if hasattr(value, "start") and hasattr(value, "end"):
            return cls(value.start, value.end)
        raise TypeError(f"Cannot build a TextRange from {type(value).__name__}")


__all__ = ["TextRange"]
