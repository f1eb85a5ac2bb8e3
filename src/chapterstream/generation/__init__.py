"""Chapter generation workflow: paper collection, streaming, splicing, history."""

from .document import ChapterDocument, SelectionSnapshot
from .history import ContentHistory, HistoryEntry
from .orchestrator import (
    GenerationKind,
    GenerationOrchestrator,
    GenerationOutcome,
    GenerationResult,
    GenerationState,
    LoggingNotifier,
    NoticeLevel,
    Notifier,
)
from .papers import (
    PaperCollectionMonitor,
    PaperCollectionOutcome,
    PaperCollectionState,
    PaperCollectionStatus,
)

__all__ = [
    "ChapterDocument",
    "SelectionSnapshot",
    "ContentHistory",
    "HistoryEntry",
    "GenerationKind",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationResult",
    "GenerationState",
    "LoggingNotifier",
    "NoticeLevel",
    "Notifier",
    "PaperCollectionMonitor",
    "PaperCollectionOutcome",
    "PaperCollectionState",
    "PaperCollectionStatus",
]
