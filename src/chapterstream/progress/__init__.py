"""Project-wide generation progress tracking."""

from .channel import (
    ActivityLogEntry,
    ChannelConnector,
    GenerationStage,
    JobState,
    JobStatus,
    ProgressChannelListener,
    StageStatus,
)

__all__ = [
    "ActivityLogEntry",
    "ChannelConnector",
    "GenerationStage",
    "JobState",
    "JobStatus",
    "ProgressChannelListener",
    "StageStatus",
]
