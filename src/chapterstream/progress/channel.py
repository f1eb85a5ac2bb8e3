"""Listener for whole-project generation progress broadcasts.

A bulk generation job reports progress on the ``project.<id>.generation``
channel. The listener keeps an ordered list of stages (literature mining, one
stage per chapter, final formatting), a bounded activity log and job
metadata. While the job runs it also polls the bulk status endpoint in case
broadcast events are missed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

import httpx

from ..services.api import ApiError, GenerationApiClient

__all__ = [
    "ActivityLogEntry",
    "ChannelConnector",
    "GenerationStage",
    "JobState",
    "JobStatus",
    "ProgressChannelListener",
    "StageStatus",
]

LOGGER = logging.getLogger(__name__)

MINING_STAGE = "literature_mining"
CONVERSION_STAGE = "html_conversion"
CHAPTER_STAGE_PREFIX = "chapter_generation_"
MINING_RANGE = (0.0, 20.0)
CHAPTERS_START = 20.0
CHAPTERS_SPAN = 75.0
CONVERSION_RANGE = (95.0, 100.0)
DEFAULT_TOTAL_CHAPTERS = 5
MAX_ACTIVITY_ENTRIES = 100

EventHandler = Callable[[str, Mapping[str, Any]], None]
ChangeListener = Callable[["ProgressChannelListener"], None]


class ChannelConnector(Protocol):
    """Push channel (websocket broadcaster, test fake, ...)."""

    def subscribe(self, channel: str, handler: EventHandler) -> Callable[[], None]:
        """Deliver ``(event_name, payload)`` pairs to ``handler``; return an unsubscribe callable."""


class JobStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any, default: JobStatus | None = None) -> JobStatus:
        try:
            return cls(value)
        except ValueError:
            LOGGER.debug("Unknown job status %r", value)
            return default or cls.NOT_STARTED


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class GenerationStage:
    id: str
    name: str
    description: str
    range: tuple[float, float]
    status: StageStatus = StageStatus.PENDING
    progress: float = 0.0
    chapter_progress: float | None = None
    word_count: int | None = None
    target_word_count: int | None = None
    generation_time: float | None = None

    @property
    def chapter_number(self) -> int | None:
        if not self.id.startswith(CHAPTER_STAGE_PREFIX):
            return None
        return int(self.id[len(CHAPTER_STAGE_PREFIX) :])

    def mark_completed(self) -> None:
        self.status = StageStatus.COMPLETED
        self.progress = 100.0
        if self.chapter_progress is not None:
            self.chapter_progress = 100.0


@dataclass(slots=True, frozen=True)
class ActivityLogEntry:
    type: str
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    chapter: int | None = None
    chapter_progress: float | None = None
    generation_time: float | None = None
    source: str | None = None


@dataclass(slots=True)
class JobState:
    status: JobStatus = JobStatus.NOT_STARTED
    progress: float = 0.0
    current_stage: str = ""
    message: str = ""
    is_connected: bool = False
    error: str | None = None


_LOG_TYPES = {
    "success": "success",
    "error": "error",
    "chapter_completed": "chapter_completed",
    "chapter_started": "chapter_progress",
    "chapter_progress": "chapter_progress",
    "mining": "mining",
    "conversion": "conversion",
    "stage": "stage",
}


def chapter_stage_id(chapter_number: int) -> str:
    return f"{CHAPTER_STAGE_PREFIX}{chapter_number}"


class ProgressChannelListener:
    """Tracks one project's bulk generation job from broadcast events.

    Args:
        project_id: Project whose channel is subscribed.
        connector: Push channel implementation.
        api: Backend client used by the polling fallback; polling is off
            without it.
        poll_interval: Seconds between fallback status polls.
        animation_interval: Seconds between fallback chapter-progress ticks.
        animation_max_ticks: Ticks after which the fallback animation gives up.
        sleep: Coroutine used for both timers.
        on_change: Called after every state change.
    """

    def __init__(
        self,
        project_id: int | str,
        connector: ChannelConnector,
        *,
        api: GenerationApiClient | None = None,
        poll_interval: float = 5.0,
        animation_interval: float = 2.0,
        animation_max_ticks: int = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_change: ChangeListener | None = None,
    ) -> None:
        self._project_id = project_id
        self._connector = connector
        self._api = api
        self._poll_interval = poll_interval
        self._animation_interval = animation_interval
        self._animation_max_ticks = animation_max_ticks
        self._sleep = sleep
        self._on_change = on_change

        self._state = JobState()
        self._stages: list[GenerationStage] = []
        self._known_chapters: set[int] = set()
        self._activity: deque[ActivityLogEntry] = deque(maxlen=MAX_ACTIVITY_ENTRIES)
        self._metadata: dict[str, Any] = {}
        self._download_links: dict[str, str] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._animation_task: asyncio.Task[None] | None = None
        self._handlers: dict[str, Callable[[Mapping[str, Any]], None]] = {
            "generation.started": self._on_started,
            "generation.literature_mining": self._on_literature_mining,
            "generation.chapter.started": self._on_chapter_started,
            "generation.chapter.progress": self._on_chapter_progress,
            "generation.chapter.completed": self._on_chapter_completed,
            "generation.completed": self._on_completed,
            "generation.failed": self._on_failed,
        }

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------
    @property
    def channel_name(self) -> str:
        return f"project.{self._project_id}.generation"

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def stages(self) -> tuple[GenerationStage, ...]:
        return tuple(self._stages)

    @property
    def activity_log(self) -> tuple[ActivityLogEntry, ...]:
        """Activity entries, newest first."""

        return tuple(self._activity)

    @property
    def metadata(self) -> Mapping[str, Any]:
        return dict(self._metadata)

    @property
    def download_links(self) -> dict[str, str] | None:
        return self._download_links

    @property
    def is_generating(self) -> bool:
        return self._state.status in (JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def is_completed(self) -> bool:
        return self._state.status is JobStatus.COMPLETED

    @property
    def has_failed(self) -> bool:
        return self._state.status is JobStatus.FAILED

    @property
    def can_resume(self) -> bool:
        if not self.has_failed:
            return False
        flag = self._metadata.get("can_resume")
        if flag is not None:
            return bool(flag)
        return self._state.progress > 0

    @property
    def resume_from_chapter(self) -> int | None:
        if not self.can_resume:
            return None
        last = self._metadata.get("last_successful_chapter")
        if last is None:
            return None
        return int(last) + 1

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def stage(self, stage_id: str) -> GenerationStage | None:
        for stage in self._stages:
            if stage.id == stage_id:
                return stage
        return None

    def estimated_time_remaining(self) -> str:
        if self.is_completed:
            return "Completed"
        if self.has_failed:
            return "Stopped"
        if not self.is_generating:
            return "Est. 15-20m"

        timings = self._metadata.get("chapter_timings") or {}
        total = self._metadata.get("total_chapters") or DEFAULT_TOTAL_CHAPTERS
        if timings:
            average = sum(float(value or 0) for value in timings.values()) / len(timings)
            remaining_chapters = max(int(total) - len(timings), 0)
            seconds = remaining_chapters * average + 60
            if seconds < 60:
                return "< 1 min remaining"
            minutes = math.ceil(seconds / 60)
            return f"~{minutes} min{'s' if seconds >= 120 else ''} remaining"

        minutes = math.ceil((100 - self._state.progress) / 100 * 20)
        return f"~{minutes} min{'s' if minutes > 1 else ''} remaining"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def connect(self) -> None:
        if self._unsubscribe is not None:
            LOGGER.warning("Already connected to %s", self.channel_name)
            return
        try:
            self._unsubscribe = self._connector.subscribe(self.channel_name, self.handle_event)
        except Exception as exc:
            LOGGER.error("Failed to subscribe to %s: %s", self.channel_name, exc)
            self._state.error = "Failed to connect to real-time updates"
            self._changed()
            return
        self._state.is_connected = True
        self._state.error = None
        LOGGER.info("Connected to generation channel %s", self.channel_name)
        self._changed()

    def disconnect(self) -> None:
        self.stop_polling()
        self._stop_animation()
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:  # pragma: no cover - connector implementations vary
                LOGGER.exception("Failed to leave %s", self.channel_name)
        self._state.is_connected = False
        LOGGER.info("Disconnected from generation channel %s", self.channel_name)
        self._changed()

    def reset(self) -> None:
        """Clear job state for a new run, keeping the connection."""

        self.stop_polling()
        self._stop_animation()
        self._state = JobState(is_connected=self._state.is_connected)
        self._stages = []
        self._known_chapters.clear()
        self._activity.clear()
        self._metadata = {}
        self._download_links = None
        self._changed()

    def handle_event(self, name: str, payload: Mapping[str, Any]) -> None:
        """Dispatch one broadcast event; unknown events are ignored."""

        handler = self._handlers.get(name.lstrip("."))
        if handler is None:
            LOGGER.debug("Ignoring generation event %r", name)
            return
        try:
            handler(payload)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Malformed %s event: %s", name, exc)
            return
        self._changed()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_started(self, event: Mapping[str, Any]) -> None:
        state = self._state
        state.status = JobStatus.PROCESSING
        state.progress = _as_float(event.get("progress"))
        state.current_stage = event.get("current_stage") or ""
        state.message = event.get("message") or ""
        state.error = None
        is_resume = bool(event.get("is_resume"))
        self._metadata.update(
            total_chapters=event.get("total_chapters"),
            is_resume=is_resume,
            estimated_duration=event.get("estimated_duration"),
        )
        self._initialize_stages(_as_int(event.get("total_chapters")) or DEFAULT_TOTAL_CHAPTERS)
        self.start_polling()
        self._log(
            "info" if is_resume else "stage",
            "Resuming generation sequence..." if is_resume else "Starting generation sequence...",
        )

    def _on_literature_mining(self, event: Mapping[str, Any]) -> None:
        state = self._state
        state.progress = _as_float(event.get("progress"))
        state.current_stage = MINING_STAGE
        state.message = event.get("message") or ""
        stage = self.stage(MINING_STAGE)
        if stage is not None:
            stage.status = StageStatus.ACTIVE
            stage.progress = min(state.progress / MINING_RANGE[1] * 100, 100.0)
            stage.description = state.message or stage.description
        self._log("mining", state.message, source=event.get("source"))
        if event.get("sub_stage") == "completed" and event.get("source") == "complete" and stage is not None:
            stage.mark_completed()

    def _on_chapter_started(self, event: Mapping[str, Any]) -> None:
        chapter = int(event["chapter_number"])
        title = event.get("chapter_title") or f"Chapter {chapter}"
        self._stop_animation()
        state = self._state
        state.progress = _as_float(event.get("progress"))
        state.current_stage = chapter_stage_id(chapter)
        state.message = event.get("message") or ""
        self._metadata.update(current_chapter=chapter)
        if event.get("total_chapters") is not None:
            self._metadata["total_chapters"] = event.get("total_chapters")

        self._ensure_chapter_stage(chapter, title, _as_int(event.get("target_word_count")))
        self._mark_previous_completed(chapter)
        stage = self.stage(chapter_stage_id(chapter))
        if stage is not None:
            stage.status = StageStatus.ACTIVE
            stage.progress = 0.0
            stage.chapter_progress = 10.0
        self._start_animation(chapter)
        self._log("chapter_progress", f"Starting Chapter {chapter}: {title}", chapter=chapter)

    def _on_chapter_progress(self, event: Mapping[str, Any]) -> None:
        chapter = _as_int(event.get("chapter_number"))
        self._stop_animation()
        state = self._state
        state.progress = _as_float(event.get("progress"))
        state.message = event.get("stage_description") or event.get("message") or state.message
        if chapter <= 0:
            return
        stage = self.stage(chapter_stage_id(chapter))
        chapter_progress = event.get("chapter_progress")
        word_count = event.get("current_word_count")
        if stage is not None:
            if chapter_progress is not None:
                stage.chapter_progress = _as_float(chapter_progress)
            if word_count is not None:
                stage.word_count = _as_int(word_count)
            stage.description = event.get("stage_description") or stage.description
        self._metadata.update(chapter_progress=chapter_progress, current_word_count=word_count)

    def _on_chapter_completed(self, event: Mapping[str, Any]) -> None:
        chapter = int(event["chapter_number"])
        self._stop_animation()
        state = self._state
        state.progress = _as_float(event.get("progress"))
        state.message = event.get("message") or ""
        word_count = _as_int(event.get("word_count"))
        generation_time = event.get("generation_time")
        stage = self.stage(chapter_stage_id(chapter))
        if stage is not None:
            stage.status = StageStatus.COMPLETED
            stage.progress = 100.0
            stage.chapter_progress = 100.0
            stage.word_count = word_count
            stage.generation_time = generation_time
        timings = dict(self._metadata.get("chapter_timings") or {})
        timings[chapter] = generation_time
        self._metadata.update(chapter_timings=timings, chapters_completed=event.get("chapters_completed"))
        self._log(
            "chapter_completed",
            f"Chapter {chapter} completed ({word_count:,} words in {generation_time}s)",
            chapter=chapter,
            generation_time=generation_time,
        )

    def _on_completed(self, event: Mapping[str, Any]) -> None:
        state = self._state
        state.status = JobStatus.COMPLETED
        state.progress = 100.0
        state.current_stage = "completed"
        state.message = "Project generation completed successfully!"
        self.stop_polling()
        self._stop_animation()
        stage = self.stage(CONVERSION_STAGE)
        if stage is not None:
            stage.mark_completed()
        self._download_links = event.get("download_links") or None
        total_words = _as_int(event.get("total_word_count"))
        duration = _as_float(event.get("total_duration"))
        self._metadata.update(
            total_word_count=event.get("total_word_count"),
            total_duration=event.get("total_duration"),
            papers_collected=event.get("papers_collected"),
        )
        self._log("success", f"Project generation completed! ({total_words:,} words in {round(duration)}s)")

    def _on_failed(self, event: Mapping[str, Any]) -> None:
        state = self._state
        error_message = event.get("error_message")
        state.status = JobStatus.FAILED
        state.message = error_message or "Generation failed"
        state.error = error_message or None
        self.stop_polling()
        self._stop_animation()
        failed_stage = event.get("failed_stage")
        stage = self.stage(failed_stage) if failed_stage else None
        if stage is not None:
            stage.status = StageStatus.ERROR
        self._metadata.update(
            can_resume=event.get("can_resume"),
            last_successful_chapter=event.get("last_successful_chapter"),
        )
        self._log("error", f"Generation failed: {error_message}", chapter=event.get("failed_chapter"))

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore_from_api_data(self, data: Mapping[str, Any]) -> None:
        """Rebuild state from a bulk status response (e.g. after a page reload)."""

        status = JobStatus.parse(data.get("status"))
        state = self._state
        state.status = status
        state.progress = _as_float(data.get("progress"))
        state.current_stage = data.get("current_stage") or ""
        state.message = data.get("message") or ""
        state.error = state.message if status is JobStatus.FAILED else None
        self._metadata = dict(data.get("metadata") or {})
        self._download_links = data.get("download_links") or None

        chapters = list(data.get("chapter_statuses") or [])
        total = len(chapters) or _as_int(self._metadata.get("total_chapters")) or DEFAULT_TOTAL_CHAPTERS
        self._known_chapters.clear()
        self._initialize_stages(total)
        if not self._metadata.get("total_chapters"):
            self._metadata["total_chapters"] = total

        timings = self._metadata.get("chapter_timings") or {}
        for chapter in chapters:
            number = _as_int(chapter.get("chapter_number"))
            stage = self.stage(chapter_stage_id(number))
            if stage is None:
                continue
            stage.description = chapter.get("title") or stage.description
            if chapter.get("target_word_count") is not None:
                stage.target_word_count = _as_int(chapter.get("target_word_count"))
            if chapter.get("is_completed") or chapter.get("status") == "completed":
                stage.mark_completed()
                stage.word_count = chapter.get("word_count")
                stage.generation_time = timings.get(number, timings.get(str(number)))

        current = state.current_stage
        if status in (JobStatus.PROCESSING, JobStatus.PENDING):
            stage = self.stage(current) if current else None
            if stage is not None:
                stage.status = StageStatus.ACTIVE
                number = stage.chapter_number
                if number is not None:
                    chapter_progress = _as_float(self._metadata.get("chapter_progress"))
                    word_count = self._metadata.get("current_word_count")
                    self._metadata.update(current_chapter=number, chapter_progress=chapter_progress)
                    stage.chapter_progress = chapter_progress
                    if word_count is not None:
                        stage.word_count = _as_int(word_count)
                    self._start_animation(number)
            if current.startswith(CHAPTER_STAGE_PREFIX):
                mining = self.stage(MINING_STAGE)
                if mining is not None:
                    mining.mark_completed()
            if current == CONVERSION_STAGE:
                conversion = self.stage(CONVERSION_STAGE)
                if conversion is not None:
                    conversion.status = StageStatus.ACTIVE
                    conversion.progress = state.progress or conversion.progress
            self.start_polling()

        if status is JobStatus.COMPLETED:
            state.progress = 100.0
            for stage in self._stages:
                stage.mark_completed()

        if status is JobStatus.FAILED and current:
            failed = self.stage(current)
            if failed is not None:
                failed.status = StageStatus.ERROR

        details = data.get("details") or []
        if details:
            self._activity.clear()
            for detail in _newest_first(details):
                self._activity.append(
                    ActivityLogEntry(
                        type=_LOG_TYPES.get(detail.get("type"), "info"),
                        message=detail.get("message") or "",
                        timestamp=detail.get("timestamp") or "",
                        chapter=detail.get("chapter"),
                        generation_time=detail.get("generation_time"),
                        source=detail.get("source"),
                    )
                )
        self._changed()

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------
    def start_polling(self) -> None:
        if self._api is None or self.is_polling:
            return
        try:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        except RuntimeError:
            LOGGER.debug("No running event loop; polling fallback not started")
            return
        LOGGER.debug("Starting polling fallback for project %s", self._project_id)

    def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            LOGGER.debug("Polling stopped for project %s", self._project_id)

    async def _poll_loop(self) -> None:
        assert self._api is not None
        while True:
            await self._sleep(self._poll_interval)
            if not self.is_generating:
                return
            try:
                data = await self._api.bulk_generation_status(str(self._project_id))
            except (ApiError, httpx.HTTPError) as exc:
                LOGGER.warning("Polling request failed: %s", exc)
                continue
            if self._apply_poll(data):
                self._changed()
            if not self.is_generating:
                return

    def _apply_poll(self, data: Mapping[str, Any]) -> bool:
        state = self._state
        status = JobStatus.parse(data.get("status"), state.status)
        progress = _as_float(data.get("progress"))
        if progress <= state.progress and status is state.status:
            return False
        LOGGER.debug("Polling update: progress=%s status=%s", progress, status.value)
        state.progress = progress
        state.status = status
        state.message = data.get("message") or state.message
        state.current_stage = data.get("current_stage") or state.current_stage

        extra = data.get("metadata")
        if isinstance(extra, Mapping):
            self._metadata.update(extra)
            chapter = extra.get("current_chapter")
            if extra.get("chapter_progress") is not None and chapter:
                stage = self.stage(chapter_stage_id(_as_int(chapter)))
                if stage is not None:
                    stage.chapter_progress = _as_float(extra.get("chapter_progress"))
                    stage.word_count = _as_int(extra.get("current_word_count"))

        if status is JobStatus.COMPLETED:
            self._download_links = data.get("download_links") or None
        elif status is JobStatus.FAILED:
            state.error = data.get("message")
        return True

    # ------------------------------------------------------------------
    # Fallback animation
    # ------------------------------------------------------------------
    def _start_animation(self, chapter: int, target: float = 30.0) -> None:
        self._stop_animation()
        if self.stage(chapter_stage_id(chapter)) is None:
            return
        try:
            self._animation_task = asyncio.get_running_loop().create_task(self._animate(chapter, target))
        except RuntimeError:
            LOGGER.debug("No running event loop; progress animation skipped")

    def _stop_animation(self) -> None:
        task, self._animation_task = self._animation_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _animate(self, chapter: int, target: float) -> None:
        """Nudge an active chapter's progress until real progress arrives."""

        for tick in range(1, self._animation_max_ticks + 1):
            await self._sleep(self._animation_interval)
            stage = self.stage(chapter_stage_id(chapter))
            if stage is None or stage.status is not StageStatus.ACTIVE:
                return
            if tick >= self._animation_max_ticks:
                LOGGER.debug("Fallback animation for chapter %s stopped", chapter)
                return
            current = stage.chapter_progress or 0.0
            if current < target:
                stage.chapter_progress = min(current + 1, target)
                self._changed()

    # ------------------------------------------------------------------
    # Stage bookkeeping
    # ------------------------------------------------------------------
    def _initialize_stages(self, total_chapters: int) -> None:
        total = max(total_chapters, 1)
        per_chapter = CHAPTERS_SPAN / total
        stages = [
            GenerationStage(
                id=MINING_STAGE,
                name="Literature Mining",
                description="Collecting research papers from academic databases",
                range=MINING_RANGE,
            )
        ]
        self._known_chapters.clear()
        for number in range(1, total + 1):
            stages.append(
                GenerationStage(
                    id=chapter_stage_id(number),
                    name=f"Chapter {number}",
                    description=f"Chapter {number}",
                    range=(CHAPTERS_START + (number - 1) * per_chapter, CHAPTERS_START + number * per_chapter),
                    chapter_progress=0.0,
                    word_count=0,
                    target_word_count=0,
                )
            )
            self._known_chapters.add(number)
        stages.append(
            GenerationStage(
                id=CONVERSION_STAGE,
                name="Finalizing Project",
                description="Formatting content and preparing final document",
                range=CONVERSION_RANGE,
            )
        )
        self._stages = stages

    def _ensure_chapter_stage(self, chapter: int, title: str, target_word_count: int) -> None:
        existing = self.stage(chapter_stage_id(chapter))
        if chapter in self._known_chapters and existing is not None:
            existing.description = title
            existing.target_word_count = target_word_count
            return

        LOGGER.info("Adding stage for unexpected chapter %s", chapter)
        stage = GenerationStage(
            id=chapter_stage_id(chapter),
            name=f"Chapter {chapter}",
            description=title,
            range=(CHAPTERS_START, CHAPTERS_START),
            chapter_progress=0.0,
            word_count=0,
            target_word_count=target_word_count,
        )
        index = next(
            (position for position, item in enumerate(self._stages) if item.id == CONVERSION_STAGE),
            len(self._stages),
        )
        self._stages.insert(index, stage)
        self._known_chapters.add(chapter)
        self._recalculate_ranges()

    def _recalculate_ranges(self) -> None:
        chapters = [stage for stage in self._stages if stage.chapter_number is not None]
        if not chapters:
            return
        per_chapter = CHAPTERS_SPAN / len(chapters)
        for index, stage in enumerate(chapters):
            stage.range = (CHAPTERS_START + index * per_chapter, CHAPTERS_START + (index + 1) * per_chapter)

    def _mark_previous_completed(self, chapter: int) -> None:
        mining = self.stage(MINING_STAGE)
        if mining is not None and mining.status is not StageStatus.COMPLETED:
            mining.mark_completed()
        for number in range(1, chapter):
            stage = self.stage(chapter_stage_id(number))
            if stage is not None and stage.status is not StageStatus.COMPLETED:
                stage.mark_completed()

    def _log(self, entry_type: str, message: str, **extra: Any) -> None:
        self._activity.appendleft(ActivityLogEntry(type=entry_type, message=message, **extra))

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception:
            LOGGER.exception("Progress listener callback failed")


def _newest_first(details: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    return list(reversed(list(details)))


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
