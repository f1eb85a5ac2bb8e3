"""Generation orchestrator: gates, runs and finalizes chapter generation streams.

The orchestrator owns the UI-facing :class:`GenerationState` for one chapter
editing visit. Each request (whole chapter, section, rephrase, expand) runs a
balance check and connectivity probe, optionally collects papers, and then
drives a fresh :class:`~chapterstream.streaming.StreamSession` until it
settles. Completion saves the chapter and records word usage in the
background; usage failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Mapping, Protocol

import httpx

from ..billing.balance import BalanceStore, WordEstimates
from ..core.words import count_words
from ..services.api import ApiError, GenerationApiClient
from ..streaming.connectivity import ConnectionQuality, ConnectionQualityProbe, NetworkMonitor
from ..streaming.errors import ErrorCode
from ..streaming.session import StreamSession
from ..streaming.transport import StreamTransport
from ..streaming.types import StreamCallbacks, StreamConfig, StreamError, StreamProgress, StreamStatus
from .document import ChapterDocument, SelectionSnapshot
from .history import ContentHistory
from .papers import PaperCollectionMonitor, PaperCollectionOutcome, PaperCollectionState

__all__ = [
    "ChapterSaver",
    "GenerationKind",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationResult",
    "GenerationState",
    "LoggingNotifier",
    "NoticeLevel",
    "Notifier",
    "SessionFactory",
]

LOGGER = logging.getLogger(__name__)

INIT_PERCENT = 51.0
WRITING_START_PERCENT = 52.0
WRITING_SPAN_PERCENT = 43.0
HEARTBEAT_CEILING_PERCENT = 95.0
HEARTBEAT_STEP_PERCENT = 0.5
ERROR_PERCENT = 50.0
SELECTION_START_PERCENT = 10.0
SELECTION_STREAM_PERCENT = 35.0
SELECTION_SPAN_PERCENT = 60.0
SECTION_ESTIMATED_WORDS = 600


class GenerationKind(str, enum.Enum):
    PROGRESSIVE = "progressive"
    OUTLINE = "outline"
    IMPROVE = "improve"
    SECTION = "section"
    REPHRASE = "rephrase"
    EXPAND = "expand"

    @property
    def is_chapter(self) -> bool:
        return self in _CHAPTER_KINDS

    @property
    def is_selection(self) -> bool:
        return self in (GenerationKind.REPHRASE, GenerationKind.EXPAND)


_CHAPTER_KINDS = frozenset({GenerationKind.PROGRESSIVE, GenerationKind.OUTLINE, GenerationKind.IMPROVE})


class GenerationOutcome(str, enum.Enum):
    COMPLETED = "completed"
    NEEDS_MANUAL_INSERT = "needs_manual_insert"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    OFFLINE = "offline"
    PAPERS_FAILED = "papers_failed"
    FAILED = "failed"
    STOPPED = "stopped"
    BUSY = "busy"
    NOT_CONFIRMED = "not_confirmed"
    INVALID_REQUEST = "invalid_request"


class NoticeLevel(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notifier(Protocol):
    """Receives user-facing notices (toasts, status lines, console output)."""

    def notify(self, level: NoticeLevel, title: str, description: str = "") -> None:
        ...


class LoggingNotifier:
    """Fallback notifier that writes notices to the module logger."""

    _LEVELS = {
        NoticeLevel.INFO: logging.INFO,
        NoticeLevel.SUCCESS: logging.INFO,
        NoticeLevel.WARNING: logging.WARNING,
        NoticeLevel.ERROR: logging.ERROR,
    }

    def notify(self, level: NoticeLevel, title: str, description: str = "") -> None:
        LOGGER.log(self._LEVELS.get(level, logging.INFO), "%s: %s", title, description)


ChapterSaver = Callable[[ChapterDocument], Awaitable[Any]]
SessionFactory = Callable[[StreamCallbacks], StreamSession]
StateListener = Callable[["GenerationState"], None]


@dataclass(slots=True)
class GenerationState:
    """UI-facing mirror of the active generation and its pre-stream phases."""

    is_generating: bool = False
    generation_type: GenerationKind | None = None
    generation_phase: str = ""
    generation_percentage: float = 0.0
    generation_progress: str = ""
    stream_word_count: int = 0
    estimated_total_words: int = 0
    is_collecting_papers: bool = False
    paper_collection: PaperCollectionState | None = None
    is_reconnecting: bool = False
    reconnect_attempts: int = 0
    max_reconnect_attempts: int = 0
    partial_content_saved: bool = False
    saved_word_count_on_error: int = 0
    show_recovery_dialog: bool = False
    highest_autosave_word_count: int = 0
    current_generation_id: str | None = None
    pending_manual_insert: str | None = None
    last_error: StreamError | None = None


@dataclass(slots=True)
class GenerationResult:
    outcome: GenerationOutcome
    kind: GenerationKind | None = None
    word_count: int = 0
    saved_word_count: int = 0
    content: str = ""
    generation_id: str | None = None
    error: StreamError | None = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.outcome is GenerationOutcome.COMPLETED


@dataclass(slots=True)
class _StreamRequest:
    """Everything one stream run needs to render and finalize its output."""

    kind: GenerationKind
    params: dict[str, Any]
    estimated_words: int
    usage_description: str
    writing_label: str
    base_content: str = ""
    initial_content: str = ""
    selection: SelectionSnapshot | None = None
    fallback_usage: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


class GenerationOrchestrator:
    """Coordinates balance checks, paper collection and text streams for a chapter.

    Only one generation may run at a time; overlapping requests return a
    ``BUSY`` result without touching the running one.

    Args:
        api: Backend client used for paper collection, usage and balance.
        document: The chapter being edited; streamed text is rendered into it.
        project: Project slug used in backend routes.
        balance: Shared balance store consulted before anything opens.
        notifier: Sink for user-facing notices.
        saver: Coroutine persisting the chapter after completion or stop.
        session_factory: Builds a stream session from callbacks.
        stream_config: Overrides for the stream sessions.
        network: Runtime connectivity source.
        probe: Pre-flight connection check; built from ``network`` and
            ``api.ping`` when omitted.
        paper_poll_interval: Seconds between paper collection status polls.
        paper_poll_max_attempts: Polls before paper collection times out.
        default_style: Rephrase style used when none is given.
        sleep: Coroutine used by the paper collection poller.
        on_state: Called after every state change.
    """

    def __init__(
        self,
        api: GenerationApiClient,
        document: ChapterDocument,
        *,
        project: str,
        balance: BalanceStore,
        notifier: Notifier | None = None,
        saver: ChapterSaver | None = None,
        session_factory: SessionFactory | None = None,
        stream_config: StreamConfig | Mapping[str, Any] | None = None,
        network: NetworkMonitor | None = None,
        probe: ConnectionQualityProbe | None = None,
        paper_poll_interval: float = 5.0,
        paper_poll_max_attempts: int = 120,
        default_style: str = "Academic Formal",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_state: StateListener | None = None,
    ) -> None:
        self._api = api
        self._document = document
        self._project = project
        self._balance = balance
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._saver = saver
        self._stream_config = StreamConfig.merged(stream_config)
        self._network = network or NetworkMonitor()
        self._probe = probe or ConnectionQualityProbe(
            self._network,
            ping=api.ping,
            timeout=self._stream_config.connection_check_timeout,
        )
        self._session_factory = session_factory or self._build_session
        self._transport: StreamTransport | None = None
        self._paper_poll_interval = paper_poll_interval
        self._paper_poll_max_attempts = paper_poll_max_attempts
        self._default_style = default_style
        self._sleep = sleep
        self._on_state = on_state

        self._state = GenerationState()
        self._history = ContentHistory()
        self._session: StreamSession | None = None
        self._papers_task: asyncio.Task[PaperCollectionOutcome] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._last_request: _StreamRequest | None = None
        self._busy = False
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------
    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def document(self) -> ChapterDocument:
        return self._document

    @property
    def history(self) -> ContentHistory:
        return self._history

    @property
    def session(self) -> StreamSession | None:
        """Session of the current or most recent stream."""

        return self._session

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    # ------------------------------------------------------------------
    # Generation entry points
    # ------------------------------------------------------------------
    async def generate_chapter(
        self, kind: GenerationKind | str = GenerationKind.PROGRESSIVE
    ) -> GenerationResult:
        """Generate the whole chapter: balance, probe, papers, then stream."""

        kind = GenerationKind(kind)
        if not kind.is_chapter:
            raise ValueError(f"{kind.value!r} is not a whole-chapter generation type")
        if self._busy:
            return self._busy_result(kind)

        target = self._document.target_word_count
        if kind is GenerationKind.IMPROVE:
            required, label = WordEstimates.improve(), "improve this chapter"
        else:
            required, label = WordEstimates.chapter(target), "generate this chapter with AI"

        self._busy = True
        self._stop_requested = False
        try:
            blocked = self._ensure_balance(required, label, kind)
            if blocked is None:
                blocked = await self._ensure_connection(kind)
            if blocked is not None:
                return blocked

            self._begin(kind, estimated=target)
            self._update(
                generation_phase="Papers",
                generation_percentage=5.0,
                generation_progress="Checking for verified sources...",
            )
            papers = await self._collect_papers()
            if papers is not PaperCollectionOutcome.COMPLETED:
                return self._papers_failed(kind, papers)

            self._update(
                generation_phase="Initializing",
                generation_progress="Starting AI generation with verified sources...",
                generation_percentage=INIT_PERCENT,
            )
            request = _StreamRequest(
                kind=kind,
                params={"generation_type": kind.value},
                estimated_words=target,
                usage_description=f"Chapter generation ({self._document.chapter_number})",
                writing_label="Writing chapter content",
            )
            return await self._run_stream(request)
        finally:
            self._busy = False

    async def generate_section(self, section_type: str) -> GenerationResult:
        """Generate one section and append it after the existing chapter text.

        Sections reuse the sources collected for the chapter, so no paper
        collection runs.
        """

        kind = GenerationKind.SECTION
        if not section_type:
            return self._invalid(kind, "A section type is required")
        if self._busy:
            return self._busy_result(kind)

        self._busy = True
        self._stop_requested = False
        try:
            blocked = self._ensure_balance(WordEstimates.section(), f"generate the {section_type} section", kind)
            if blocked is None:
                blocked = await self._ensure_connection(kind)
            if blocked is not None:
                return blocked

            self._begin(kind, estimated=SECTION_ESTIMATED_WORDS)
            self._update(
                generation_phase="Papers",
                generation_percentage=50.0,
                generation_progress="Using existing verified sources...",
            )
            self._update(
                generation_phase="Section",
                generation_progress=f"Writing {section_type} section with verified sources...",
                generation_percentage=INIT_PERCENT,
            )
            request = _StreamRequest(
                kind=kind,
                params={"generation_type": kind.value, "section_type": section_type},
                estimated_words=SECTION_ESTIMATED_WORDS,
                usage_description=f"Section generation ({section_type})",
                writing_label=f"Writing {section_type} section",
                base_content=self._document.text,
                extra={"section_type": section_type},
            )
            return await self._run_stream(request)
        finally:
            self._busy = False

    async def transform_selection(
        self,
        action: GenerationKind | str,
        selection: Any,
        *,
        style: str | None = None,
    ) -> GenerationResult:
        """Rephrase or expand ``selection`` and splice the result back in.

        The stream fills its own buffer; the chapter text is only touched on
        completion. If the selected text moved in the meantime the result is
        kept in ``state.pending_manual_insert`` for the user to place.
        """

        kind = GenerationKind(action)
        if not kind.is_selection:
            raise ValueError(f"{kind.value!r} is not a selection action")
        if self._busy:
            return self._busy_result(kind)

        try:
            snapshot = self._document.capture_selection(selection)
        except (TypeError, ValueError) as exc:
            return self._invalid(kind, f"Invalid selection: {exc}")
        if not snapshot.text.strip():
            return self._invalid(kind, "Select some text first")

        verb = "Rephrasing" if kind is GenerationKind.REPHRASE else "Expanding"
        self._busy = True
        self._stop_requested = False
        try:
            blocked = self._ensure_balance(WordEstimates.selection(), f"{kind.value} selected text", kind)
            if blocked is None:
                blocked = await self._ensure_connection(kind)
            if blocked is not None:
                return blocked

            selected_words = snapshot.word_count
            multiplier = 2 if kind is GenerationKind.EXPAND else 1
            self._begin(kind, estimated=max(selected_words * multiplier, 100))
            self._update(
                generation_phase=verb,
                generation_percentage=SELECTION_START_PERCENT,
                generation_progress=f"{verb} selected text...",
            )
            params: dict[str, Any] = {"generation_type": kind.value, "selected_text": snapshot.text}
            description = "Expand text"
            if kind is GenerationKind.REPHRASE:
                resolved_style = style or self._default_style
                params["style"] = resolved_style
                description = f"Rephrase ({resolved_style})"
            request = _StreamRequest(
                kind=kind,
                params=params,
                estimated_words=self._state.estimated_total_words,
                usage_description=description,
                writing_label=f"{verb} selected text",
                selection=snapshot,
                fallback_usage=selected_words * multiplier,
            )
            return await self._run_stream(request)
        finally:
            self._busy = False

    async def regenerate_chapter(self, *, confirmed: bool = False) -> GenerationResult:
        """Discard the chapter text and generate it again.

        Nothing happens until the caller confirms. The previous text is pushed
        to the undo history first.
        """

        kind = GenerationKind.PROGRESSIVE
        if not confirmed:
            return GenerationResult(GenerationOutcome.NOT_CONFIRMED, kind)
        if self._busy:
            return self._busy_result(kind)
        required = WordEstimates.chapter(self._document.target_word_count)
        blocked = self._ensure_balance(required, "regenerate this chapter", kind)
        if blocked is not None:
            return blocked

        if self._document.text.strip():
            self.push_history("Before regenerate")
            self._notify(NoticeLevel.INFO, "Previous content saved", "You can undo to restore it if needed.")
        self._document.set_text("")
        self._touch()
        return await self.generate_chapter(kind)

    async def handle_generation(
        self,
        kind: GenerationKind | str,
        *,
        section: str | None = None,
        selection: Any = None,
        style: str | None = None,
    ) -> GenerationResult:
        """Dispatch a generation request by type."""

        kind = GenerationKind(kind)
        if kind is GenerationKind.SECTION:
            if not section:
                return self._invalid(kind, "A section type is required")
            return await self.generate_section(section)
        if kind.is_selection:
            if selection is None:
                return self._invalid(kind, "Select some text first")
            return await self.transform_selection(kind, selection, style=style)
        return await self.generate_chapter(kind)

    async def resume_generation(self) -> GenerationResult:
        """Continue an interrupted chapter stream from the text already held.

        The new stream is seeded with the chapter text so the server resumes
        after it, and carries the last known generation id.
        """

        previous = self._last_request
        self.dismiss_recovery()
        if previous is None or not previous.kind.is_chapter:
            return self._invalid(previous.kind if previous else None, "Nothing to resume")
        if self._busy:
            return self._busy_result(previous.kind)

        self._busy = True
        self._stop_requested = False
        try:
            if previous.kind is GenerationKind.IMPROVE:
                required = WordEstimates.improve()
            else:
                required = WordEstimates.chapter(self._document.target_word_count)
            blocked = self._ensure_balance(required, "resume this chapter", previous.kind)
            if blocked is None:
                blocked = await self._ensure_connection(previous.kind)
            if blocked is not None:
                return blocked
            params = dict(previous.params)
            generation_id = self._state.current_generation_id
            if generation_id:
                params["generation_id"] = generation_id
            self._begin(previous.kind, estimated=previous.estimated_words)
            self._update(
                generation_phase="Initializing",
                generation_progress="Resuming generation...",
                generation_percentage=INIT_PERCENT,
                current_generation_id=generation_id,
            )
            request = _StreamRequest(
                kind=previous.kind,
                params=params,
                estimated_words=previous.estimated_words,
                usage_description=previous.usage_description,
                writing_label=previous.writing_label,
                initial_content=self._document.text,
            )
            return await self._run_stream(request)
        finally:
            self._busy = False

    def dismiss_recovery(self) -> None:
        self._update(
            show_recovery_dialog=False,
            partial_content_saved=False,
            saved_word_count_on_error=0,
        )

    def stop_generation(self) -> bool:
        """Abort the running generation, keeping whatever was streamed.

        Returns ``False`` when nothing was running.
        """

        state = self._state
        if not state.is_generating and not state.is_collecting_papers:
            return False
        self._stop_requested = True
        papers_task = self._papers_task
        if papers_task is not None and not papers_task.done():
            papers_task.cancel()
        session = self._session
        word_count = 0
        request = self._last_request
        if session is not None and session.is_active:
            word_count = session.word_count
            session.stop()
            if word_count > 0 and request is not None and not request.kind.is_selection:
                self._document.set_text(self._compose(request, session.get_content()))

        if word_count > 0:
            self._notify(
                NoticeLevel.INFO,
                "Generation Stopped",
                f"{word_count} words have been saved. You can continue editing or regenerate.",
            )
            self._spawn(self._save())
        else:
            self._notify(NoticeLevel.INFO, "Generation Stopped", "Generation was cancelled.")

        self._update(
            is_generating=False,
            is_collecting_papers=False,
            is_reconnecting=False,
            reconnect_attempts=0,
            generation_phase="Stopped",
            generation_progress="Generation stopped by user",
        )
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def push_history(self, action: str) -> bool:
        return self._history.push(self._document.text, action)

    def undo(self) -> bool:
        entry = self._history.undo(self._document.text)
        if entry is None:
            self._notify(NoticeLevel.ERROR, "Nothing to undo")
            return False
        self._document.set_text(entry.content)
        self._notify(NoticeLevel.SUCCESS, "Undone", f'Reverted "{entry.action}" action')
        self._touch()
        return True

    def redo(self) -> bool:
        content = self._history.redo(self._document.text)
        if content is None:
            return False
        self._document.set_text(content)
        self._touch()
        return True

    def clear_history(self) -> None:
        self._history.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def wait_for_background_tasks(self) -> None:
        """Wait for pending saves and usage recording to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        self.stop_generation()
        papers_task = self._papers_task
        if papers_task is not None and not papers_task.done():
            papers_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await papers_task
        if self._session is not None:
            await self._session.aclose()
        await self.wait_for_background_tasks()

    # ------------------------------------------------------------------
    # Pre-stream gates
    # ------------------------------------------------------------------
    def _ensure_balance(self, required: int, label: str, kind: GenerationKind) -> GenerationResult | None:
        check = self._balance.check_balance(required)
        if check.can_proceed:
            return None
        LOGGER.info("Insufficient balance to %s (need %s, have %s)", label, check.required, check.balance)
        self._notify(
            NoticeLevel.ERROR,
            "Insufficient word balance",
            f"You need {check.required} words to {label} but only have {check.balance}.",
        )
        return GenerationResult(
            GenerationOutcome.INSUFFICIENT_BALANCE,
            kind,
            message=f"Short by {check.shortage} words",
        )

    async def _ensure_connection(self, kind: GenerationKind) -> GenerationResult | None:
        result = await self._probe.check()
        if result.quality is ConnectionQuality.OFFLINE:
            self._notify(
                NoticeLevel.ERROR,
                "No Internet Connection",
                "Please check your internet connection and try again.",
            )
            return GenerationResult(GenerationOutcome.OFFLINE, kind, message=result.advisory or "")
        if result.quality is ConnectionQuality.SLOW:
            self._notify(
                NoticeLevel.WARNING,
                "Slow Connection Detected",
                "Content will be auto-saved during generation.",
            )
        elif not result.reachable and result.advisory:
            self._notify(NoticeLevel.INFO, "Connection check skipped", result.advisory)
        return None

    async def _collect_papers(self) -> PaperCollectionOutcome:
        monitor = PaperCollectionMonitor(
            self._api,
            self._project,
            interval=self._paper_poll_interval,
            max_attempts=self._paper_poll_max_attempts,
            sleep=self._sleep,
            on_update=self._on_papers_update,
        )
        self._update(is_collecting_papers=True, paper_collection=monitor.state)
        task = asyncio.create_task(monitor.run())
        self._papers_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
            return PaperCollectionOutcome.CANCELLED
        finally:
            self._papers_task = None
            self._update(is_collecting_papers=False)

    def _on_papers_update(self, papers: PaperCollectionState) -> None:
        if self._stop_requested:
            return
        self._update(
            paper_collection=papers,
            generation_percentage=papers.generation_percentage,
            generation_progress=papers.message,
        )

    def _papers_failed(self, kind: GenerationKind, outcome: PaperCollectionOutcome) -> GenerationResult:
        if outcome is PaperCollectionOutcome.CANCELLED:
            return self._stopped_result(kind)
        papers = self._state.paper_collection
        message = papers.message if papers else "Source collection failed"
        self._notify(
            NoticeLevel.ERROR,
            "Paper Collection Failed",
            "Unable to collect verified papers. Please try again.",
        )
        self._update(is_generating=False, generation_phase="Error", generation_progress=message)
        return GenerationResult(GenerationOutcome.PAPERS_FAILED, kind, message=message)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def _run_stream(self, request: _StreamRequest) -> GenerationResult:
        if self._stop_requested:
            return self._stopped_result(request.kind)
        self._last_request = request
        session = self._session_factory(self._callbacks_for(request))
        previous, self._session = self._session, session
        if previous is not None and previous is not session:
            await previous.aclose()
        self._update(max_reconnect_attempts=session.config.max_reconnect_attempts)

        url = self._api.stream_url(self._project, self._document.chapter_number or 0)
        await session.start(
            url,
            request.params,
            request.estimated_words,
            initial_content=request.initial_content,
        )
        status = await session.wait()

        if status is StreamStatus.COMPLETE:
            return await self._finish_success(request, session)
        if status is StreamStatus.ERROR:
            return self._finish_error(request, session)
        return self._stopped_result(request.kind, session)

    def _callbacks_for(self, request: _StreamRequest) -> StreamCallbacks:
        def on_content(content: str, word_count: int) -> None:
            if self._stop_requested:
                return
            if not request.kind.is_selection:
                self._document.set_text(self._compose(request, content))
            self._update(stream_word_count=word_count)

        def on_progress(progress: StreamProgress) -> None:
            if not self._stop_requested:
                self._apply_progress(request, progress)

        def on_reconnecting(attempt: int, maximum: int) -> None:
            self._update(
                is_reconnecting=True,
                reconnect_attempts=attempt,
                max_reconnect_attempts=maximum,
                generation_phase="Reconnecting",
                generation_progress=f"Connection lost. Reconnecting... ({attempt}/{maximum})",
            )

        def on_autosave(word_count: int) -> None:
            session = self._session
            generation_id = session.generation_id if session is not None else None
            self._update(
                highest_autosave_word_count=max(self._state.highest_autosave_word_count, word_count),
                current_generation_id=generation_id or self._state.current_generation_id,
            )

        def on_heartbeat() -> None:
            percentage = self._state.generation_percentage
            if self._state.is_generating and percentage < HEARTBEAT_CEILING_PERCENT:
                self._update(
                    generation_percentage=min(percentage + HEARTBEAT_STEP_PERCENT, HEARTBEAT_CEILING_PERCENT)
                )

        def on_error(error: StreamError) -> None:
            self._update(last_error=error)
            session = self._session
            if session is not None and session.is_reconnecting:
                self._update(generation_progress=f"{error.message}. Resuming...")

        return StreamCallbacks(
            on_content=on_content,
            on_progress=on_progress,
            on_error=on_error,
            on_reconnecting=on_reconnecting,
            on_autosave=on_autosave,
            on_heartbeat=on_heartbeat,
        )

    def _apply_progress(self, request: _StreamRequest, progress: StreamProgress) -> None:
        state = self._state
        if progress.phase == "Initializing":
            if state.is_reconnecting:
                self._notify(NoticeLevel.SUCCESS, "Reconnected", "Generation resumed successfully.")
            self._update(
                is_reconnecting=False,
                reconnect_attempts=0,
                generation_phase="Connecting",
                generation_progress="Connecting to AI service...",
                generation_percentage=self._writing_floor(request),
            )
        elif progress.phase == "Generating":
            word_count = progress.word_count
            estimate = request.estimated_words
            self._update(
                is_reconnecting=False,
                reconnect_attempts=0,
                stream_word_count=word_count,
                generation_phase="Writing",
                generation_percentage=self._writing_percentage(request, word_count),
                generation_progress=f"{request.writing_label}... ({word_count} / {estimate} words)",
            )

    def _writing_floor(self, request: _StreamRequest) -> float:
        if request.kind.is_selection:
            return SELECTION_STREAM_PERCENT
        return WRITING_START_PERCENT

    def _writing_percentage(self, request: _StreamRequest, word_count: int) -> float:
        ratio = word_count / max(request.estimated_words, 1)
        if request.kind.is_selection:
            return SELECTION_STREAM_PERCENT + min(ratio * SELECTION_SPAN_PERCENT, SELECTION_SPAN_PERCENT)
        return WRITING_START_PERCENT + min(ratio * WRITING_SPAN_PERCENT, WRITING_SPAN_PERCENT)

    @staticmethod
    def _compose(request: _StreamRequest, content: str) -> str:
        if request.base_content:
            return f"{request.base_content}\n\n{content}"
        return content

    async def _finish_success(self, request: _StreamRequest, session: StreamSession) -> GenerationResult:
        content = session.get_content()
        final_words = session.word_count
        kind = request.kind
        generation_id = session.generation_id or self._state.current_generation_id

        if kind.is_selection:
            return await self._finish_selection(request, content, final_words, generation_id)

        self._document.set_text(self._compose(request, content))
        self._update(
            is_generating=False,
            is_reconnecting=False,
            generation_phase="Complete",
            generation_percentage=100.0,
            stream_word_count=final_words,
            current_generation_id=generation_id,
        )
        if kind is GenerationKind.SECTION:
            section = request.extra.get("section_type", "")
            self._update(generation_progress=f"Generated {section} section ({final_words} words)")
            self._notify(
                NoticeLevel.SUCCESS,
                "Section Generated Successfully",
                f"Added {section} section with {final_words} words and verified citations.",
            )
        else:
            self._update(generation_progress=f"Generated {final_words} words successfully")
            self._notify(NoticeLevel.SUCCESS, "Generation Complete", f"Generated {final_words} words.")

        await self._save()
        self._spawn(
            self._record_usage(final_words, request.usage_description, "chapter", self._document.chapter_id)
        )
        return GenerationResult(
            GenerationOutcome.COMPLETED,
            kind,
            word_count=final_words,
            saved_word_count=final_words,
            content=self._document.text,
            generation_id=generation_id,
        )

    async def _finish_selection(
        self,
        request: _StreamRequest,
        content: str,
        final_words: int,
        generation_id: str | None,
    ) -> GenerationResult:
        kind = request.kind
        verb = "rephrased" if kind is GenerationKind.REPHRASE else "expanded"
        text = content.strip()
        if not text:
            return self._selection_failed(kind, "Empty response from AI service")

        snapshot = request.selection
        spliced = snapshot is not None and self._document.splice(snapshot, text)
        self._update(
            is_generating=False,
            generation_phase="Complete",
            generation_percentage=100.0,
            generation_progress=f"Text {verb} successfully",
            stream_word_count=final_words,
            pending_manual_insert=None if spliced else text,
        )
        if spliced:
            await self._save()
            self._notify(
                NoticeLevel.SUCCESS,
                f"Text {verb.capitalize()} Successfully",
                f"{verb.capitalize()} selection ({snapshot.word_count} words).",
            )
        else:
            self._notify(
                NoticeLevel.WARNING,
                "Please manually replace the selected text",
                "The generated text is ready but could not be automatically inserted.",
            )

        used = final_words or count_words(text) or request.fallback_usage
        self._spawn(self._record_usage(used, request.usage_description, "chapter", self._document.chapter_id))
        return GenerationResult(
            GenerationOutcome.COMPLETED if spliced else GenerationOutcome.NEEDS_MANUAL_INSERT,
            kind,
            word_count=used,
            content=text,
            generation_id=generation_id,
        )

    def _selection_failed(self, kind: GenerationKind, message: str) -> GenerationResult:
        noun = "Rephrasing" if kind is GenerationKind.REPHRASE else "Expansion"
        self._update(
            is_generating=False,
            generation_phase="Error",
            generation_progress=f"Text {noun.lower()} error",
        )
        self._notify(NoticeLevel.ERROR, f"{noun} Failed", message)
        return GenerationResult(GenerationOutcome.FAILED, kind, message=message)

    def _finish_error(self, request: _StreamRequest, session: StreamSession) -> GenerationResult:
        errors = session.errors
        error = errors[-1] if errors else StreamError(ErrorCode.SERVER_ERROR, "Generation failed", False)
        kind = request.kind
        buffered = session.word_count
        persisted = max(self._state.highest_autosave_word_count, session.server_ack_word_count)
        substantial = session.config.substantial_word_count
        self._update(
            is_generating=False,
            is_reconnecting=False,
            generation_phase="Error",
            generation_percentage=ERROR_PERCENT,
            last_error=error,
            current_generation_id=session.generation_id or self._state.current_generation_id,
        )
        if error.saved_word_count:
            self._update(partial_content_saved=True, saved_word_count_on_error=error.saved_word_count)

        if kind.is_selection:
            return self._selection_failed(kind, error.message)

        if error.code == ErrorCode.OFFLINE_MODE:
            self._update(generation_progress="AI services offline")
            self._notify(
                NoticeLevel.ERROR,
                "AI Services Offline",
                "Please check your internet connection and try again.",
            )
        elif error.code == ErrorCode.OFFLINE:
            self._update(generation_progress="No internet connection")
            self._notify(
                NoticeLevel.ERROR,
                "No Internet Connection",
                "Please check your internet connection and try again.",
            )
        elif error.code == ErrorCode.RETRIES_EXHAUSTED:
            self._update(generation_progress="Connection failed after multiple attempts")
            if buffered > substantial:
                self._update(
                    partial_content_saved=True,
                    saved_word_count_on_error=buffered,
                    show_recovery_dialog=True,
                )
                self._notify(
                    NoticeLevel.WARNING,
                    "Connection Lost",
                    f"{buffered} words generated, {persisted} confirmed saved on the server. "
                    "Check and resume if needed.",
                )
            else:
                self._notify(
                    NoticeLevel.ERROR,
                    "Connection Error",
                    "Please check your internet connection and try again.",
                )
        elif error.recoverable:
            saved = error.saved_word_count or persisted
            self._update(
                generation_progress=f"Generation interrupted ({saved} words saved)",
                show_recovery_dialog=True,
            )
            self._notify(
                NoticeLevel.WARNING,
                "Generation Interrupted",
                f"{saved} words were saved. You can resume generation.",
            )
        else:
            self._update(generation_progress="Generation failed")
            self._notify(NoticeLevel.ERROR, "Generation Error", error.message or "Please try again.")

        return GenerationResult(
            GenerationOutcome.FAILED,
            kind,
            word_count=buffered,
            saved_word_count=error.saved_word_count or persisted,
            content=session.get_content(),
            generation_id=self._state.current_generation_id,
            error=error,
            message=error.message,
        )

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    async def _save(self) -> None:
        if self._saver is None:
            return
        try:
            await self._saver(self._document)
        except Exception:
            LOGGER.exception("Failed to save chapter %s", self._document.chapter_id)

    async def _record_usage(
        self,
        words: int,
        description: str,
        reference_type: str,
        reference_id: int | str | None,
    ) -> None:
        if words <= 0:
            return
        try:
            await self._api.record_word_usage(words, description, reference_type, reference_id)
        except (ApiError, httpx.HTTPError) as exc:
            LOGGER.error("Failed to record word usage (%s): %s", description, exc)
            return
        await self._balance.refresh(self._api)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build_session(self, callbacks: StreamCallbacks) -> StreamSession:
        if self._transport is None:
            self._transport = self._api.build_stream_transport()
        # The orchestrator already pinged; the session only needs the offline check.
        probe = ConnectionQualityProbe(self._network, timeout=self._stream_config.connection_check_timeout)
        return StreamSession(
            self._transport,
            callbacks=callbacks,
            config=self._stream_config,
            network=self._network,
            probe=probe,
        )

    def _begin(self, kind: GenerationKind, *, estimated: int) -> None:
        self._update(
            is_generating=True,
            generation_type=kind,
            stream_word_count=0,
            estimated_total_words=estimated,
            is_reconnecting=False,
            reconnect_attempts=0,
            partial_content_saved=False,
            saved_word_count_on_error=0,
            show_recovery_dialog=False,
            highest_autosave_word_count=0,
            pending_manual_insert=None,
            last_error=None,
        )

    def _busy_result(self, kind: GenerationKind) -> GenerationResult:
        LOGGER.warning("Ignoring %s request while another generation is running", kind.value)
        return GenerationResult(GenerationOutcome.BUSY, kind, message="A generation is already running")

    def _invalid(self, kind: GenerationKind | None, message: str) -> GenerationResult:
        self._notify(NoticeLevel.WARNING, "Cannot start generation", message)
        return GenerationResult(GenerationOutcome.INVALID_REQUEST, kind, message=message)

    def _stopped_result(self, kind: GenerationKind, session: StreamSession | None = None) -> GenerationResult:
        word_count = session.word_count if session is not None else 0
        return GenerationResult(
            GenerationOutcome.STOPPED,
            kind,
            word_count=word_count,
            content=session.get_content() if session is not None else "",
            message="Generation stopped by user",
        )

    def _update(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self._state, name, value)
        self._touch()

    def _touch(self) -> None:
        if self._on_state is None:
            return
        try:
            self._on_state(self._state)
        except Exception:
            LOGGER.exception("Generation state listener failed")

    def _notify(self, level: NoticeLevel, title: str, description: str = "") -> None:
        try:
            self._notifier.notify(level, title, description)
        except Exception:
            LOGGER.exception("Notifier failed for %r", title)
