"""Tests for the chapter generation orchestrator."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from chapterstream.billing import BalanceStore
from chapterstream.generation import (
    ChapterDocument,
    GenerationKind,
    GenerationOrchestrator,
    GenerationOutcome,
    NoticeLevel,
)
from chapterstream.streaming.connectivity import NetworkMonitor
from chapterstream.streaming.errors import TransportError
from chapterstream.streaming.session import StreamSession
from chapterstream.streaming.types import StreamCallbacks
from tests.helpers import CLOSE, FakeApi, FakeTransport, RecordingSleep, content, until, words


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[tuple[NoticeLevel, str, str]] = []

    def notify(self, level: NoticeLevel, title: str, description: str = "") -> None:
        self.notices.append((level, title, description))

    def titles(self) -> list[str]:
        return [title for _, title, _ in self.notices]

    def description(self, title: str) -> str:
        return next(text for _, name, text in self.notices if name == title)


class Harness:
    """Orchestrator wired to fakes, with everything it touched recorded."""

    def __init__(
        self,
        transport: FakeTransport,
        *,
        api: FakeApi | None = None,
        document: ChapterDocument | None = None,
        balance: int = 10_000,
        network: NetworkMonitor | None = None,
        **stream_config: Any,
    ) -> None:
        self.transport = transport
        self.api = api or FakeApi(balance=balance)
        self.document = document or ChapterDocument(
            chapter_id=11, chapter_number=2, title="Literature Review", target_word_count=100
        )
        self.balance = BalanceStore({"balance": balance})
        self.notifier = RecordingNotifier()
        self.saved: list[str] = []
        self.phases: list[str] = []
        self.stream_config = {"render_interval": 0.0, **stream_config}

        async def saver(document: ChapterDocument) -> None:
            self.saved.append(document.text)

        def on_state(state: Any) -> None:
            if not self.phases or self.phases[-1] != state.generation_phase:
                self.phases.append(state.generation_phase)

        self.orchestrator = GenerationOrchestrator(
            self.api,  # type: ignore[arg-type]
            self.document,
            project="my-thesis",
            balance=self.balance,
            notifier=self.notifier,
            saver=saver,
            session_factory=self._session,
            network=network,
            sleep=RecordingSleep(),
            on_state=on_state,
        )

    def _session(self, callbacks: StreamCallbacks) -> StreamSession:
        return StreamSession(
            self.transport,
            callbacks=callbacks,
            config=self.stream_config,
            sleep=RecordingSleep(),
            random=lambda: 0.0,
        )


def complete(count: int) -> dict[str, Any]:
    return {"type": "complete", "final_word_count": count}


async def run(coro: Any, timeout: float = 2.0) -> Any:
    return await asyncio.wait_for(coro, timeout)


# =============================================================================
# Whole-chapter generation
# =============================================================================


@pytest.mark.asyncio
async def test_generate_chapter_streams_saves_and_records_usage() -> None:
    text = words(80)
    harness = Harness(FakeTransport([{"type": "start", "generation_id": "gen-1"}, content(text), complete(80)]))

    result = await run(harness.orchestrator.generate_chapter())
    await harness.orchestrator.wait_for_background_tasks()

    assert result.outcome is GenerationOutcome.COMPLETED
    assert result.word_count == 80
    assert result.generation_id == "gen-1"
    assert harness.document.text == text
    assert harness.saved == [text]
    assert harness.api.started == ["my-thesis"]
    assert harness.api.usage == [
        {"words": 80, "description": "Chapter generation (2)", "reference_type": "chapter", "reference_id": 11}
    ]
    assert harness.api.balance_fetches == 1
    assert harness.balance.words == 10_000 - 80
    call = harness.transport.calls[0]
    assert call["url"] == "https://thesis.test/projects/my-thesis/chapters/2/stream"
    assert call["generation_type"] == "progressive"
    state = harness.orchestrator.state
    assert not state.is_generating
    assert state.generation_percentage == 100
    assert "Papers" in harness.phases
    assert harness.phases[-4:] == ["Initializing", "Connecting", "Writing", "Complete"]
    assert "Generation Complete" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_writing_progress_maps_into_generation_band() -> None:
    harness = Harness(FakeTransport([{"type": "start"}, content(words(50))]))
    orchestrator = harness.orchestrator

    task = asyncio.create_task(orchestrator.generate_chapter())
    await until(lambda: orchestrator.state.stream_word_count == 50)

    assert orchestrator.state.generation_phase == "Writing"
    assert orchestrator.state.generation_percentage == pytest.approx(52 + 0.5 * 43)
    assert orchestrator.state.generation_progress == "Writing chapter content... (50 / 100 words)"
    orchestrator.stop_generation()
    await run(task)


@pytest.mark.asyncio
async def test_heartbeat_nudges_progress() -> None:
    harness = Harness(FakeTransport([{"type": "start"}, content(words(10)), {"type": "heartbeat"}]))
    orchestrator = harness.orchestrator
    writing = 52 + 0.1 * 43

    task = asyncio.create_task(orchestrator.generate_chapter())
    await until(lambda: orchestrator.state.generation_percentage > writing + 0.01)

    assert orchestrator.state.generation_percentage == pytest.approx(writing + 0.5)
    orchestrator.stop_generation()
    await run(task)


@pytest.mark.asyncio
async def test_insufficient_balance_blocks_before_anything_opens() -> None:
    harness = Harness(FakeTransport(), balance=100)

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.INSUFFICIENT_BALANCE
    assert result.message == "Short by 10 words"
    assert harness.api.started == []
    assert harness.transport.calls == []
    assert "Insufficient word balance" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_offline_blocks_before_anything_opens() -> None:
    harness = Harness(FakeTransport(), network=NetworkMonitor(online=False))

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.OFFLINE
    assert harness.api.started == []
    assert harness.api.pings == 0
    assert "No Internet Connection" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_paper_collection_failure_stops_generation() -> None:
    api = FakeApi(paper_statuses=[{"success": True, "data": {"status": "collection_failed"}}])
    harness = Harness(FakeTransport(), api=api)

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.PAPERS_FAILED
    assert harness.transport.calls == []
    assert harness.orchestrator.state.generation_phase == "Error"
    assert not harness.orchestrator.state.is_generating
    assert "Paper Collection Failed" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_stop_during_paper_collection_cancels_polling() -> None:
    api = FakeApi(paper_statuses=[{"success": True, "data": {"status": "processing"}}])
    harness = Harness(FakeTransport(), api=api)
    orchestrator = harness.orchestrator
    orchestrator._paper_poll_max_attempts = 100_000  # type: ignore[attr-defined]

    task = asyncio.create_task(orchestrator.generate_chapter())
    await until(lambda: orchestrator.state.is_collecting_papers)
    assert orchestrator.stop_generation()
    result = await run(task)

    assert result.outcome is GenerationOutcome.STOPPED
    assert harness.transport.calls == []
    assert not orchestrator.state.is_collecting_papers
    assert orchestrator.state.generation_phase == "Stopped"


# =============================================================================
# Stop and concurrency
# =============================================================================


@pytest.mark.asyncio
async def test_stop_keeps_streamed_text_and_rejects_overlapping_requests() -> None:
    text = words(50)
    harness = Harness(FakeTransport([{"type": "start"}, content(text)]))
    orchestrator = harness.orchestrator

    task = asyncio.create_task(orchestrator.generate_chapter())
    await until(lambda: orchestrator.state.stream_word_count == 50)

    busy = await run(orchestrator.generate_section("Conclusion"))
    assert busy.outcome is GenerationOutcome.BUSY

    assert orchestrator.stop_generation()
    result = await run(task)
    await orchestrator.wait_for_background_tasks()

    assert result.outcome is GenerationOutcome.STOPPED
    assert harness.document.text == text
    assert harness.saved == [text]
    assert harness.api.usage == []
    assert "50 words have been saved" in harness.notifier.description("Generation Stopped")
    assert not orchestrator.stop_generation()


# =============================================================================
# Sections and selections
# =============================================================================


@pytest.mark.asyncio
async def test_section_is_appended_after_existing_text() -> None:
    document = ChapterDocument(chapter_id=11, chapter_number=2, text="Existing introduction.")
    harness = Harness(FakeTransport([{"type": "start"}, content("New methodology text."), complete(3)]), document=document)

    result = await run(harness.orchestrator.generate_section("Methodology"))
    await harness.orchestrator.wait_for_background_tasks()

    assert result.outcome is GenerationOutcome.COMPLETED
    assert document.text == "Existing introduction.\n\nNew methodology text."
    assert harness.api.started == []
    assert harness.transport.calls[0]["section_type"] == "Methodology"
    assert harness.api.usage[0]["description"] == "Section generation (Methodology)"
    assert "Section Generated Successfully" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_rephrase_splices_result_into_selection() -> None:
    document = ChapterDocument(chapter_id=11, chapter_number=2, text="The quick brown fox jumps.")
    harness = Harness(FakeTransport([{"type": "start"}, content("swift auburn"), complete(2)]), document=document)

    result = await run(harness.orchestrator.transform_selection("rephrase", {"start": 4, "end": 15}))
    await harness.orchestrator.wait_for_background_tasks()

    assert result.outcome is GenerationOutcome.COMPLETED
    assert document.text == "The swift auburn fox jumps."
    call = harness.transport.calls[0]
    assert call["selected_text"] == "quick brown"
    assert call["style"] == "Academic Formal"
    assert harness.api.usage[0]["description"] == "Rephrase (Academic Formal)"
    assert harness.api.usage[0]["words"] == 2
    assert harness.saved == ["The swift auburn fox jumps."]


@pytest.mark.asyncio
async def test_selection_moved_during_stream_needs_manual_insert() -> None:
    document = ChapterDocument(chapter_id=11, chapter_number=2, text="The quick brown fox jumps.")

    def script(params: Any) -> list[Any]:
        document.set_text("Prefix. " + document.text)
        return [{"type": "start"}, content("much longer expanded passage"), complete(4)]

    harness = Harness(FakeTransport(script), document=document)

    result = await run(harness.orchestrator.transform_selection(GenerationKind.EXPAND, (4, 15)))
    await harness.orchestrator.wait_for_background_tasks()

    assert result.outcome is GenerationOutcome.NEEDS_MANUAL_INSERT
    assert harness.orchestrator.state.pending_manual_insert == "much longer expanded passage"
    assert document.text == "Prefix. The quick brown fox jumps."
    assert "Please manually replace the selected text" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_empty_selection_is_rejected() -> None:
    document = ChapterDocument(text="Some text here.")
    harness = Harness(FakeTransport(), document=document)

    result = await run(harness.orchestrator.transform_selection("rephrase", {"start": 4, "end": 4}))

    assert result.outcome is GenerationOutcome.INVALID_REQUEST
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_handle_generation_validates_arguments() -> None:
    harness = Harness(FakeTransport())

    section = await run(harness.orchestrator.handle_generation("section"))
    selection = await run(harness.orchestrator.handle_generation("expand"))

    assert section.outcome is GenerationOutcome.INVALID_REQUEST
    assert selection.outcome is GenerationOutcome.INVALID_REQUEST
    with pytest.raises(ValueError):
        await harness.orchestrator.generate_chapter("rephrase")


# =============================================================================
# Failures and recovery
# =============================================================================


@pytest.mark.asyncio
async def test_unrecoverable_server_error_surfaces_message() -> None:
    harness = Harness(
        FakeTransport([{"type": "start"}, content(words(20)), {"type": "error", "message": "Content policy violation"}])
    )

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.FAILED
    assert result.message == "Content policy violation"
    state = harness.orchestrator.state
    assert state.generation_phase == "Error"
    assert state.generation_percentage == 50
    assert not state.show_recovery_dialog
    assert harness.notifier.description("Generation Error") == "Content policy violation"


@pytest.mark.asyncio
async def test_offline_mode_error_has_dedicated_notice() -> None:
    harness = Harness(
        FakeTransport([{"type": "error", "code": "OFFLINE_MODE", "message": "AI offline"}])
    )

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.FAILED
    assert harness.orchestrator.state.generation_progress == "AI services offline"
    assert "AI Services Offline" in harness.notifier.titles()


@pytest.mark.asyncio
async def test_recoverable_error_offers_recovery_with_saved_count() -> None:
    harness = Harness(
        FakeTransport(
            [
                {"type": "start"},
                content(words(40)),
                {
                    "type": "error",
                    "message": "Worker restarted",
                    "recoverable": True,
                    "partial_saved": True,
                    "saved_word_count": 40,
                },
            ]
        ),
        max_reconnect_attempts=0,
    )

    result = await run(harness.orchestrator.generate_chapter())

    assert result.outcome is GenerationOutcome.FAILED
    assert result.saved_word_count == 40
    state = harness.orchestrator.state
    assert state.show_recovery_dialog
    assert state.partial_content_saved
    assert state.saved_word_count_on_error == 40
    assert "Generation Interrupted" in harness.notifier.titles()

    harness.orchestrator.dismiss_recovery()
    assert not harness.orchestrator.state.show_recovery_dialog


@pytest.mark.asyncio
async def test_exhausted_retries_then_resume_continues_from_buffer() -> None:
    first = words(150)
    rest = words(50, 150)
    transport = FakeTransport(
        [{"type": "start", "generation_id": "gen-9"}, content(first), CLOSE],
        TransportError("connection refused"),
        [{"type": "start", "generation_id": "gen-9"}, content(rest), complete(200)],
    )
    harness = Harness(transport, max_reconnect_attempts=1)
    orchestrator = harness.orchestrator

    failed = await run(orchestrator.generate_chapter())

    assert failed.outcome is GenerationOutcome.FAILED
    assert failed.error is not None and failed.error.code == "RETRIES_EXHAUSTED"
    assert orchestrator.state.show_recovery_dialog
    assert orchestrator.state.current_generation_id == "gen-9"
    assert "Connection Lost" in harness.notifier.titles()
    assert harness.document.text == first

    resumed = await run(orchestrator.resume_generation())

    assert resumed.outcome is GenerationOutcome.COMPLETED
    assert harness.document.text == first + rest
    assert not orchestrator.state.show_recovery_dialog
    call = transport.calls[-1]
    assert call["resume_from"] == 150
    assert call["generation_id"] == "gen-9"
    assert len(harness.api.started) == 1


@pytest.mark.asyncio
async def test_resume_is_blocked_when_balance_ran_out() -> None:
    transport = FakeTransport(
        [{"type": "start", "generation_id": "gen-4"}, content(words(30)), CLOSE],
        TransportError("connection refused"),
    )
    harness = Harness(transport, max_reconnect_attempts=1)
    orchestrator = harness.orchestrator
    failed = await run(orchestrator.generate_chapter())
    assert failed.outcome is GenerationOutcome.FAILED
    connections = len(transport.calls)

    harness.balance.apply_update({"balance": 0})
    resumed = await run(orchestrator.resume_generation())

    assert resumed.outcome is GenerationOutcome.INSUFFICIENT_BALANCE
    assert len(transport.calls) == connections
    assert "Insufficient word balance" in harness.notifier.titles()
    assert harness.document.text == words(30)


@pytest.mark.asyncio
async def test_resume_without_previous_request_is_invalid() -> None:
    harness = Harness(FakeTransport())

    result = await run(harness.orchestrator.resume_generation())

    assert result.outcome is GenerationOutcome.INVALID_REQUEST


# =============================================================================
# Regenerate and history
# =============================================================================


@pytest.mark.asyncio
async def test_regenerate_requires_confirmation_and_supports_undo() -> None:
    document = ChapterDocument(chapter_id=11, chapter_number=2, text="Old draft.", target_word_count=100)
    harness = Harness(FakeTransport([{"type": "start"}, content("Fresh draft."), complete(2)]), document=document)
    orchestrator = harness.orchestrator

    declined = await run(orchestrator.regenerate_chapter())
    assert declined.outcome is GenerationOutcome.NOT_CONFIRMED
    assert document.text == "Old draft."

    result = await run(orchestrator.regenerate_chapter(confirmed=True))
    assert result.outcome is GenerationOutcome.COMPLETED
    assert document.text == "Fresh draft."
    assert orchestrator.can_undo

    assert orchestrator.undo()
    assert document.text == "Old draft."
    assert orchestrator.redo()
    assert document.text == "Fresh draft."
    await orchestrator.wait_for_background_tasks()


def test_undo_without_history_notifies() -> None:
    harness = Harness(FakeTransport())

    assert not harness.orchestrator.undo()
    assert harness.notifier.titles() == ["Nothing to undo"]


@pytest.mark.asyncio
async def test_aclose_stops_running_generation() -> None:
    harness = Harness(FakeTransport([{"type": "start"}, content(words(5))]))
    orchestrator = harness.orchestrator

    task = asyncio.create_task(orchestrator.generate_chapter())
    await until(lambda: orchestrator.state.stream_word_count == 5)
    await run(orchestrator.aclose())
    result = await run(task)

    assert result.outcome is GenerationOutcome.STOPPED
    assert not orchestrator.state.is_generating
