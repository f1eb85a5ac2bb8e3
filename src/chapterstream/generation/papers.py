"""Polling monitor for the pre-stream paper collection phase."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import httpx

from ..services.api import ApiError, CollectionInProgressError, GenerationApiClient

__all__ = [
    "ACTIVE_STATUSES",
    "PaperCollectionMonitor",
    "PaperCollectionOutcome",
    "PaperCollectionState",
    "PaperCollectionStatus",
    "SOURCE_NAMES",
    "collection_percentage",
]

LOGGER = logging.getLogger(__name__)

SOURCE_NAMES: Mapping[str, str] = {
    "semantic_scholar": "Semantic Scholar",
    "openalex": "OpenAlex",
    "arxiv": "arXiv",
    "crossref": "CrossRef",
    "pubmed": "PubMed",
}

PAPERS_START_PERCENT = 5.0
PAPERS_CEILING_PERCENT = 45.0
PAPERS_COMPLETE_PERCENT = 50.0


class PaperCollectionStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    COLLECTING_PAPERS = "collecting_papers"
    PROCESSING = "processing"
    STORING = "storing"
    COMPLETED = "completed"
    COLLECTION_FAILED = "collection_failed"


ACTIVE_STATUSES = frozenset(
    {
        PaperCollectionStatus.INITIALIZING,
        PaperCollectionStatus.COLLECTING_PAPERS,
        PaperCollectionStatus.PROCESSING,
        PaperCollectionStatus.STORING,
    }
)


class PaperCollectionOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ALREADY_RUNNING = "already_running"
    CANCELLED = "cancelled"


def collection_percentage(server_percentage: float) -> float:
    """Map the collector's own 0-100 progress onto the overall generation bar."""

    return min(PAPERS_START_PERCENT + server_percentage * 0.4, PAPERS_CEILING_PERCENT)


@dataclass(slots=True)
class PaperCollectionState:
    """What the UI shows while sources are being gathered."""

    phase: str = "Starting"
    message: str = "Initializing source collection..."
    status: PaperCollectionStatus | None = None
    papers_count: int = 0
    server_percentage: float = 0.0
    generation_percentage: float = PAPERS_START_PERCENT
    current_source: str | None = None
    sources_completed: list[str] = field(default_factory=list)
    papers_preview: list[Any] = field(default_factory=list)
    attempts: int = 0
    outcome: PaperCollectionOutcome | None = None

    @property
    def is_collecting(self) -> bool:
        return self.outcome is None

    def apply_status(self, data: Mapping[str, Any]) -> PaperCollectionStatus | None:
        """Fold one status payload into the state and return its parsed status."""

        try:
            status = PaperCollectionStatus(data.get("status"))
        except ValueError:
            LOGGER.debug("Unknown paper collection status %r", data.get("status"))
            status = None
        self.status = status
        self.papers_count = _as_int(data.get("papers_count") or data.get("count"))
        self.server_percentage = _as_float(data.get("percentage"))
        self.current_source = data.get("current_source") or None
        self.sources_completed = list(data.get("sources_completed") or [])
        self.papers_preview = list(data.get("papers_preview") or [])
        message = data.get("message")

        if status is PaperCollectionStatus.COMPLETED:
            self.phase = "Complete"
            self.message = (
                f"Collected {self.papers_count} verified sources from "
                f"{len(self.sources_completed)} databases"
            )
            self.generation_percentage = PAPERS_COMPLETE_PERCENT
        elif status in ACTIVE_STATUSES:
            source = self.current_source
            self.phase = SOURCE_NAMES.get(source, source) if source else "Collecting Sources"
            self.message = message or "Collecting sources from academic databases..."
            self.generation_percentage = collection_percentage(self.server_percentage)
        elif status is PaperCollectionStatus.COLLECTION_FAILED:
            self.phase = "Error"
            self.message = message or "Source collection failed"
        return status


StatusListener = Callable[[PaperCollectionState], None]


class PaperCollectionMonitor:
    """Starts paper collection for a project and polls until it settles.

    One monitor drives one collection run. :meth:`run` owns the polling loop,
    so cancelling the task running it (or calling :meth:`cancel`) tears the
    loop down with no timers left behind.
    """

    def __init__(
        self,
        api: GenerationApiClient,
        project: str,
        *,
        interval: float = 5.0,
        max_attempts: int = 120,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_update: StatusListener | None = None,
    ) -> None:
        self._api = api
        self._project = project
        self._interval = interval
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._on_update = on_update
        self._state = PaperCollectionState()
        self._cancelled = False

    @property
    def state(self) -> PaperCollectionState:
        return self._state

    def cancel(self) -> None:
        self._cancelled = True

    async def run(self) -> PaperCollectionOutcome:
        """Start collection and poll its status until a terminal outcome."""

        self._publish()
        try:
            await self._api.start_paper_collection(self._project)
        except CollectionInProgressError as exc:
            LOGGER.warning("Paper collection already running for %s: %s", self._project, exc)
            return self._finish(
                PaperCollectionOutcome.ALREADY_RUNNING,
                str(exc) or "Source collection is already in progress",
            )
        except (ApiError, httpx.HTTPError) as exc:
            LOGGER.error("Failed to start paper collection for %s: %s", self._project, exc)
            return self._finish(PaperCollectionOutcome.FAILED, "Source collection failed")

        try:
            return await self._poll()
        except asyncio.CancelledError:
            self._finish(PaperCollectionOutcome.CANCELLED, "Source collection cancelled")
            raise

    async def _poll(self) -> PaperCollectionOutcome:
        state = self._state
        while True:
            if self._cancelled:
                return self._finish(PaperCollectionOutcome.CANCELLED, "Source collection cancelled")
            status = await self._check_status()
            if status is PaperCollectionStatus.COMPLETED:
                return self._finish(PaperCollectionOutcome.COMPLETED)
            if status is PaperCollectionStatus.COLLECTION_FAILED:
                return self._finish(PaperCollectionOutcome.FAILED)
            state.attempts += 1
            if state.attempts >= self._max_attempts:
                state.phase = "Timeout"
                return self._finish(PaperCollectionOutcome.TIMEOUT, "Source collection timed out")
            await self._sleep(self._interval)

    async def _check_status(self) -> PaperCollectionStatus | None:
        try:
            payload = await self._api.paper_collection_status(self._project)
        except (ApiError, httpx.HTTPError) as exc:
            LOGGER.error("Error checking paper collection status: %s", exc)
            return None
        data = payload.get("data")
        if not payload.get("success") or not isinstance(data, Mapping):
            LOGGER.debug("Paper collection status response had no data: %s", payload)
            return None
        status = self._state.apply_status(data)
        self._publish()
        return status

    def _finish(self, outcome: PaperCollectionOutcome, message: str | None = None) -> PaperCollectionOutcome:
        state = self._state
        state.outcome = outcome
        if outcome is not PaperCollectionOutcome.COMPLETED and state.phase != "Timeout":
            state.phase = "Error" if outcome is not PaperCollectionOutcome.CANCELLED else "Cancelled"
        if message:
            state.message = message
        LOGGER.info("Paper collection for %s finished: %s", self._project, outcome.value)
        self._publish()
        return outcome

    def _publish(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self._state)
        except Exception:  # pragma: no cover - listener bug
            LOGGER.exception("Paper collection listener failed")


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
