"""Selection-driven background pre-analysis.

:class:`BackgroundAnalysisScheduler` watches the set of sources a user
has selected and opportunistically analyzes them before the user commits.
Selection changes are debounced; once the selection settles, deselected
sources are cancelled and newly selected ones join a FIFO queue drained by
a rolling pool of background workers. When the user commits,
:meth:`BackgroundAnalysisScheduler.analyze_selection` reuses finished
results, waits for in-flight ones and runs everything else through a
smaller synchronous pool.

All state is in-memory and owned by one event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from angle_finder.config import SchedulerSettings
    from angle_finder.models import AnalysisResult, Source

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class SourceStatus(StrEnum):
    """Scheduler's view of one source."""

    UNSEEN = "unseen"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    READY = "ready"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class AnalysisOutcome:
    """Result of committing one source to analysis."""

    source: Source
    result: AnalysisResult | None = None
    error: str | None = None
    pre_analyzed: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None


class BackgroundAnalysisScheduler:
    """Debounced, cancellable pre-analysis of selected sources.

    Attributes:
        debounce_seconds: Quiet period before a selection change is applied.
        background_concurrency: Worker limit for background analyses.
        sync_concurrency: Worker limit for :meth:`analyze_selection`.
    """

    def __init__(
        self,
        analyze: Callable[[Source], Awaitable[AnalysisResult]],
        *,
        debounce_seconds: float = 0.5,
        background_concurrency: int = 6,
        sync_concurrency: int = 3,
    ) -> None:
        """Initialize the scheduler.

        Args:
            analyze: Full analysis pipeline for one source. Cancelling the
                awaiting task must abort the underlying fetch and LLM calls.
            debounce_seconds: Quiet period before applying selection changes.
            background_concurrency: Maximum concurrent background analyses.
            sync_concurrency: Maximum concurrent committed analyses.
        """
        self._analyze = analyze
        self.debounce_seconds = debounce_seconds
        self.background_concurrency = background_concurrency
        self.sync_concurrency = sync_concurrency

        self._selection: dict[str, Source] = {}
        self._applied: set[str] = set()
        self._queue: dict[str, Source] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._results: dict[str, AnalysisResult] = {}
        self._status: dict[str, SourceStatus] = {}
        self._waiters: dict[str, list[asyncio.Future[AnalysisResult | None]]] = {}
        self._listeners: list[Callable[[str, AnalysisResult], None]] = []
        self._timer: asyncio.TimerHandle | None = None

    @classmethod
    def from_settings(
        cls,
        settings: SchedulerSettings,
        analyze: Callable[[Source], Awaitable[AnalysisResult]],
    ) -> BackgroundAnalysisScheduler:
        return cls(
            analyze,
            debounce_seconds=settings.debounce_seconds,
            background_concurrency=settings.background_concurrency,
            sync_concurrency=settings.sync_concurrency,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def selected_ids(self) -> frozenset[str]:
        return frozenset(self._selection)

    @property
    def selection(self) -> tuple[Source, ...]:
        """Selected sources in selection order."""
        return tuple(self._selection.values())

    @property
    def results(self) -> dict[str, AnalysisResult]:
        """Pre-analyzed results keyed by source id (a copy)."""
        return dict(self._results)

    @property
    def pending(self) -> frozenset[str]:
        """Ids whose background analysis is currently running."""
        return frozenset(self._tasks)

    @property
    def queued(self) -> tuple[str, ...]:
        return tuple(self._queue)

    def result_for(self, source_id: str) -> AnalysisResult | None:
        return self._results.get(source_id)

    def status_for(self, source_id: str) -> SourceStatus:
        return self._status.get(source_id, SourceStatus.UNSEEN)

    def add_listener(self, callback: Callable[[str, AnalysisResult], None]) -> None:
        """Register ``callback(source_id, result)`` for finished analyses."""
        self._listeners.append(callback)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, source: Source) -> None:
        self._selection[source.id] = source
        self._schedule_apply()

    def deselect(self, source_id: str) -> None:
        if self._selection.pop(source_id, None) is not None:
            self._schedule_apply()

    def set_selection(self, sources: Iterable[Source]) -> None:
        """Replace the whole selection."""
        self._selection = {source.id: source for source in sources}
        self._schedule_apply()

    def _schedule_apply(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._apply_selection)

    def flush(self) -> None:
        """Apply a pending selection change now instead of after the debounce."""
        if self._timer is not None:
            self._timer.cancel()
            self._apply_selection()

    def _apply_selection(self) -> None:
        self._timer = None
        current = set(self._selection)
        for source_id in self._applied - current:
            self._discard(source_id)
        for source_id, source in self._selection.items():
            if source_id not in self._applied:
                self._enqueue(source)
        self._applied = current
        self._pump()

    def _enqueue(self, source: Source) -> None:
        if (
            source.failed
            or source.id in self._results
            or source.id in self._tasks
            or source.id in self._queue
        ):
            return
        self._queue[source.id] = source
        self._status[source.id] = SourceStatus.QUEUED

    def _discard(self, source_id: str) -> None:
        """Forget a deselected source: dequeue, cancel and drop its result."""
        if self._queue.pop(source_id, None) is not None:
            self._status.pop(source_id, None)
        task = self._tasks.pop(source_id, None)
        if task is not None:
            task.cancel()
            self._status[source_id] = SourceStatus.CANCELLED
            logger.info("background_analysis_cancelled", source_id=source_id)
        if self._results.pop(source_id, None) is not None:
            self._status.pop(source_id, None)
        self._resolve_waiters(source_id)

    # ------------------------------------------------------------------
    # Background pool
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        while self._queue and len(self._tasks) < self.background_concurrency:
            source_id = next(iter(self._queue))
            source = self._queue.pop(source_id)
            task = asyncio.create_task(
                self._run(source), name=f"pre-analysis-{source_id}"
            )
            self._tasks[source_id] = task
            self._status[source_id] = SourceStatus.IN_FLIGHT
            task.add_done_callback(lambda done, sid=source_id: self._on_done(sid, done))

    async def _run(self, source: Source) -> None:
        logger.debug("background_analysis_started", source_id=source.id)
        try:
            result = await self._analyze(source)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._status[source.id] = SourceStatus.FAILED
            logger.warning(
                "background_analysis_failed",
                source_id=source.id,
                error=str(exc) or type(exc).__name__,
            )
            return
        self._store_result(source.id, result)

    def _on_done(self, source_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(source_id) is task:
            del self._tasks[source_id]
            if task.cancelled():
                self._status[source_id] = SourceStatus.CANCELLED
        if source_id not in self._tasks:
            self._resolve_waiters(source_id)
        self._pump()

    def _store_result(self, source_id: str, result: AnalysisResult) -> None:
        self._results[source_id] = result
        self._status[source_id] = SourceStatus.READY
        logger.info(
            "background_analysis_ready",
            source_id=source_id,
            claims=len(result.claims),
            hooks=len(result.hooks),
        )
        for listener in list(self._listeners):
            try:
                listener(source_id, result)
            except Exception:
                logger.exception("result_listener_failed", source_id=source_id)

    def _resolve_waiters(self, source_id: str) -> None:
        result = self._results.get(source_id)
        for future in self._waiters.pop(source_id, []):
            if not future.done():
                future.set_result(result)

    async def wait_for(self, source_id: str) -> AnalysisResult | None:
        """Wait until ``source_id`` leaves the background pipeline.

        Returns:
            The pre-analyzed result, or ``None`` if the source is not being
            analyzed or its analysis failed or was cancelled.
        """
        if source_id in self._results:
            return self._results[source_id]
        if source_id not in self._tasks and source_id not in self._queue:
            return None
        future: asyncio.Future[AnalysisResult | None] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters.setdefault(source_id, []).append(future)
        return await future

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def analyze_selection(self, sources: Iterable[Source]) -> list[AnalysisOutcome]:
        """Analyze ``sources``, reusing background work where possible.

        Ready results are used as-is, in-flight analyses are awaited, and
        everything else (including in-flight ones that end without a
        result) runs through a rolling pool of ``sync_concurrency``.

        Returns:
            One outcome per input source, in input order.
        """
        sources = list(sources)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            current = set(self._selection)
            for source_id in self._applied - current:
                self._discard(source_id)
            self._applied &= current

        outcomes: list[AnalysisOutcome | None] = [None] * len(sources)
        semaphore = asyncio.Semaphore(self.sync_concurrency)

        async def run_now(index: int, source: Source) -> None:
            async with semaphore:
                try:
                    result = await self._analyze(source)
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    logger.warning(
                        "analysis_failed", source_id=source.id, error=message
                    )
                    outcomes[index] = AnalysisOutcome(
                        source=source.mark_failed(message), error=message
                    )
                    return
            self._results[source.id] = result
            self._status[source.id] = SourceStatus.READY
            self._resolve_waiters(source.id)
            outcomes[index] = AnalysisOutcome(source=source, result=result)

        async def await_background(index: int, source: Source) -> None:
            result = await self.wait_for(source.id)
            if result is None:
                logger.info("background_analysis_missed", source_id=source.id)
                await run_now(index, source)
                return
            outcomes[index] = AnalysisOutcome(source=source, result=result, pre_analyzed=True)

        jobs: list[Awaitable[None]] = []
        for index, source in enumerate(sources):
            ready = self._results.get(source.id)
            if ready is not None:
                outcomes[index] = AnalysisOutcome(source=source, result=ready, pre_analyzed=True)
            elif source.id in self._tasks:
                jobs.append(await_background(index, source))
            else:
                if self._queue.pop(source.id, None) is not None:
                    self._status.pop(source.id, None)
                jobs.append(run_now(index, source))

        reused = sum(1 for outcome in outcomes if outcome is not None)
        logger.info(
            "analysis_commit",
            sources=len(sources),
            pre_analyzed=reused,
            in_flight=sum(1 for s in sources if s.id in self._tasks),
        )
        await asyncio.gather(*jobs)
        return [outcome for outcome in outcomes if outcome is not None]

    async def close(self) -> None:
        """Cancel the debounce timer and every background analysis."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
