"""Per-session source selections backed by background pre-analysis."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from angle_finder.scheduler import BackgroundAnalysisScheduler

if TYPE_CHECKING:
    from collections.abc import Iterable

    from angle_finder.analysis import AnalysisPipeline
    from angle_finder.config import SchedulerSettings
    from angle_finder.models import AnalysisResult, Source, Strategy
    from angle_finder.scheduler import AnalysisOutcome

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SelectionContext:
    """What every analysis in one selection session is run against."""

    niche: str
    product: str
    strategy: Strategy


@dataclass(slots=True)
class _Session:
    context: SelectionContext
    scheduler: BackgroundAnalysisScheduler


class SelectionManager:
    """Own one :class:`BackgroundAnalysisScheduler` per selection session.

    A session's scheduler is rebuilt when its niche, product or strategy
    changes, since results computed for the old context no longer apply.
    """

    def __init__(self, pipeline: AnalysisPipeline, settings: SchedulerSettings) -> None:
        self._pipeline = pipeline
        self._settings = settings
        self._sessions: dict[str, _Session] = {}
        self._lock = asyncio.Lock()

    def _new_scheduler(
        self, session_id: str, context: SelectionContext
    ) -> BackgroundAnalysisScheduler:
        async def analyze(source: Source) -> AnalysisResult:
            return await self._pipeline.analyze(
                source,
                niche=context.niche,
                product=context.product,
                strategy=context.strategy,
                session_id=session_id,
            )

        return BackgroundAnalysisScheduler.from_settings(self._settings, analyze)

    async def update(
        self,
        session_id: str,
        context: SelectionContext,
        sources: Iterable[Source],
    ) -> BackgroundAnalysisScheduler:
        """Replace the selection of ``session_id``; analysis starts after the debounce."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.context != context:
                logger.info("selection_context_changed", session_id=session_id)
                await session.scheduler.close()
                session = None
            if session is None:
                session = _Session(context, self._new_scheduler(session_id, context))
                self._sessions[session_id] = session
            session.scheduler.set_selection(sources)
            return session.scheduler

    def get(self, session_id: str) -> BackgroundAnalysisScheduler | None:
        session = self._sessions.get(session_id)
        return session.scheduler if session else None

    async def commit(self, session_id: str) -> list[AnalysisOutcome]:
        """Analyze the current selection of ``session_id``, reusing background work.

        Raises:
            KeyError: If the session does not exist.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return await session.scheduler.analyze_selection(session.scheduler.selection)

    async def discard(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            await session.scheduler.close()
            return True

    async def close(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.scheduler.close()
