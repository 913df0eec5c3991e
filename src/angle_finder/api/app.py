"""FastAPI application exposing discovery, analysis and admin surfaces.

The route handlers are the only place where failures become user-visible
responses, and the only place that writes the durable error log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from angle_finder import __version__
from angle_finder.api.models import (
    AnalyzeRequest,
    AnalyzeUrlRequest,
    ClearedResponse,
    CommitResponse,
    DiscoverResponse,
    ErrorListResponse,
    ErrorResponse,
    GenerateHookRequest,
    HookResponse,
    SelectionRequest,
    SelectionStatusResponse,
    VariationRequest,
)
from angle_finder.api.selection import SelectionContext, SelectionManager
from angle_finder.config import Settings
from angle_finder.discovery import DiscoveryRequest
from angle_finder.exceptions import StoreError
from angle_finder.llm import is_rate_limit_error
from angle_finder.logging import request_logging_context
from angle_finder.models import AnalysisResult, ProductProfile
from angle_finder.records import CacheStats, ErrorKind, Timeframe, UsageSummary
from angle_finder.services import Services, build_services

if TYPE_CHECKING:
    from collections.abc import Callable

    from angle_finder.store import RecordStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_BAD_REQUEST = 400
_NOT_FOUND = 404
_RATE_LIMITED = 429
_SERVER_ERROR = 500


def error_response(
    store: RecordStore,
    *,
    endpoint: str,
    kind: ErrorKind,
    exc: Exception,
    message: str,
    context: dict[str, Any],
    status_code: int = _SERVER_ERROR,
) -> JSONResponse:
    """Log ``exc`` durably and turn it into a ``{"error": ...}`` response.

    Rate limits that survived every retry are tagged ``rate_limit`` and
    answered with 429; everything else gets ``status_code``.
    """
    rate_limited = is_rate_limit_error(exc)
    if rate_limited:
        status_code = _RATE_LIMITED
    detail = str(exc) or type(exc).__name__
    try:
        store.log_error(
            endpoint,
            ErrorKind.RATE_LIMIT if rate_limited else kind,
            detail,
            status_code=status_code,
            context=context,
        )
    except StoreError as store_exc:
        logger.warning("error_log_write_failed", endpoint=endpoint, error=str(store_exc))
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message.format(detail=detail)).model_dump(),
    )


def create_app(
    settings: Settings | None = None, services: Services | None = None
) -> FastAPI:
    """Create and configure the API app."""
    app_settings = settings or (services.settings if services else Settings.load())
    app_services = services or build_services(app_settings)

    app = FastAPI(title="angle-finder API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = app_settings
    app.state.services = app_services

    store = app_services.store
    selections = SelectionManager(app_services.pipeline, app_settings.scheduler)
    app.state.selections = selections

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await selections.close()
        await app_services.aclose()

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Discovery and analysis
    # ------------------------------------------------------------------

    @app.post("/api/discover", response_model=DiscoverResponse)
    async def discover(payload: DiscoveryRequest) -> DiscoverResponse | JSONResponse:
        context = {
            "niche": payload.niche,
            "sourceTypes": [str(t) for t in payload.source_types],
            "useModifiers": payload.use_modifiers,
        }
        with request_logging_context("/api/discover", page=payload.page):
            try:
                sources = await app_services.orchestrator.discover(payload)
            except Exception as exc:
                logger.exception("discover_failed")
                return error_response(
                    store,
                    endpoint="/api/discover",
                    kind=ErrorKind.DISCOVER_ERROR,
                    exc=exc,
                    message="Failed to discover sources",
                    context=context,
                )
        return DiscoverResponse(sources=sources)

    @app.post("/api/analyze", response_model=AnalysisResult)
    async def analyze(payload: AnalyzeRequest) -> AnalysisResult | JSONResponse:
        source = payload.source
        with request_logging_context("/api/analyze", source_id=source.id):
            try:
                return await app_services.pipeline.analyze(
                    source,
                    niche=payload.niche,
                    product=payload.product,
                    strategy=payload.strategy,
                    session_id=payload.session_id,
                )
            except Exception as exc:
                logger.exception("analyze_failed")
                return error_response(
                    store,
                    endpoint="/api/analyze",
                    kind=ErrorKind.ANALYSIS_ERROR,
                    exc=exc,
                    message="Failed to analyze source: {detail}",
                    context={"sourceId": source.id, "sourceType": str(source.type)},
                )

    @app.post("/api/generate-hook", response_model=HookResponse)
    async def generate_hook(payload: GenerateHookRequest) -> HookResponse | JSONResponse:
        with request_logging_context("/api/generate-hook", claim_id=payload.claim.id):
            try:
                hook = await app_services.pipeline.generate_hook(
                    payload.claim,
                    source_name=payload.source_name,
                    source_type=payload.source_type,
                    source_url=payload.source_url,
                    niche=payload.niche,
                    product=payload.product,
                    strategy=payload.strategy,
                )
            except Exception as exc:
                logger.exception("generate_hook_failed")
                return error_response(
                    store,
                    endpoint="/api/generate-hook",
                    kind=ErrorKind.HOOK_ERROR,
                    exc=exc,
                    message="Failed to generate hook",
                    context={"claimId": payload.claim.id},
                )
        return HookResponse(hook=hook)

    @app.post("/api/variation", response_model=HookResponse)
    async def variation(payload: VariationRequest) -> HookResponse | JSONResponse:
        with request_logging_context("/api/variation", hook_id=payload.hook.id):
            try:
                hook = await app_services.pipeline.generate_variation(
                    payload.hook, payload.feedback
                )
            except Exception as exc:
                logger.exception("variation_failed")
                return error_response(
                    store,
                    endpoint="/api/variation",
                    kind=ErrorKind.VARIATION_ERROR,
                    exc=exc,
                    message="Failed to generate variation",
                    context={"hookId": payload.hook.id},
                )
        return HookResponse(hook=hook)

    # ------------------------------------------------------------------
    # Product pages
    # ------------------------------------------------------------------

    @app.post("/api/analyze-url", response_model=ProductProfile)
    async def analyze_url(payload: AnalyzeUrlRequest) -> ProductProfile | JSONResponse:
        url = str(payload.url)
        with request_logging_context("/api/analyze-url", url=url):
            try:
                return await app_services.pipeline.analyze_product_url(
                    url, session_id=payload.session_id
                )
            except httpx.HTTPStatusError as exc:
                logger.warning("product_page_unavailable", status=exc.response.status_code)
                return error_response(
                    store,
                    endpoint="/api/analyze-url",
                    kind=ErrorKind.PRODUCT_URL_ERROR,
                    exc=exc,
                    message=f"Failed to fetch page: {exc.response.status_code}",
                    context={"url": url},
                    status_code=_BAD_REQUEST,
                )
            except Exception as exc:
                logger.exception("analyze_url_failed")
                return error_response(
                    store,
                    endpoint="/api/analyze-url",
                    kind=ErrorKind.PRODUCT_URL_ERROR,
                    exc=exc,
                    message="Failed to analyze URL",
                    context={"url": url},
                )

    # ------------------------------------------------------------------
    # Selection sessions
    # ------------------------------------------------------------------

    def selection_status(session_id: str) -> SelectionStatusResponse | JSONResponse:
        scheduler = selections.get(session_id)
        if scheduler is None:
            return JSONResponse(
                status_code=_NOT_FOUND,
                content=ErrorResponse(error="Unknown selection session").model_dump(),
            )
        selected = [source.id for source in scheduler.selection]
        ready = scheduler.results
        return SelectionStatusResponse(
            session_id=session_id,
            selected=selected,
            statuses={source_id: scheduler.status_for(source_id) for source_id in selected},
            results=[ready[source_id] for source_id in selected if source_id in ready],
        )

    @app.put("/api/selection/{session_id}", response_model=SelectionStatusResponse)
    async def select_sources(
        session_id: str, payload: SelectionRequest
    ) -> SelectionStatusResponse | JSONResponse:
        context = SelectionContext(payload.niche, payload.product, payload.strategy)
        with request_logging_context("/api/selection", session_id=session_id):
            try:
                await selections.update(session_id, context, payload.sources)
            except Exception as exc:
                logger.exception("selection_update_failed")
                return error_response(
                    store,
                    endpoint="/api/selection",
                    kind=ErrorKind.SELECTION_ERROR,
                    exc=exc,
                    message="Failed to update selection",
                    context={"sessionId": session_id, "sources": len(payload.sources)},
                )
        return selection_status(session_id)

    @app.get("/api/selection/{session_id}", response_model=SelectionStatusResponse)
    async def get_selection(session_id: str) -> SelectionStatusResponse | JSONResponse:
        return selection_status(session_id)

    @app.post("/api/selection/{session_id}/commit", response_model=CommitResponse)
    async def commit_selection(session_id: str) -> CommitResponse | JSONResponse:
        if selections.get(session_id) is None:
            return selection_status(session_id)
        with request_logging_context("/api/selection/commit", session_id=session_id):
            try:
                outcomes = await selections.commit(session_id)
            except Exception as exc:
                logger.exception("selection_commit_failed")
                return error_response(
                    store,
                    endpoint="/api/selection/commit",
                    kind=ErrorKind.SELECTION_ERROR,
                    exc=exc,
                    message="Failed to analyze selection",
                    context={"sessionId": session_id},
                )
        return CommitResponse(
            results=[outcome.result for outcome in outcomes if outcome.result is not None],
            failed=[outcome.source for outcome in outcomes if outcome.result is None],
        )

    @app.delete("/api/selection/{session_id}", response_model=ClearedResponse)
    async def discard_selection(session_id: str) -> ClearedResponse | JSONResponse:
        scheduler = selections.get(session_id)
        if scheduler is None:
            return selection_status(session_id)
        selected = len(scheduler.selection)
        await selections.discard(session_id)
        return ClearedResponse(cleared=selected)

    # ------------------------------------------------------------------
    # Admin surfaces
    # ------------------------------------------------------------------

    def admin(
        endpoint: str, method: str, message: str, action: Callable[[], Any]
    ) -> Any:
        with request_logging_context(endpoint, method=method):
            try:
                return action()
            except Exception as exc:
                logger.exception("admin_request_failed")
                return error_response(
                    store,
                    endpoint=endpoint,
                    kind=ErrorKind.ADMIN_ERROR,
                    exc=exc,
                    message=message,
                    context={"method": method},
                )

    @app.get("/api/cache", response_model=CacheStats)
    def cache_stats() -> CacheStats | JSONResponse:
        return admin(
            "/api/cache", "GET", "Failed to read cache stats", app_services.cache.stats
        )

    @app.post("/api/cache", response_model=ClearedResponse)
    def cache_sweep() -> ClearedResponse | JSONResponse:
        return admin(
            "/api/cache",
            "POST",
            "Failed to clear expired cache entries",
            lambda: ClearedResponse(cleared=app_services.cache.clear_expired()),
        )

    @app.delete("/api/cache", response_model=ClearedResponse)
    def cache_clear() -> ClearedResponse | JSONResponse:
        return admin(
            "/api/cache",
            "DELETE",
            "Failed to clear cache",
            lambda: ClearedResponse(cleared=app_services.cache.clear_all()),
        )

    @app.get("/api/usage", response_model=UsageSummary)
    def usage(timeframe: Timeframe = Timeframe.WEEK) -> UsageSummary | JSONResponse:
        return admin(
            "/api/usage",
            "GET",
            "Failed to read usage",
            lambda: store.usage_summary(timeframe),
        )

    @app.delete("/api/usage", response_model=ClearedResponse)
    def usage_clear() -> ClearedResponse | JSONResponse:
        return admin(
            "/api/usage",
            "DELETE",
            "Failed to clear usage",
            lambda: ClearedResponse(cleared=store.clear_usage()),
        )

    @app.get("/api/errors", response_model=ErrorListResponse)
    def errors(
        limit: int = Query(default=50, ge=1, le=1000),
    ) -> ErrorListResponse | JSONResponse:
        return admin(
            "/api/errors",
            "GET",
            "Failed to read error log",
            lambda: ErrorListResponse(errors=store.list_errors(limit)),
        )

    @app.delete("/api/errors", response_model=ClearedResponse)
    def errors_clear() -> ClearedResponse | JSONResponse:
        return admin(
            "/api/errors",
            "DELETE",
            "Failed to clear error log",
            lambda: ClearedResponse(cleared=store.clear_errors()),
        )

    return app
