"""API request and response payloads (camelCase on the wire)."""

from __future__ import annotations

from pydantic import Field, HttpUrl

from angle_finder.models import (
    AnalysisResult,
    CamelModel,
    Claim,
    Hook,
    ProductProfile,
    Source,
    SourceType,
    Strategy,
)
from angle_finder.records import ErrorRecord
from angle_finder.scheduler import SourceStatus


class AnalyzeRequest(CamelModel):
    """Request payload for analyzing one source."""

    source: Source
    niche: str
    product: str
    strategy: Strategy
    session_id: str | None = None


class DiscoverResponse(CamelModel):
    """One page of discovered sources."""

    sources: list[Source]


class GenerateHookRequest(CamelModel):
    """Request payload for generating one hook from a claim."""

    claim: Claim
    source_name: str
    source_type: SourceType
    source_url: str
    niche: str
    product: str
    strategy: Strategy


class VariationRequest(CamelModel):
    """Request payload for rewriting a hook from user feedback."""

    hook: Hook
    feedback: str = Field(min_length=1)


class HookResponse(CamelModel):
    hook: Hook


class ClearedResponse(CamelModel):
    """Number of records removed by an admin action."""

    cleared: int = Field(ge=0)


class ErrorListResponse(CamelModel):
    errors: list[ErrorRecord]


class ErrorResponse(CamelModel):
    """User-facing failure body."""

    error: str


class AnalyzeUrlRequest(CamelModel):
    url: HttpUrl
    session_id: str | None = None


class SelectionRequest(CamelModel):
    """Replace a session's selection and the context it is analyzed in."""

    sources: list[Source]
    niche: str
    product: str
    strategy: Strategy


class SelectionStatusResponse(CamelModel):
    """Background pre-analysis progress of one selection session."""

    session_id: str
    selected: list[str]
    statuses: dict[str, SourceStatus]
    results: list[AnalysisResult]


class CommitResponse(CamelModel):
    """Outcome of analyzing a whole selection."""

    results: list[AnalysisResult]
    failed: list[Source]


__all__ = [
    "AnalysisResult",
    "AnalyzeRequest",
    "AnalyzeUrlRequest",
    "CommitResponse",
    "ClearedResponse",
    "DiscoverResponse",
    "ErrorListResponse",
    "ErrorResponse",
    "GenerateHookRequest",
    "HookResponse",
    "ProductProfile",
    "SelectionRequest",
    "SelectionStatusResponse",
    "VariationRequest",
]
