"""Persisted record shapes: cached content, usage telemetry, error log."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import Field

from angle_finder.models import CamelModel, SourceType


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CredentialSlot(StrEnum):
    """Which LLM credential handled a call."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    DEFAULT = "default"


class ErrorKind(StrEnum):
    """Error-kind tag attached to durable error log entries."""

    RATE_LIMIT = "rate_limit"
    DISCOVER_ERROR = "discover_error"
    ANALYSIS_ERROR = "analysis_error"
    HOOK_ERROR = "hook_error"
    VARIATION_ERROR = "variation_error"
    PRODUCT_URL_ERROR = "product_url_error"
    SELECTION_ERROR = "selection_error"
    ADMIN_ERROR = "admin_error"


class Timeframe(StrEnum):
    """Window used when summarizing usage telemetry."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"

    def cutoff(self, now: datetime | None = None) -> datetime | None:
        """Earliest timestamp inside the window, or ``None`` for ``all``."""
        now = now or utcnow()
        spans = {
            Timeframe.DAY: timedelta(days=1),
            Timeframe.WEEK: timedelta(days=7),
            Timeframe.MONTH: timedelta(days=30),
        }
        span = spans.get(self)
        return None if span is None else now - span


# ---------------------------------------------------------------------------
# Content cache
# ---------------------------------------------------------------------------


class CachedContentEntry(CamelModel):
    """Fetched source content, keyed by the source URL."""

    source_url: str
    source_type: SourceType
    content: str
    content_length: int = Field(ge=0)
    fetch_duration_ms: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    hit_count: int = Field(default=0, ge=0)
    last_accessed_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


class CacheStats(CamelModel):
    """Aggregate view of the content cache for the admin surface."""

    total_entries: int = 0
    total_size_bytes: int = 0
    total_hits: int = 0
    by_source_type: dict[str, int] = Field(default_factory=dict)
    avg_fetch_duration_ms: float = 0.0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    expired_count: int = 0


# ---------------------------------------------------------------------------
# Usage telemetry
# ---------------------------------------------------------------------------

# Approximate pricing per 1M tokens (input, output) in USD
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3.00, 15.00),
    "claude-sonnet-4-5-20250929": (3.00, 15.00),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-opus-4-20250514": (15.00, 75.00),
}
_CACHE_READ_MULTIPLIER = 0.1
_CACHE_WRITE_MULTIPLIER = 1.25


class UsageRecord(CamelModel):
    """Token usage and latency of one successful LLM call."""

    endpoint: str
    model: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    credential: CredentialSlot = CredentialSlot.DEFAULT
    was_rate_limited: bool = False
    session_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def estimated_cost_usd(self) -> float:
        """Estimate the call's cost from :data:`MODEL_PRICING`.

        Unknown models are priced at zero.
        """
        model_id = self.model.split("/")[-1]
        input_price, output_price = MODEL_PRICING.get(model_id, (0.0, 0.0))
        cost = (
            self.input_tokens * input_price
            + self.output_tokens * output_price
            + self.cache_read_tokens * input_price * _CACHE_READ_MULTIPLIER
            + self.cache_creation_tokens * input_price * _CACHE_WRITE_MULTIPLIER
        )
        return cost / 1_000_000


class EndpointUsage(CamelModel):
    """Per-endpoint slice of a usage summary."""

    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    rate_limited: int = 0
    avg_duration_ms: float = 0.0


class UsageSummary(CamelModel):
    """Usage telemetry aggregated over a timeframe."""

    timeframe: Timeframe = Timeframe.ALL
    total_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_creation_tokens: int = 0
    avg_duration_ms: float = 0.0
    rate_limited_requests: int = 0
    by_endpoint: dict[str, EndpointUsage] = Field(default_factory=dict)
    by_credential: dict[str, int] = Field(default_factory=dict)
    estimated_cost_usd: float = 0.0


# ---------------------------------------------------------------------------
# Error log
# ---------------------------------------------------------------------------


class ErrorRecord(CamelModel):
    """One durable error log entry written at the request boundary."""

    id: str
    endpoint: str
    kind: ErrorKind
    message: str
    status_code: int | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
