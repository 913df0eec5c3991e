"""Multi-provider discovery: query generation, fan-out, ranking, interleaving.

A discovery call runs in five stages:

1. Optional community suggestion for forum search (never fatal).
2. Query generation by the LLM, backed by deterministic templates so a
   selected provider type always gets at least one query.
3. Optional intent-modifier expansion of every base query.
4. Concurrent provider searches; adapters swallow their own failures.
5. URL de-duplication, per-type scoring, round-robin interleaving across
   types and 1-based pagination.

Scores are only ever compared within one provider type, since view and
engagement scales differ by orders of magnitude between providers.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field

from angle_finder import prompts
from angle_finder.config import DEFAULT_SEARCH_MODIFIERS
from angle_finder.models import CamelModel, Source, SourceType, Strategy
from angle_finder.providers import SearchContext

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from angle_finder.config import Settings
    from angle_finder.llm import ResilientLLMClient
    from angle_finder.providers import ProviderAdapter

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
SUBREDDIT_MAX_TOKENS = 256
QUERY_MAX_TOKENS = 1024

# First (shortest) bracketed span, matching how the model is asked to answer
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")


# ---------------------------------------------------------------------------
# Request and query models
# ---------------------------------------------------------------------------


class DiscoveryRequest(CamelModel):
    """Parameters of one discovery call."""

    niche: str
    product: str
    strategy: Strategy
    categories: list[str] = Field(default_factory=list)
    source_types: list[SourceType] = Field(min_length=1)
    page: int = Field(default=1, ge=1)
    use_modifiers: bool = False

    @property
    def queries_per_type(self) -> int:
        return 1 if self.use_modifiers else 2


@dataclass(frozen=True, slots=True)
class SearchQuery:
    """One provider search to run."""

    query: str
    source_type: SourceType
    modifier: str | None = None


# ---------------------------------------------------------------------------
# Pure pipeline stages
# ---------------------------------------------------------------------------


def extract_json_array(text: str) -> list[Any] | None:
    """Parse the first bracketed span of ``text`` as a JSON array."""
    match = _JSON_ARRAY_RE.search(text)
    if match is None:
        return None
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, list) else None


def fallback_queries(
    request: DiscoveryRequest, source_types: Iterable[SourceType] | None = None
) -> list[SearchQuery]:
    """Template queries (category, niche and strategy keyword) per type."""
    keyword = "insights" if request.strategy == Strategy.TRANSLOCATE else "research"
    categories = request.categories[: request.queries_per_type] or [request.niche]
    types = request.source_types if source_types is None else source_types
    return [
        SearchQuery(f"{category} {request.niche} {keyword}".strip(), source_type)
        for source_type in types
        for category in categories
    ]


def parse_queries(payload: list[Any], allowed: Sequence[SourceType]) -> list[SearchQuery]:
    """Keep well-formed ``{query, sourceType}`` items for selected types."""
    queries: list[SearchQuery] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        query = item.get("query")
        raw_type = item.get("sourceType")
        if not isinstance(query, str) or not query.strip():
            continue
        try:
            source_type = SourceType(str(raw_type).strip().lower())
        except ValueError:
            continue
        if source_type in allowed:
            queries.append(SearchQuery(query.strip(), source_type))
    return queries


def apply_modifiers(queries: Iterable[SearchQuery], modifiers: Sequence[str]) -> list[SearchQuery]:
    """Cross every base query with every intent modifier."""
    return [
        SearchQuery(f"{modifier} {query.query}", query.source_type, modifier)
        for query in queries
        for modifier in modifiers
    ]


def deduplicate_by_url(sources: Iterable[Source]) -> list[Source]:
    """Drop later sources whose URL was already seen."""
    seen: set[str] = set()
    unique: list[Source] = []
    for source in sources:
        if source.url in seen:
            continue
        seen.add(source.url)
        unique.append(source)
    return unique


def score_source(source: Source) -> float:
    """Log-damped popularity score, comparable only within one type.

    Views contribute at most 10, engagement at most 5, and a summary
    (abstract or snippet) adds a flat 2.
    """
    score = 0.0
    if source.views:
        score += min(math.log10(source.views + 1) * 2, 10.0)
    if source.engagement:
        score += min(math.log10(source.engagement + 1) * 1.5, 5.0)
    if source.has_summary:
        score += 2.0
    return score


def rank_within_types(sources: Iterable[Source]) -> dict[SourceType, list[Source]]:
    """Group by type in first-seen order; sort each group by score, stably."""
    groups: dict[SourceType, list[Source]] = {}
    for source in sources:
        groups.setdefault(source.type, []).append(source)
    return {
        source_type: sorted(group, key=score_source, reverse=True)
        for source_type, group in groups.items()
    }


def interleave(groups: Iterable[Sequence[Source]]) -> list[Source]:
    """Round-robin across groups until every group is exhausted."""
    queues = [list(group) for group in groups]
    merged: list[Source] = []
    depth = max((len(queue) for queue in queues), default=0)
    for index in range(depth):
        merged.extend(queue[index] for queue in queues if index < len(queue))
    return merged


def paginate(sources: Sequence[Source], page: int, page_size: int = DEFAULT_PAGE_SIZE) -> list[Source]:
    """Return the 1-based ``page`` of ``sources``."""
    start = (max(page, 1) - 1) * page_size
    return list(sources[start : start + page_size])


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class DiscoveryOrchestrator:
    """Fans discovery out to provider adapters and merges the results."""

    def __init__(
        self,
        llm: ResilientLLMClient,
        adapters: Mapping[SourceType, ProviderAdapter],
        *,
        modifiers: Sequence[str] = DEFAULT_SEARCH_MODIFIERS,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._llm = llm
        self._adapters = dict(adapters)
        self.modifiers = tuple(modifiers)
        self.page_size = page_size

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        llm: ResilientLLMClient,
        adapters: Mapping[SourceType, ProviderAdapter],
    ) -> DiscoveryOrchestrator:
        return cls(
            llm,
            adapters,
            modifiers=settings.discovery.modifiers,
            page_size=settings.discovery.page_size,
        )

    async def discover(
        self, request: DiscoveryRequest, *, session_id: str | None = None
    ) -> list[Source]:
        """Run discovery and return one page of interleaved sources."""
        subreddits: list[str] = []
        if SourceType.REDDIT in request.source_types:
            subreddits = await self.suggest_subreddits(request, session_id=session_id)

        queries = await self.generate_queries(request, session_id=session_id)
        if request.use_modifiers:
            queries = apply_modifiers(queries, self.modifiers)
        logger.info(
            "discovery_queries_ready",
            queries=len(queries),
            use_modifiers=request.use_modifiers,
            sample=[query.query for query in queries[:5]],
        )

        found = await self._search_all(queries, SearchContext(subreddits=subreddits))
        unique = deduplicate_by_url(found)
        groups = rank_within_types(unique)

        missing = [t for t in request.source_types if t not in groups]
        if missing:
            logger.warning("discovery_types_empty", source_types=missing)
        logger.info(
            "discovery_results",
            total=len(found),
            unique=len(unique),
            by_type={str(t): len(group) for t, group in groups.items()},
        )
        return paginate(interleave(groups.values()), request.page, self.page_size)

    async def suggest_subreddits(
        self, request: DiscoveryRequest, *, session_id: str | None = None
    ) -> list[str]:
        """Ask the model for communities to search; ``[]`` on any failure."""
        prompt = prompts.subreddit_prompt(
            request.niche, request.product, request.categories, request.strategy
        )
        try:
            text = await self._llm.complete(
                prompt,
                max_tokens=SUBREDDIT_MAX_TOKENS,
                endpoint="/api/discover",
                session_id=session_id,
            )
        except Exception as exc:
            logger.warning("subreddit_suggestion_failed", error=str(exc))
            return []
        names = extract_json_array(text) or []
        subreddits = [
            name.strip().removeprefix("r/")
            for name in names
            if isinstance(name, str) and name.strip()
        ]
        logger.info("subreddits_suggested", subreddits=subreddits)
        return subreddits

    async def generate_queries(
        self, request: DiscoveryRequest, *, session_id: str | None = None
    ) -> list[SearchQuery]:
        """Base queries for every selected type, LLM-generated where possible.

        Types the model skipped get template queries, and a failed or
        malformed completion falls back to templates for every type.
        """
        prompt = prompts.query_prompt(
            request.niche,
            request.product,
            request.categories,
            request.strategy,
            request.source_types,
            request.queries_per_type,
            use_modifiers=request.use_modifiers,
        )
        try:
            text = await self._llm.complete(
                prompt,
                max_tokens=QUERY_MAX_TOKENS,
                endpoint="/api/discover",
                session_id=session_id,
            )
        except Exception as exc:
            logger.warning("query_generation_failed", error=str(exc))
            return fallback_queries(request)

        payload = extract_json_array(text)
        if payload is None:
            logger.warning("query_generation_malformed", response=text[:200])
            return fallback_queries(request)

        queries = parse_queries(payload, request.source_types)
        covered = {query.source_type for query in queries}
        uncovered = [t for t in request.source_types if t not in covered]
        if uncovered:
            logger.info("query_generation_filled", source_types=uncovered)
            queries.extend(fallback_queries(request, uncovered))
        return queries

    async def _search_all(
        self, queries: Sequence[SearchQuery], context: SearchContext
    ) -> list[Source]:
        runnable = [query for query in queries if query.source_type in self._adapters]
        batches = await asyncio.gather(
            *(
                self._adapters[query.source_type].search(query.query, context)
                for query in runnable
            )
        )
        found: list[Source] = []
        for query, batch in zip(runnable, batches, strict=True):
            if query.modifier:
                found.extend(source.with_modifier(query.modifier) for source in batch)
            else:
                found.extend(batch)
        return found
