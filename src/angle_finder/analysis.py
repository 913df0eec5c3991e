"""Per-source analysis pipeline: fetch, cache, LLM, repair, validate.

:class:`AnalysisPipeline` is the unit of work shared by the analyze
endpoint, the CLI and the background scheduler. Bulk analysis classifies
every hook independently of the claims; single-hook generation and hook
variations inherit the awareness classification of their parent whenever
the model leaves it out.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from angle_finder import prompts
from angle_finder.cache import MIN_CACHEABLE_LENGTH
from angle_finder.exceptions import AnalysisError
from angle_finder.models import (
    ACADEMIC_SOURCE_TYPES,
    AnalysisResult,
    AwarenessLevel,
    NICHES,
    OTHER_NICHE,
    Claim,
    Hook,
    ProductProfile,
    SourceType,
    Strategy,
)
from angle_finder.repair import ResponseRepairParser

if TYPE_CHECKING:
    from angle_finder.cache import ContentCache
    from angle_finder.fetcher import ContentFetcher
    from angle_finder.llm import ResilientLLMClient
    from angle_finder.models import Source

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ANALYSIS_MAX_TOKENS = 4096
HOOK_MAX_TOKENS = 2048
PRODUCT_MAX_TOKENS = 512

KNOWN_VIEW_THRESHOLD = 1_000_000
EMERGING_VIEW_THRESHOLD = 100_000
EMERGING_ENGAGEMENT_THRESHOLD = 10_000

_CLASSIFICATION_FIELDS = (
    "awarenessLevel",
    "awarenessReasoning",
    "momentumScore",
    "momentumSignals",
)
_INHERITED_ATTRIBUTES = {
    "awareness_level",
    "awareness_reasoning",
    "momentum_score",
    "momentum_signals",
}


def awareness_prior(source: Source) -> AwarenessLevel:
    """Baseline awareness for content surfaced through ``source.type``."""
    if source.type in ACADEMIC_SOURCE_TYPES:
        return AwarenessLevel.HIDDEN
    if source.type in (SourceType.PODCAST, SourceType.SCIENCEDAILY):
        return AwarenessLevel.EMERGING
    if source.type is SourceType.YOUTUBE:
        views = source.views or 0
        if views > KNOWN_VIEW_THRESHOLD:
            return AwarenessLevel.KNOWN
        if views > EMERGING_VIEW_THRESHOLD:
            return AwarenessLevel.EMERGING
        return AwarenessLevel.HIDDEN
    if source.type is SourceType.REDDIT:
        if (source.engagement or 0) > EMERGING_ENGAGEMENT_THRESHOLD:
            return AwarenessLevel.EMERGING
        return AwarenessLevel.HIDDEN
    return AwarenessLevel.EMERGING


def _inherit(raw: dict[str, Any], parent: Claim | Hook, reasoning: str) -> dict[str, Any]:
    """Fill missing classification fields of ``raw`` from ``parent``."""
    inherited = parent.model_dump(by_alias=True, include=_INHERITED_ATTRIBUTES)
    merged = dict(raw)
    for key in _CLASSIFICATION_FIELDS:
        if not merged.get(key):
            merged[key] = inherited.get(key)
    if not merged.get("awarenessReasoning"):
        merged["awarenessReasoning"] = reasoning
    return merged


def _items(parsed: Any, key: str, required: str) -> list[dict[str, Any]]:
    """Entries of ``parsed[key]`` that are objects with a truthy ``required``."""
    values = parsed.get(key) if isinstance(parsed, dict) else None
    if not isinstance(values, list):
        logger.warning("analysis_array_missing", key=key)
        return []
    return [item for item in values if isinstance(item, dict) and item.get(required)]


class AnalysisPipeline:
    """Turns sources into validated claims and hooks.

    Attributes:
        llm: Resilient LLM client used for every completion.
    """

    def __init__(
        self,
        llm: ResilientLLMClient,
        fetcher: ContentFetcher,
        cache: ContentCache,
        parser: ResponseRepairParser | None = None,
    ) -> None:
        self.llm = llm
        self._fetcher = fetcher
        self._cache = cache
        self._parser = parser or ResponseRepairParser()

    def _parse_object(self, text: str) -> Any:
        if "{" not in text:
            raise AnalysisError("No JSON object found in response")
        return self._parser.parse(text)

    async def analyze(
        self,
        source: Source,
        *,
        niche: str,
        product: str,
        strategy: Strategy,
        session_id: str | None = None,
    ) -> AnalysisResult:
        """Extract claims and hooks from one source.

        Content comes from the cache or the fetcher; when neither yields
        enough text the model is asked to reason from the title alone.

        Raises:
            AnalysisError: If the completion holds no JSON object.
            JSONRepairError: If the JSON could not be repaired.
        """
        lookup = await self._cache.get_or_fetch(source, self._fetcher)
        content = lookup.content
        if not content or len(content) < MIN_CACHEABLE_LENGTH:
            logger.info("analysis_metadata_fallback", source_id=source.id)
            content = prompts.metadata_prompt(source)

        prompt = prompts.analysis_prompt(
            source,
            content,
            niche=niche,
            product=product,
            strategy=strategy,
            awareness_prior=awareness_prior(source),
        )
        text = await self.llm.complete(
            prompt,
            system=prompts.ANALYSIS_SYSTEM_PROMPT,
            max_tokens=ANALYSIS_MAX_TOKENS,
            endpoint="/api/analyze",
            session_id=session_id,
        )
        parsed = self._parse_object(text)

        claims = [
            Claim.from_llm(raw, source_id=source.id, index=index)
            for index, raw in enumerate(_items(parsed, "claims", "claim"))
        ]
        hooks = [
            Hook.from_llm(raw, source_id=source.id, index=index)
            for index, raw in enumerate(_items(parsed, "hooks", "headline"))
        ]
        logger.info(
            "analysis_complete",
            source_id=source.id,
            claims=len(claims),
            hooks=len(hooks),
            cache_hit=lookup.cache_hit,
        )
        return AnalysisResult(
            source_id=source.id,
            source_name=source.title,
            source_type=source.type,
            source_url=source.url,
            claims=claims,
            hooks=hooks,
        )

    async def generate_hook(
        self,
        claim: Claim,
        *,
        source_name: str,
        source_type: SourceType,
        source_url: str,
        niche: str,
        product: str,
        strategy: Strategy,
        session_id: str | None = None,
    ) -> Hook:
        """Generate one hook from ``claim``, inheriting its classification."""
        prompt = prompts.hook_prompt(
            claim,
            source_name=source_name,
            source_type=source_type,
            niche=niche,
            product=product,
            strategy=strategy,
        )
        text = await self.llm.complete(
            prompt,
            max_tokens=HOOK_MAX_TOKENS,
            endpoint="/api/generate-hook",
            session_id=session_id,
        )
        parsed = self._parse_object(text)
        raw = parsed.get("hook") if isinstance(parsed, dict) else None
        if not isinstance(raw, dict) or not raw.get("headline"):
            raise AnalysisError("Response contained no hook")

        return Hook.from_llm(
            _inherit(raw, claim, "Inherited from source claim"),
            source_id=claim.source_id,
            index=0,
            prefix="generated",
            is_generated=True,
            from_claim_id=claim.id,
            source_name=source_name,
            source_type=source_type,
            source_url=source_url,
        )

    async def generate_variation(
        self,
        hook: Hook,
        feedback: str,
        *,
        session_id: str | None = None,
    ) -> Hook:
        """Rewrite ``hook`` following ``feedback``.

        The variation keeps the parent's source attribution and inherits
        its classification when the model omits one.
        """
        text = await self.llm.complete(
            prompts.variation_prompt(hook, feedback),
            max_tokens=HOOK_MAX_TOKENS,
            endpoint="/api/variation",
            session_id=session_id,
        )
        parsed = self._parse_object(text)
        if isinstance(parsed, dict) and isinstance(parsed.get("hook"), dict):
            parsed = parsed["hook"]
        if not isinstance(parsed, dict) or not parsed.get("headline"):
            raise AnalysisError("Response contained no hook variation")

        return Hook.from_llm(
            _inherit(parsed, hook, "Inherited from parent hook"),
            source_id=hook.source_id,
            index=0,
            prefix="variation",
            is_variation=True,
            parent_hook_id=hook.id,
            is_generated=hook.is_generated,
            from_claim_id=hook.from_claim_id,
            source_name=hook.source_name,
            source_type=hook.source_type,
            source_url=hook.source_url,
        )

    async def analyze_product_url(
        self, url: str, *, session_id: str | None = None
    ) -> ProductProfile:
        """Infer the product name, niche and pitch from a product page.

        A niche the model invents is replaced by ``"other"``; the custom
        niche text is only kept for ``"other"``.

        Raises:
            httpx.HTTPError: If the page cannot be downloaded.
            AnalysisError: If the completion holds no JSON object.
        """
        page = await self._fetcher.fetch_product_page(url)
        logger.info(
            "product_page_fetched", url=url, title=page.title, body_chars=len(page.body_text)
        )
        text = await self.llm.complete(
            prompts.product_url_prompt(page, NICHES),
            max_tokens=PRODUCT_MAX_TOKENS,
            endpoint="/api/analyze-url",
            session_id=session_id,
        )
        parsed = self._parse_object(text)
        if not isinstance(parsed, dict):
            raise AnalysisError("Response contained no product profile")
        profile = ProductProfile.model_validate(parsed)
        if profile.detected_niche != OTHER_NICHE:
            profile.custom_niche = ""
        return profile
