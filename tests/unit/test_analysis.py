"""Unit tests for angle_finder.analysis and angle_finder.prompts."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from angle_finder import prompts
from angle_finder.analysis import AnalysisPipeline, awareness_prior
from angle_finder.cache import ContentCache, ContentLookup
from angle_finder.exceptions import AnalysisError, JSONRepairError
from angle_finder.fetcher import ProductPage
from angle_finder.models import AwarenessLevel, Claim, Hook, SourceType, Strategy
from angle_finder.store import RecordStore
from tests.conftest import ScriptedLLM, make_source

CONTENT = "Transcript:\n" + "magnesium helps deep sleep " * 20

ANALYSIS_REPLY = {
    "claims": [
        {
            "claim": "Magnesium lowers cortisol at night",
            "exactQuote": "we saw lower cortisol",
            "surpriseScore": 14,
            "mechanism": "HPA axis",
            "awarenessLevel": "hidden",
            "momentumScore": 8,
            "momentumSignals": ["3 new trials"],
        },
        {"exactQuote": "no claim text"},
    ],
    "hooks": [
        {
            "headline": "The 2am cortisol spike nobody talks about",
            "bridgeDistance": "Aggressive",
            "angleTypes": ["Hidden Cause"],
            "viralityScore": {
                "easyToUnderstand": 8,
                "emotional": 7,
                "curiosityInducing": 9,
                "contrarian": 6,
                "provable": 5,
                "total": 100,
            },
            "awarenessLevel": "known",
            "momentumScore": 0,
        },
        {"bridge": "missing headline"},
    ],
}


def _pipeline(llm: Any, content: str | None = CONTENT) -> tuple[AnalysisPipeline, MagicMock]:
    cache = MagicMock(spec=ContentCache)
    cache.get_or_fetch = AsyncMock(return_value=ContentLookup(content=content))
    return AnalysisPipeline(llm, MagicMock(), cache), cache


def _claim(**fields: Any) -> Claim:
    raw = {
        "claim": "Zinc timing matters",
        "awarenessLevel": "hidden",
        "awarenessReasoning": "Only in trials",
        "momentumScore": 9,
        "momentumSignals": ["preprints"],
    }
    raw.update(fields)
    return Claim.from_llm(raw, source_id="arxiv-1", index=0)


# ---------------------------------------------------------------------------
# Awareness prior
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("source_type", "fields", "expected"),
    [
        (SourceType.ARXIV, {}, AwarenessLevel.HIDDEN),
        (SourceType.RESEARCH, {}, AwarenessLevel.HIDDEN),
        (SourceType.PODCAST, {}, AwarenessLevel.EMERGING),
        (SourceType.SCIENCEDAILY, {}, AwarenessLevel.EMERGING),
        (SourceType.YOUTUBE, {"views": 2_000_000}, AwarenessLevel.KNOWN),
        (SourceType.YOUTUBE, {"views": 500_000}, AwarenessLevel.EMERGING),
        (SourceType.YOUTUBE, {"views": 100}, AwarenessLevel.HIDDEN),
        (SourceType.REDDIT, {"engagement": 20_000}, AwarenessLevel.EMERGING),
        (SourceType.REDDIT, {"engagement": 5}, AwarenessLevel.HIDDEN),
    ],
)
def test_awareness_prior(
    source_type: SourceType, fields: dict[str, Any], expected: AwarenessLevel
) -> None:
    assert awareness_prior(make_source("s", source_type, **fields)) is expected


# ---------------------------------------------------------------------------
# Bulk analysis
# ---------------------------------------------------------------------------


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_extracts_and_validates(self) -> None:
        llm = ScriptedLLM("Here is the analysis:\n" + json.dumps(ANALYSIS_REPLY))
        pipeline, _ = _pipeline(llm)
        source = make_source(views=250_000)

        result = await pipeline.analyze(
            source, niche="sleep", product="gummies", strategy=Strategy.DIRECT
        )

        assert result.source_id == source.id
        assert result.source_name == source.title
        assert len(result.claims) == 1
        claim = result.claims[0]
        assert claim.surprise_score == 10
        assert claim.is_sweet_spot
        assert claim.source_id == source.id

        assert len(result.hooks) == 1
        hook = result.hooks[0]
        assert hook.virality_score.total == 35
        assert hook.momentum_score == 1
        # bulk hooks keep their own classification
        assert hook.awareness_level is AwarenessLevel.KNOWN
        assert hook.is_generated is False

        call = llm.calls[0]
        assert call["system"] == prompts.ANALYSIS_SYSTEM_PROMPT
        assert call["endpoint"] == "/api/analyze"
        assert "magnesium helps deep sleep" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_short_content_uses_metadata(self) -> None:
        llm = ScriptedLLM('{"claims": [], "hooks": []}')
        pipeline, _ = _pipeline(llm, content=None)
        source = make_source(title="Why you wake at 3am", snippet="A short clip")
        result = await pipeline.analyze(
            source, niche="sleep", product="p", strategy=Strategy.TRANSLOCATE
        )
        assert result.claims == []
        assert "Why you wake at 3am" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_no_json_object_raises(self) -> None:
        pipeline, _ = _pipeline(ScriptedLLM("I could not find any claims."))
        with pytest.raises(AnalysisError, match="No JSON object found"):
            await pipeline.analyze(
                make_source(), niche="n", product="p", strategy=Strategy.DIRECT
            )

    @pytest.mark.asyncio
    async def test_unrepairable_json_raises(self) -> None:
        pipeline, _ = _pipeline(ScriptedLLM('{"claims": [oops oops]}'))
        with pytest.raises(JSONRepairError):
            await pipeline.analyze(
                make_source(), niche="n", product="p", strategy=Strategy.DIRECT
            )

    @pytest.mark.asyncio
    async def test_missing_arrays_yield_empty_result(self) -> None:
        pipeline, _ = _pipeline(ScriptedLLM('{"claims": "none"}'))
        result = await pipeline.analyze(
            make_source(), niche="n", product="p", strategy=Strategy.DIRECT
        )
        assert result.claims == []
        assert result.hooks == []

    @pytest.mark.asyncio
    async def test_uses_real_cache(self, store: RecordStore) -> None:
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=CONTENT)
        llm = ScriptedLLM('{"claims": [], "hooks": []}')
        pipeline = AnalysisPipeline(llm, fetcher, ContentCache(store))  # type: ignore[arg-type]
        source = make_source()
        for _ in range(2):
            await pipeline.analyze(source, niche="n", product="p", strategy=Strategy.DIRECT)
        assert fetcher.fetch.await_count == 1
        assert store.cache_stats().total_hits == 1

    @pytest.mark.asyncio
    async def test_momentum_clamped_from_model_reply(self) -> None:
        reply = {
            "claims": [
                {"claim": "Too hot", "momentumScore": 15},
                {"claim": "Too cold", "momentumScore": -3},
            ],
            "hooks": [],
        }
        pipeline, _ = _pipeline(ScriptedLLM(json.dumps(reply)))
        result = await pipeline.analyze(
            make_source(), niche="n", product="p", strategy=Strategy.DIRECT
        )
        assert [claim.momentum_score for claim in result.claims] == [10, 1]


# ---------------------------------------------------------------------------
# Single hook generation
# ---------------------------------------------------------------------------


class TestGenerateHook:
    @pytest.mark.asyncio
    async def test_inherits_classification_from_claim(self) -> None:
        llm = ScriptedLLM(json.dumps({"hook": {"headline": "Zinc at dusk", "bridge": "b"}}))
        pipeline, _ = _pipeline(llm)
        claim = _claim()
        hook = await pipeline.generate_hook(
            claim,
            source_name="Paper",
            source_type=SourceType.ARXIV,
            source_url="https://arxiv.org/abs/1",
            niche="sleep",
            product="p",
            strategy=Strategy.TRANSLOCATE,
        )
        assert hook.is_generated is True
        assert hook.from_claim_id == claim.id
        assert "-generated-0-" in hook.id
        assert hook.awareness_level is AwarenessLevel.HIDDEN
        assert hook.momentum_score == 9
        assert hook.momentum_signals == ["preprints"]
        assert hook.awareness_reasoning == "Only in trials"
        assert hook.is_sweet_spot
        assert hook.source_type is SourceType.ARXIV
        assert llm.calls[0]["endpoint"] == "/api/generate-hook"

    @pytest.mark.asyncio
    async def test_model_classification_wins(self) -> None:
        reply = {"hook": {"headline": "h", "awarenessLevel": "known", "momentumScore": 3}}
        pipeline, _ = _pipeline(ScriptedLLM(json.dumps(reply)))
        hook = await pipeline.generate_hook(
            _claim(),
            source_name="n",
            source_type=SourceType.ARXIV,
            source_url="u",
            niche="n",
            product="p",
            strategy=Strategy.DIRECT,
        )
        assert hook.awareness_level is AwarenessLevel.KNOWN
        assert hook.momentum_score == 3

    @pytest.mark.asyncio
    async def test_missing_hook_raises(self) -> None:
        pipeline, _ = _pipeline(ScriptedLLM('{"headline": "not wrapped"}'))
        with pytest.raises(AnalysisError, match="no hook"):
            await pipeline.generate_hook(
                _claim(),
                source_name="n",
                source_type=SourceType.ARXIV,
                source_url="u",
                niche="n",
                product="p",
                strategy=Strategy.DIRECT,
            )


# ---------------------------------------------------------------------------
# Variations
# ---------------------------------------------------------------------------


class TestGenerateVariation:
    def _parent(self) -> Hook:
        return Hook.from_llm(
            {
                "headline": "Original",
                "awarenessLevel": "emerging",
                "awarenessReasoning": "Some buzz",
                "momentumScore": 6,
            },
            source_id="reddit-p1",
            index=0,
            prefix="generated",
            is_generated=True,
            from_claim_id="c-1",
            source_name="Thread",
            source_type=SourceType.REDDIT,
            source_url="https://reddit.com/x",
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [{"headline": "Punchier"}, {"hook": {"headline": "Punchier"}}],
    )
    async def test_variation_links_parent(self, reply: dict[str, Any]) -> None:
        llm = ScriptedLLM(json.dumps(reply))
        pipeline, _ = _pipeline(llm)
        parent = self._parent()
        variation = await pipeline.generate_variation(parent, "make it punchier")
        assert variation.headline == "Punchier"
        assert variation.is_variation is True
        assert variation.parent_hook_id == parent.id
        assert variation.is_generated is True
        assert variation.from_claim_id == "c-1"
        assert variation.source_name == "Thread"
        assert variation.source_type is SourceType.REDDIT
        assert variation.awareness_level is AwarenessLevel.EMERGING
        assert variation.momentum_score == 6
        assert variation.awareness_reasoning == "Some buzz"
        assert "make it punchier" in llm.prompts[0]
        assert "Original" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_variation_without_headline_raises(self) -> None:
        pipeline, _ = _pipeline(ScriptedLLM('{"bridge": "x"}'))
        with pytest.raises(AnalysisError):
            await pipeline.generate_variation(self._parent(), "shorter")


# ---------------------------------------------------------------------------
# Product pages
# ---------------------------------------------------------------------------


class TestAnalyzeProductUrl:
    PAGE = ProductPage(
        title="DreamGummies | Magnesium Sleep Support",
        meta_description="Magnesium glycinate gummies for deeper sleep.",
        body_text="Fall asleep faster with 200mg magnesium per serving.",
    )

    def _pipeline(self, llm: Any) -> tuple[AnalysisPipeline, MagicMock]:
        fetcher = MagicMock()
        fetcher.fetch_product_page = AsyncMock(return_value=self.PAGE)
        return AnalysisPipeline(llm, fetcher, MagicMock(spec=ContentCache)), fetcher

    @pytest.mark.asyncio
    async def test_profile_from_page(self) -> None:
        llm = ScriptedLLM(
            json.dumps(
                {
                    "productName": "DreamGummies",
                    "detectedNiche": "health-supplements",
                    "customNiche": "sleep aids",
                    "productDescription": "Magnesium gummies for adults who sleep badly.",
                }
            )
        )
        pipeline, fetcher = self._pipeline(llm)

        profile = await pipeline.analyze_product_url(
            "https://shop.example.com/gummies", session_id="s-1"
        )

        assert profile.product_name == "DreamGummies"
        assert profile.detected_niche == "health-supplements"
        assert profile.custom_niche == ""
        fetcher.fetch_product_page.assert_awaited_once_with("https://shop.example.com/gummies")
        assert llm.calls[0]["endpoint"] == "/api/analyze-url"
        assert llm.calls[0]["session_id"] == "s-1"
        assert "Magnesium glycinate gummies" in llm.prompts[0]
        assert "- pet-products: Pet Products" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_unknown_niche_becomes_other(self) -> None:
        llm = ScriptedLLM(
            'Sure! {"productName": "X", "detectedNiche": "sleep-tech", '
            '"customNiche": "Sleep technology", "productDescription": "d"}'
        )
        pipeline, _ = self._pipeline(llm)
        profile = await pipeline.analyze_product_url("https://shop.example.com/x")
        assert profile.detected_niche == "other"
        assert profile.custom_niche == "Sleep technology"

    @pytest.mark.asyncio
    async def test_reply_without_json_raises(self) -> None:
        pipeline, _ = self._pipeline(ScriptedLLM("No idea what this page sells."))
        with pytest.raises(AnalysisError):
            await pipeline.analyze_product_url("https://shop.example.com/x")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestPrompts:
    def test_analysis_prompt_truncates_content(self) -> None:
        source = make_source()
        prompt = prompts.analysis_prompt(
            source,
            "x" * (prompts.MAX_ANALYZED_CHARS + 500),
            niche="sleep",
            product="p",
            strategy=Strategy.TRANSLOCATE,
            awareness_prior=AwarenessLevel.HIDDEN,
        )
        assert "x" * prompts.MAX_ANALYZED_CHARS in prompt
        assert "x" * (prompts.MAX_ANALYZED_CHARS + 1) not in prompt
        assert "hidden" in prompt

    def test_query_prompt_names_types(self) -> None:
        prompt = prompts.query_prompt(
            "sleep",
            "gummies",
            ["gut"],
            Strategy.DIRECT,
            [SourceType.REDDIT, SourceType.ARXIV],
            2,
            use_modifiers=False,
        )
        assert "reddit" in prompt
        assert "arxiv" in prompt
        assert "gut" in prompt
