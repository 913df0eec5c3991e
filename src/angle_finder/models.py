"""Domain models: sources, claims, hooks, and analysis results.

All models serialize to the camelCase JSON shape used on the wire
(``publishDate``, ``momentumScore`` ...) while exposing snake_case
attributes in Python. Claims and hooks are built from raw LLM payloads
through validating constructors that clamp and default every field the
same way, so no call site has to coerce LLM output by hand.
"""

from __future__ import annotations

import re
import uuid
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)
from pydantic.alias_generators import to_camel

SWEET_SPOT_MIN_MOMENTUM = 7
DEFAULT_SCORE = 5

_SLUG_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceType(StrEnum):
    """Provider type a source was discovered through."""

    YOUTUBE = "youtube"
    PODCAST = "podcast"
    REDDIT = "reddit"
    RESEARCH = "research"
    SCIENCEDAILY = "sciencedaily"
    SCHOLAR = "scholar"
    ARXIV = "arxiv"
    PREPRINT = "preprint"


ACADEMIC_SOURCE_TYPES: frozenset[SourceType] = frozenset(
    {SourceType.RESEARCH, SourceType.SCHOLAR, SourceType.ARXIV, SourceType.PREPRINT}
)


class Strategy(StrEnum):
    """How discovered content relates to the product's niche."""

    TRANSLOCATE = "translocate"
    DIRECT = "direct"


class AwarenessLevel(StrEnum):
    """How widely known a claim or angle already is."""

    HIDDEN = "hidden"
    EMERGING = "emerging"
    KNOWN = "known"


class BridgeDistance(StrEnum):
    """How far a hook leaps from its source claim to the product."""

    AGGRESSIVE = "Aggressive"
    MODERATE = "Moderate"
    CONSERVATIVE = "Conservative"


class AngleType(StrEnum):
    """Categorical tag describing the persuasion angle of a hook."""

    HIDDEN_CAUSE = "Hidden Cause"
    DEFICIENCY = "Deficiency"
    CONTAMINATION = "Contamination"
    TIMING_METHOD = "Timing/Method"
    DIFFERENTIATION = "Differentiation"
    IDENTITY = "Identity"
    CONTRARIAN = "Contrarian"


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def clamp_score(value: Any, default: int = DEFAULT_SCORE) -> int:
    """Coerce an LLM-supplied score into the inclusive range 1..10.

    Non-numeric values (including booleans and unparseable strings)
    become ``default``.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if not isinstance(value, int | float) or value != value:  # NaN
        return default
    return int(round(min(10.0, max(1.0, float(value)))))


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def slugify(value: str) -> str:
    """Lowercase ``value`` and collapse non-alphanumerics into hyphens."""
    return _SLUG_RE.sub("-", value.lower()).strip("-")


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class Source(CamelModel):
    """A discovered content unit, normalized across providers.

    Sources are immutable; :meth:`mark_failed` and :meth:`with_modifier`
    return modified copies.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str = Field(min_length=1)
    type: SourceType
    title: str
    url: str
    views: int | None = None
    engagement: int | None = None
    author: str | None = None
    publish_date: str | None = None
    abstract: str | None = None
    snippet: str | None = None
    duration: str | None = None
    subreddit: str | None = None
    failed: bool = False
    failure_reason: str | None = None
    modified: bool = False
    modifier_used: str | None = None

    @property
    def has_summary(self) -> bool:
        return bool(self.abstract or self.snippet)

    def mark_failed(self, reason: str | None = None) -> Source:
        """Return a copy flagged as failed."""
        return self.model_copy(update={"failed": True, "failure_reason": reason})

    def with_modifier(self, modifier: str) -> Source:
        """Return a copy tagged with the search modifier that surfaced it.

        The id gains a ``--<modifier-slug>`` suffix so the same underlying
        item can be selected independently in modified and plain result
        sets.
        """
        return self.model_copy(
            update={
                "id": f"{self.id}--{slugify(modifier)}",
                "modified": True,
                "modifier_used": modifier,
            }
        )


# ---------------------------------------------------------------------------
# Claims and hooks
# ---------------------------------------------------------------------------


class _Classified(CamelModel):
    """Awareness/momentum classification shared by claims and hooks."""

    id: str
    source_id: str
    awareness_level: AwarenessLevel = AwarenessLevel.EMERGING
    awareness_reasoning: str = ""
    momentum_score: int = DEFAULT_SCORE
    momentum_signals: list[str] = Field(default_factory=list)

    @field_validator("awareness_level", mode="before")
    @classmethod
    def _default_awareness(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in set(AwarenessLevel):
            return value.strip().lower()
        return AwarenessLevel.EMERGING

    @field_validator("momentum_score", mode="before")
    @classmethod
    def _clamp_momentum(cls, value: Any) -> int:
        return clamp_score(value)

    @field_validator("momentum_signals", mode="before")
    @classmethod
    def _signals_as_strings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [_text(item) for item in value if item is not None]

    @field_validator("awareness_reasoning", mode="before")
    @classmethod
    def _reasoning_text(cls, value: Any) -> str:
        return _text(value)

    @computed_field(alias="isSweetSpot")  # type: ignore[prop-decorator]
    @property
    def is_sweet_spot(self) -> bool:
        """Hidden awareness combined with strong momentum."""
        return (
            self.awareness_level == AwarenessLevel.HIDDEN
            and self.momentum_score >= SWEET_SPOT_MIN_MOMENTUM
        )


class Claim(_Classified):
    """A surprising factual assertion extracted from a source."""

    claim: str
    exact_quote: str = ""
    surprise_score: int = DEFAULT_SCORE
    mechanism: str = ""

    @field_validator("claim", "exact_quote", "mechanism", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        return _text(value)

    @field_validator("surprise_score", mode="before")
    @classmethod
    def _clamp_surprise(cls, value: Any) -> int:
        return clamp_score(value)

    @classmethod
    def from_llm(cls, raw: dict[str, Any], *, source_id: str, index: int) -> Claim:
        """Build a claim from one element of the LLM's ``claims`` array."""
        return cls.model_validate(
            {
                **raw,
                "id": f"{source_id}-claim-{index}-{uuid.uuid4().hex[:8]}",
                "sourceId": source_id,
            }
        )


class ViralityScore(CamelModel):
    """Five 1..10 sub-scores; ``total`` is always their exact sum."""

    easy_to_understand: int = DEFAULT_SCORE
    emotional: int = DEFAULT_SCORE
    curiosity_inducing: int = DEFAULT_SCORE
    contrarian: int = DEFAULT_SCORE
    provable: int = DEFAULT_SCORE

    @field_validator(
        "easy_to_understand",
        "emotional",
        "curiosity_inducing",
        "contrarian",
        "provable",
        mode="before",
    )
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return clamp_score(value)

    @computed_field(alias="total")  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return (
            self.easy_to_understand
            + self.emotional
            + self.curiosity_inducing
            + self.contrarian
            + self.provable
        )


class Hook(_Classified):
    """A marketing angle generated from a source, classified on its own."""

    headline: str
    source_claim: str = ""
    bridge: str = ""
    bridge_distance: BridgeDistance = BridgeDistance.MODERATE
    angle_types: list[AngleType] = Field(
        default_factory=lambda: [AngleType.CONTRARIAN]
    )
    big_idea_summary: str = ""
    virality_score: ViralityScore = Field(default_factory=ViralityScore)
    sample_ad_opener: str = ""
    is_variation: bool = False
    parent_hook_id: str | None = None
    is_generated: bool = False
    from_claim_id: str | None = None
    source_name: str | None = None
    source_type: SourceType | None = None
    source_url: str | None = None

    @field_validator(
        "headline",
        "source_claim",
        "bridge",
        "big_idea_summary",
        "sample_ad_opener",
        mode="before",
    )
    @classmethod
    def _as_text(cls, value: Any) -> str:
        return _text(value)

    @field_validator("bridge_distance", mode="before")
    @classmethod
    def _default_distance(cls, value: Any) -> Any:
        if isinstance(value, str):
            for distance in BridgeDistance:
                if value.strip().lower() == distance.value.lower():
                    return distance
        return BridgeDistance.MODERATE

    @field_validator("angle_types", mode="before")
    @classmethod
    def _known_angles(cls, value: Any) -> list[AngleType]:
        if not isinstance(value, list):
            return [AngleType.CONTRARIAN]
        known = {angle.value.lower(): angle for angle in AngleType}
        angles = [
            known[item.strip().lower()]
            for item in value
            if isinstance(item, str) and item.strip().lower() in known
        ]
        return angles or [AngleType.CONTRARIAN]

    @field_validator("virality_score", mode="before")
    @classmethod
    def _virality_mapping(cls, value: Any) -> Any:
        if isinstance(value, ViralityScore | dict):
            return value
        return {}

    @classmethod
    def from_llm(
        cls,
        raw: dict[str, Any],
        *,
        source_id: str,
        index: int,
        prefix: str = "hook",
        **extra: Any,
    ) -> Hook:
        """Build a hook from one LLM hook object.

        Args:
            raw: The LLM's hook mapping (camelCase keys).
            source_id: Id of the source the hook belongs to.
            index: Position within the LLM's array, used in the id.
            prefix: Id infix distinguishing bulk, generated and variation hooks.
            **extra: Field overrides applied after the raw payload
                (e.g. ``is_generated=True``).
        """
        payload = {
            **raw,
            "id": f"{source_id}-{prefix}-{index}-{uuid.uuid4().hex[:8]}",
            "sourceId": source_id,
        }
        payload.update({to_camel(key): value for key, value in extra.items()})
        return cls.model_validate(payload)


# ---------------------------------------------------------------------------
# Analysis result
# ---------------------------------------------------------------------------


class AnalysisResult(CamelModel):
    """Claims and hooks extracted from one source in one analysis pass."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    source_id: str
    source_name: str
    source_type: SourceType
    source_url: str
    claims: list[Claim] = Field(default_factory=list)
    hooks: list[Hook] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Product profile
# ---------------------------------------------------------------------------

OTHER_NICHE = "other"

NICHES: dict[str, str] = {
    "health-supplements": "Health & Supplements",
    "skincare-beauty": "Skincare & Beauty",
    "fitness-performance": "Fitness & Performance",
    "biz-opp": "Biz Opp & Make Money",
    "coaching-self-help": "Coaching & Self-Help",
    "spirituality-astrology": "Spirituality & Astrology",
    "pet-products": "Pet Products",
    "home-lifestyle": "Home & Lifestyle",
    "medical-devices": "Medical Devices",
    "finance-insurance": "Finance & Insurance",
    OTHER_NICHE: "Other",
}


class ProductProfile(CamelModel):
    """Product name, niche and pitch inferred from a product page."""

    product_name: str = ""
    detected_niche: str = OTHER_NICHE
    custom_niche: str = ""
    product_description: str = ""

    @field_validator("product_name", "custom_niche", "product_description", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return str(value).strip() if value is not None else ""

    @field_validator("detected_niche", mode="before")
    @classmethod
    def _known_niche(cls, value: Any) -> str:
        return value if isinstance(value, str) and value in NICHES else OTHER_NICHE
