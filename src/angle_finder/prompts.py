"""Prompt builders for discovery and analysis LLM calls.

The analysis system prompt is constant so the provider can cache it;
everything request-specific goes into the user message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from angle_finder.models import AngleType, Strategy

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from angle_finder.fetcher import ProductPage
    from angle_finder.models import AwarenessLevel, Claim, Hook, Source, SourceType

MAX_ANALYZED_CHARS = 15000

ANALYSIS_SYSTEM_PROMPT = """\
You are an expert direct-response marketing strategist and research analyst.
You read source material (video transcripts, forum threads, scientific
abstracts, science news) and extract surprising, defensible claims that can
anchor a marketing campaign, then bridge those claims to a product as
advertising hooks.

Awareness levels:
- "hidden": almost nobody in the target market has heard of this.
- "emerging": discussed in specialist circles, gaining traction.
- "known": widely covered, common knowledge for the audience.

Momentum (1-10) estimates how quickly attention to the idea is growing:
recent studies, rising search interest, new coverage, expert endorsements.
A "sweet spot" is a hidden idea with momentum of 7 or more.

Always answer with a single valid JSON object and nothing else. Never invent
quotes: "exactQuote" must be copied verbatim from the provided content, or
left empty when analyzing from prior knowledge only."""

_ANGLE_LIST = ", ".join(angle.value for angle in AngleType)

_QUERY_GUIDELINES = """\
- youtube: conversational terms, expert names, "explained", "how to"
- podcast: interview topics, expert discussions, long-form content terms
- reddit: community language, question formats, discussion topics
- research: scientific terminology, study types, medical terms
- sciencedaily: science news angles, discovery terms, breakthrough language
- scholar: academic terminology, paper titles, formal research terms
- arxiv: technical/mathematical terms, preprint topics, CS/physics/math terms
- preprint: biomedical research terms, clinical study language"""

_HOOK_FIELDS = f"""\
1. Hook headline (specific, intriguing headline for an ad)
2. Source claim (the surprising claim from content)
3. The bridge (the "aha!" connection between the source and the product)
4. Bridge distance: "Aggressive" (wild leap), "Moderate" (interesting but believable), or "Conservative" (clear logical through-line)
5. Angle types (one or more: {_ANGLE_LIST})
6. Big idea summary (one paragraph explaining the core concept)
7. Virality scores (each 1-10):
   - Easy to understand (intuitive, visual, metaphor-friendly)
   - Emotional (shocking, scary, or exciting enough to share)
   - Curiosity inducing (creates an open loop)
   - Contrarian/Paradigm shifting (challenges beliefs)
   - Provable (can be backed up with data, studies, demonstrations)
8. Sample ad opener (3-4 sentences ready to use)"""

_HOOK_SCHEMA = """\
{
  "headline": "string",
  "sourceClaim": "string",
  "bridge": "string",
  "bridgeDistance": "Aggressive" | "Moderate" | "Conservative",
  "angleTypes": ["string"],
  "bigIdeaSummary": "string",
  "viralityScore": {
    "easyToUnderstand": number,
    "emotional": number,
    "curiosityInducing": number,
    "contrarian": number,
    "provable": number
  },
  "sampleAdOpener": "string"
}"""


def _strategy_line(strategy: Strategy, translocate: str, direct: str) -> str:
    return translocate if strategy == Strategy.TRANSLOCATE else direct


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def subreddit_prompt(
    niche: str, product: str, categories: Sequence[str], strategy: Strategy
) -> str:
    """Ask for 8-12 communities worth searching for the niche."""
    return f"""Suggest 8-12 relevant subreddits for finding interesting discussions and insights about:

Niche: {niche}
Product: {product}
Topics: {", ".join(categories)}
Strategy: {_strategy_line(strategy, "Looking for unexpected connections from unrelated fields", "Looking for direct, evidence-based content")}

Return ONLY a JSON array of subreddit names (without r/ prefix), like: ["nutrition", "science", "askscience"]

Focus on:
- Active communities with quality discussions
- Mix of niche-specific and broader science/research subreddits
- {_strategy_line(strategy, "Include subreddits from tangentially related or surprising fields", "Focus on subreddits directly about this topic")}
- Avoid meme/low-quality subreddits"""


def query_prompt(
    niche: str,
    product: str,
    categories: Sequence[str],
    strategy: Strategy,
    source_types: Sequence[SourceType],
    queries_per_type: int,
    *,
    use_modifiers: bool = False,
) -> str:
    """Ask for ``queries_per_type`` search queries per selected source type."""
    total = len(source_types) * queries_per_type
    modifier_note = (
        "\n\nIMPORTANT: These queries will have intent modifiers (like "
        '"Surprising", "Breakthrough", "New Research") prepended to them. '
        "Generate base queries that work well with these modifiers to uncover "
        "hidden angles."
        if use_modifiers
        else ""
    )
    return f"""Generate exactly {total} specific search queries to find content about these topics.

Categories to explore: {", ".join(categories)}
Niche context: {niche}
Product: {product}
Strategy: {_strategy_line(strategy, "Find content from UNRELATED fields that could provide unique, unexpected marketing angles", "Find content directly related to this niche with scientific backing")}{modifier_note}

IMPORTANT: You MUST generate exactly {queries_per_type} queries for EACH of these source types: {", ".join(source_types)}

Return ONLY a valid JSON array with this exact format (no other text):
[{{"query": "specific search terms", "sourceType": "youtube"}}]

Guidelines for each source type:
{_QUERY_GUIDELINES}"""


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def metadata_prompt(source: Source) -> str:
    """Stand-in content asking the model to reason from prior knowledge."""
    author = f"Author/Channel: {source.author}\n" if source.author else ""
    return (
        f"The following is a {source.type} source that I need to analyze for "
        "marketing angles:\n"
        f'Title: "{source.title}"\n'
        f"URL: {source.url}\n"
        f"{author}\n"
        "Based on this title and your knowledge of this topic, provide an "
        "analysis as if you had access to the full content."
    )


def analysis_prompt(
    source: Source,
    content: str,
    *,
    niche: str,
    product: str,
    strategy: Strategy,
    awareness_prior: AwarenessLevel,
) -> str:
    """Build the per-source extraction request (3-5 claims and 3-5 hooks)."""
    lines = [
        f"CONTENT SOURCE: {source.title}",
        f"SOURCE TYPE: {source.type}",
        f"SOURCE URL: {source.url}",
    ]
    if source.views:
        lines.append(f"VIEWS/ENGAGEMENT: {source.views}")
    if source.publish_date:
        lines.append(f"PUBLISH DATE: {source.publish_date}")
    lines.append(
        f"SOURCE TYPE PRIOR: This source type ({source.type}) has a baseline "
        f'prior of "{awareness_prior}".'
    )
    header = "\n".join(lines)
    focus = _strategy_line(
        strategy,
        "Find UNEXPECTED connections from this unrelated content",
        "Find DIRECT applications to this niche",
    )
    guidance = _strategy_line(
        strategy,
        "Make sure to create UNEXPECTED, CREATIVE bridges between this seemingly "
        "unrelated content and the product. Think laterally! Translocated hooks "
        'often have "hidden" awareness even if the source claim is known, '
        "because the APPLICATION is novel.",
        "Focus on scientifically-backed, credible connections that can be "
        "directly applied.",
    )
    return f"""{header}

NICHE: {niche}
PRODUCT DESCRIPTION: {product}
STRATEGY: {focus}

CONTENT TO ANALYZE:
{content[:MAX_ANALYZED_CHARS]}

---

EXTRACT 3-5 SURPRISING CLAIMS and 3-5 MARKETING HOOKS.

For each CLAIM, provide:
1. The claim itself (one compelling sentence)
2. Exact quote from the content (verbatim)
3. Surprise score (1-10, how unexpected/counterintuitive)
4. Mechanism (explain WHY it works - the underlying process)
5. Awareness level ("hidden", "emerging", or "known")
6. Awareness reasoning (brief explanation of why this classification)
7. Momentum score (1-10)
8. Momentum signals (array of evidence points)

For each HOOK, provide:
{_HOOK_FIELDS}
9. Awareness level ("hidden", "emerging", or "known") - classify the HOOK's angle independently, not just the underlying claim
10. Awareness reasoning (brief explanation of why this classification for the hook specifically)
11. Momentum score (1-10) - for the hook's angle
12. Momentum signals (array of evidence points)

{guidance}

Include a MIX of bridge distances (some Aggressive, some Moderate, some Conservative).
AIM FOR AT LEAST 1-2 "HIDDEN" CLAIMS/HOOKS with strong momentum (Sweet Spots).

Return your response as valid JSON with this exact structure:
{{
  "claims": [
    {{
      "claim": "string",
      "exactQuote": "string",
      "surpriseScore": number,
      "mechanism": "string",
      "awarenessLevel": "hidden" | "emerging" | "known",
      "awarenessReasoning": "string",
      "momentumScore": number,
      "momentumSignals": ["string"]
    }}
  ],
  "hooks": [
    {{
      "headline": "string",
      "sourceClaim": "string",
      "bridge": "string",
      "bridgeDistance": "Aggressive" | "Moderate" | "Conservative",
      "angleTypes": ["string"],
      "bigIdeaSummary": "string",
      "viralityScore": {{"easyToUnderstand": number, "emotional": number, "curiosityInducing": number, "contrarian": number, "provable": number}},
      "sampleAdOpener": "string",
      "awarenessLevel": "hidden" | "emerging" | "known",
      "awarenessReasoning": "string",
      "momentumScore": number,
      "momentumSignals": ["string"]
    }}
  ]
}}"""


def hook_prompt(
    claim: Claim,
    *,
    source_name: str,
    source_type: SourceType,
    niche: str,
    product: str,
    strategy: Strategy,
) -> str:
    """Ask for one hook built on a single claim."""
    focus = _strategy_line(
        strategy,
        "Create UNEXPECTED, CREATIVE connections",
        "Focus on DIRECT, credible applications",
    )
    return f"""You are an expert marketing strategist. Generate a marketing hook based on the following claim.

CLAIM: {claim.claim}

EXACT QUOTE: "{claim.exact_quote}"

MECHANISM: {claim.mechanism}

SOURCE: {source_name} ({source_type})

NICHE: {niche}
PRODUCT: {product}
STRATEGY: {focus}

Generate ONE compelling marketing hook with:
{_HOOK_FIELDS}

Return your response as valid JSON with this exact structure:
{{"hook": {_HOOK_SCHEMA}}}"""


def variation_prompt(hook: Hook, feedback: str) -> str:
    """Ask for a rewrite of ``hook`` that follows the user's feedback."""
    angles = ", ".join(angle.value for angle in hook.angle_types)
    return f"""You are an expert marketing strategist. Generate a VARIATION of the following hook based on the user's feedback.

ORIGINAL HOOK:
- Headline: {hook.headline}
- Source Claim: {hook.source_claim}
- Bridge: {hook.bridge}
- Bridge Distance: {hook.bridge_distance}
- Angle Types: {angles}
- Big Idea Summary: {hook.big_idea_summary}
- Sample Ad Opener: {hook.sample_ad_opener}

USER FEEDBACK FOR VARIATION:
{feedback}

Generate a NEW variation of this hook that incorporates the user's feedback while maintaining the core insight. Make meaningful changes - don't just slightly rephrase.

Return your response as valid JSON with this exact structure:
{_HOOK_SCHEMA}"""


# ---------------------------------------------------------------------------
# Product pages
# ---------------------------------------------------------------------------

PRODUCT_PAGE_CHARS = 4000


def product_url_prompt(page: ProductPage, niches: Mapping[str, str]) -> str:
    """Ask for the product name, best-fit niche and a short pitch."""
    niche_list = "\n".join(
        f"- {niche_id}: {name}" for niche_id, name in niches.items() if niche_id != "other"
    )
    description = page.meta_description or page.og_description or "N/A"
    return f"""You are an expert at analyzing product pages and categorizing products for marketing purposes.

AVAILABLE NICHES:
{niche_list}

EXTRACTED PAGE CONTENT:
Title: {page.title}
Meta Description: {description}
Page Content: {page.body_text[:PRODUCT_PAGE_CHARS]}

TASK:
1. Identify the product name from the page
2. Determine the best matching niche from the list above
3. If no niche is a good match, use "other" and provide a custom niche description
4. Write a concise 2-3 sentence product description suitable for marketing research (describe what the product is, who it's for, and key benefits)

Return ONLY valid JSON in this exact format:
{{
  "productName": "Name of the product",
  "detectedNiche": "niche-id-from-list-or-other",
  "customNiche": "Only fill this if detectedNiche is 'other', otherwise empty string",
  "productDescription": "2-3 sentence description of the product for marketing purposes"
}}"""
