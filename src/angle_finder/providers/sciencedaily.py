"""Science news search over the ScienceDaily RSS feed.

The feed is a fixed listing of recent stories, so results are filtered
locally against the query terms.
"""

from __future__ import annotations

import hashlib
import xml.etree.ElementTree as ET

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import (
    MAX_RESULTS_PER_QUERY,
    SNIPPET_CHARS,
    ProviderAdapter,
    SearchContext,
    matches_terms,
    query_terms,
    strip_tags,
)

FEED_URL = "https://www.sciencedaily.com/rss/all.xml"


def stable_source_id(link: str) -> str:
    """Derive a source id from the article URL so it survives re-discovery."""
    digest = hashlib.sha1(link.encode("utf-8")).hexdigest()[:12]
    return f"sciencedaily-{digest}"


class ScienceDailyAdapter(ProviderAdapter):
    """Science news feed search."""

    source_type = SourceType.SCIENCEDAILY

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        response = await self._request("GET", FEED_URL)
        root = ET.fromstring(response.text)
        terms = query_terms(query)

        sources: list[Source] = []
        for item in root.iter("item"):
            title = strip_tags(item.findtext("title", default=""))
            description = strip_tags(item.findtext("description", default=""))
            link = (item.findtext("link", default="") or "").strip()
            if not link or not matches_terms(f"{title} {description}", terms):
                continue
            sources.append(
                Source(
                    id=stable_source_id(link),
                    type=self.source_type,
                    title=title or "Untitled",
                    url=link,
                    snippet=description[:SNIPPET_CHARS] or None,
                    publish_date=item.findtext("pubDate") or None,
                    author="ScienceDaily",
                )
            )
            if len(sources) >= MAX_RESULTS_PER_QUERY:
                break
        return sources
