"""Preprint index search through the arXiv Atom API."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import (
    MAX_RESULTS_PER_QUERY,
    SNIPPET_CHARS,
    ProviderAdapter,
    SearchContext,
)

ARXIV_URL = "http://export.arxiv.org/api/query"

_NS = {"atom": "http://www.w3.org/2005/Atom"}
# New style (2101.01234) and old style (hep-th/9901001) ids, without version
_ID_RE = re.compile(r"arxiv\.org/abs/(.+?)(?:v\d+)?$")
_SPACES_RE = re.compile(r"\s+")


def _clean(text: str | None) -> str:
    return _SPACES_RE.sub(" ", text or "").strip()


class ArxivAdapter(ProviderAdapter):
    """arXiv-style preprint index search."""

    source_type = SourceType.ARXIV

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        response = await self._request(
            "GET",
            ARXIV_URL,
            params={
                "search_query": f"all:{query}",
                "start": 0,
                "max_results": MAX_RESULTS_PER_QUERY,
            },
        )
        root = ET.fromstring(response.text)

        sources: list[Source] = []
        for entry in root.findall("atom:entry", _NS):
            match = _ID_RE.search(_clean(entry.findtext("atom:id", namespaces=_NS)))
            if not match:
                continue
            arxiv_id = match.group(1)
            abstract = _clean(entry.findtext("atom:summary", namespaces=_NS))
            published = entry.findtext("atom:published", default="", namespaces=_NS)
            author = entry.findtext("atom:author/atom:name", namespaces=_NS)
            sources.append(
                Source(
                    id=f"arxiv-{arxiv_id}",
                    type=self.source_type,
                    title=_clean(entry.findtext("atom:title", namespaces=_NS))
                    or "Untitled",
                    url=f"https://arxiv.org/abs/{arxiv_id}",
                    author=author or "Unknown",
                    publish_date=published[:10] or None,
                    abstract=abstract or None,
                    snippet=abstract[:SNIPPET_CHARS] or None,
                )
            )
        return sources
