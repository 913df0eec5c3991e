"""Citation index search (Google Scholar through SerpApi)."""

from __future__ import annotations

import re
from typing import Any

import structlog

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import ProviderAdapter, SearchContext

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

SERPAPI_URL = "https://serpapi.com/search.json"

_YEAR_RE = re.compile(r"\d{4}")


class ScholarAdapter(ProviderAdapter):
    """Citation index search. Requires ``SERPAPI_API_KEY``."""

    source_type = SourceType.SCHOLAR

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        api_key = self._secret("SERPAPI_API_KEY")
        if not api_key:
            logger.warning("provider_not_configured", provider=self.name)
            return []

        response = await self._request(
            "GET",
            SERPAPI_URL,
            params={"engine": "google_scholar", "q": query, "num": 10, "api_key": api_key},
        )
        results = response.json().get("organic_results") or []
        return [
            self._to_source(index, item)
            for index, item in enumerate(results)
            if isinstance(item, dict) and item.get("link")
        ]

    def _to_source(self, index: int, item: dict[str, Any]) -> Source:
        summary = str((item.get("publication_info") or {}).get("summary") or "")
        year = _YEAR_RE.search(summary)
        return Source(
            id=f"scholar-{item.get('result_id') or index}",
            type=self.source_type,
            title=item.get("title") or "Untitled",
            url=item["link"],
            author=summary.split(" - ")[0] or "Unknown",
            snippet=item.get("snippet") or None,
            publish_date=year.group(0) if year else None,
        )
