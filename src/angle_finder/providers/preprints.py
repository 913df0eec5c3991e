"""Preprint server search (bioRxiv and medRxiv recent-details feeds).

Neither server offers keyword search, so the last 30 days of postings
are pulled and filtered locally against the query terms.
"""

from __future__ import annotations

from typing import Any

import structlog

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import (
    MAX_RESULTS_PER_QUERY,
    SNIPPET_CHARS,
    ProviderAdapter,
    SearchContext,
    matches_terms,
    query_terms,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

SERVERS = ("biorxiv", "medrxiv")


class PreprintAdapter(ProviderAdapter):
    """Biomedical preprint server search."""

    source_type = SourceType.PREPRINT

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        terms = query_terms(query)
        sources: list[Source] = []
        for server in SERVERS:
            if len(sources) >= MAX_RESULTS_PER_QUERY:
                break
            try:
                collection = await self._recent(server)
            except Exception as exc:
                logger.warning("preprint_server_failed", server=server, error=str(exc))
                continue
            for item in collection:
                if len(sources) >= MAX_RESULTS_PER_QUERY:
                    break
                source = self._to_source(server, item, terms)
                if source is not None:
                    sources.append(source)
        return sources

    async def _recent(self, server: str) -> list[Any]:
        response = await self._request(
            "GET",
            f"https://api.{server}.org/details/{server}/30d/0/json",
            timeout=self._settings.preprint_timeout,
        )
        collection = response.json().get("collection") or []
        return collection if isinstance(collection, list) else []

    def _to_source(self, server: str, item: Any, terms: list[str]) -> Source | None:
        if not isinstance(item, dict) or not item.get("doi"):
            return None
        title = str(item.get("title") or "")
        abstract = str(item.get("abstract") or "")
        if not matches_terms(f"{title} {abstract}", terms):
            return None
        doi = str(item["doi"])
        authors = str(item.get("authors") or "")
        return Source(
            id=f"preprint-{server}-{doi.replace('/', '-')}",
            type=self.source_type,
            title=title or "Untitled",
            url=f"https://www.{server}.org/content/{doi}",
            author=authors.split(";")[0].strip() or "Unknown",
            publish_date=item.get("date"),
            abstract=abstract or None,
            snippet=abstract[:SNIPPET_CHARS] or None,
        )
