"""Literature search through NCBI E-utilities (PubMed and PMC).

PubMed hits are enriched with abstracts in the same pass so the
analysis step rarely needs a live fetch. NCBI asks clients to stay under
three requests per second without an API key, hence the pause between
consecutive calls.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import structlog

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import SNIPPET_CHARS, ProviderAdapter, SearchContext

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

EUTILS_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_RESULTS = 8
PMC_RESULTS = 5

_ABSTRACT_BLOCK_SPLIT_RE = re.compile(r"\n\n(?=\d+\. )")
_PMID_RE = re.compile(r"PMID: (\d+)")
_ABSTRACT_RE = re.compile(r"Abstract\n([\s\S]*?)(?=\n\n|PMID:|$)", re.IGNORECASE)


def parse_abstracts(text: str) -> dict[str, str]:
    """Map PMID to abstract text from an ``efetch`` plain-text response."""
    abstracts: dict[str, str] = {}
    for block in _ABSTRACT_BLOCK_SPLIT_RE.split(text):
        pmid = _PMID_RE.search(block)
        abstract = _ABSTRACT_RE.search(block)
        if pmid and abstract:
            abstracts[pmid.group(1)] = abstract.group(1).strip()
    return abstracts


class PubMedAdapter(ProviderAdapter):
    """Biomedical literature index search."""

    source_type = SourceType.RESEARCH

    def _tool_params(self) -> dict[str, str]:
        params = {"tool": "AngleFinder", "email": "contact@anglefinder.app"}
        api_key = self._secret("NCBI_API_KEY")
        if api_key:
            params["api_key"] = api_key
        return params

    async def _pause(self) -> None:
        if self._settings.ncbi_request_interval:
            await asyncio.sleep(self._settings.ncbi_request_interval)

    async def _esearch(self, db: str, query: str, retmax: int) -> list[str]:
        response = await self._request(
            "GET",
            f"{EUTILS_BASE}/esearch.fcgi",
            params={
                "db": db,
                "term": query,
                "retmax": retmax,
                "retmode": "json",
                "sort": "relevance",
                **self._tool_params(),
            },
        )
        ids = response.json().get("esearchresult", {}).get("idlist", [])
        return [str(item) for item in ids]

    async def _esummary(self, db: str, ids: list[str]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{EUTILS_BASE}/esummary.fcgi",
            params={"db": db, "retmode": "json", **self._tool_params()},
            data={"id": ",".join(ids)},
        )
        result = response.json().get("result", {})
        return result if isinstance(result, dict) else {}

    async def fetch_abstract(self, pmid: str) -> str | None:
        """Fetch PubMed abstracts (comma-separated ids) as plain text."""
        response = await self._request(
            "GET",
            f"{EUTILS_BASE}/efetch.fcgi",
            params={
                "db": "pubmed",
                "id": pmid,
                "rettype": "abstract",
                "retmode": "text",
                **self._tool_params(),
            },
        )
        return response.text or None

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        sources = await self._search_pubmed(query)
        await self._pause()
        try:
            sources.extend(await self._search_pmc(query))
        except Exception as exc:
            # keep the PubMed half of the results
            logger.warning("pmc_search_failed", query=query, error=str(exc))
        return sources

    async def _search_pubmed(self, query: str) -> list[Source]:
        ids = await self._esearch("pubmed", query, PUBMED_RESULTS)
        if not ids:
            return []
        await self._pause()
        summaries = await self._esummary("pubmed", ids)
        await self._pause()
        try:
            abstracts_text = await self.fetch_abstract(",".join(ids)) or ""
        except Exception as exc:
            logger.debug("pubmed_abstracts_unavailable", error=str(exc))
            abstracts_text = ""
        abstracts = parse_abstracts(abstracts_text)

        sources: list[Source] = []
        for pmid in ids:
            article = summaries.get(pmid)
            if not isinstance(article, dict):
                continue
            abstract = abstracts.get(pmid, "")
            sources.append(
                Source(
                    id=f"research-pubmed-{pmid}",
                    type=self.source_type,
                    title=article.get("title") or "Untitled",
                    url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
                    author=_first_author(article),
                    publish_date=article.get("pubdate"),
                    abstract=abstract or None,
                    snippet=abstract[:SNIPPET_CHARS] or None,
                )
            )
        return sources

    async def _search_pmc(self, query: str) -> list[Source]:
        ids = await self._esearch("pmc", query, PMC_RESULTS)
        if not ids:
            return []
        await self._pause()
        summaries = await self._esummary("pmc", ids)
        sources: list[Source] = []
        for pmc_id in ids:
            article = summaries.get(pmc_id)
            if not isinstance(article, dict):
                continue
            sources.append(
                Source(
                    id=f"research-pmc-{pmc_id}",
                    type=self.source_type,
                    title=article.get("title") or "Untitled",
                    url=f"https://www.ncbi.nlm.nih.gov/pmc/articles/PMC{pmc_id}/",
                    author=_first_author(article),
                    publish_date=article.get("pubdate"),
                )
            )
        return sources


def _first_author(article: dict[str, Any]) -> str:
    authors = article.get("authors") or []
    if authors and isinstance(authors[0], dict):
        return str(authors[0].get("name") or "Unknown")
    return "Unknown"
