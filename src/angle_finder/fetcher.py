"""Analyzable-text retrieval for discovered sources.

:meth:`ContentFetcher.fetch` dispatches on the source type:

- video/podcast: transcript service first (polling a job handle when the
  service answers asynchronously), then a scrape of the watch page metadata.
- forum: the thread's JSON representation, rendered as title, post and up
  to 20 top-level comments.
- academic types: the abstract or snippet already on the source, with a
  live PubMed abstract fetch for literature-index sources lacking one.
- science news: the article headline and story container only.

``fetch`` never raises for provider problems; ``None`` means "no content"
and the caller falls back to a metadata-only analysis. Cancellation still
propagates.
"""

from __future__ import annotations

import asyncio
import html
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from bs4 import BeautifulSoup
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from angle_finder.config import ProviderSettings, TranscriptSettings
from angle_finder.models import ACADEMIC_SOURCE_TYPES, Source, SourceType
from angle_finder.providers.pubmed import PubMedAdapter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from angle_finder.config import Settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

TRANSCRIPT_API = "https://api.supadata.ai/v1/transcript"
MIN_TRANSCRIPT_LENGTH = 100
MIN_ACADEMIC_LENGTH = 100
MAX_COMMENTS = 20
MIN_DESCRIPTION_LENGTH = 50
MAX_PRODUCT_BODY_CHARS = 8000

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept-Language": "en-US,en;q=0.9",
}

_VIDEO_ID_RE = re.compile(r"(?:v=|/)([\w-]{11})")
_PMID_URL_RE = re.compile(r"pubmed\.ncbi\.nlm\.nih\.gov/(\d+)")
_TRAILING_ID_RE = re.compile(r"/(\d+)/?$")
_META_TITLE_RE = re.compile(r'<meta name="title" content="([^"]+)"')
_CHANNEL_RE = re.compile(r'"ownerChannelName":"([^"]+)"')
_DESCRIPTION_RE = re.compile(r'"shortDescription":"((?:[^"\\]|\\.)*)"')
_VIEW_COUNT_RE = re.compile(r'"viewCount":"(\d+)"')
_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def extract_video_id(url: str) -> str | None:
    """Return the 11-character video id from a watch or short URL."""
    match = _VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


def extract_pmid(url: str) -> str | None:
    """Return the PubMed id from an article URL."""
    match = _PMID_URL_RE.search(url) or _TRAILING_ID_RE.search(url)
    return match.group(1) if match else None


def _unescape_json_string(value: str) -> str:
    return value.replace("\\n", "\n").replace('\\"', '"').replace("\\\\", "\\")


def parse_watch_page(page: str) -> str | None:
    """Render the title, channel, description and views of a watch page."""
    parts: list[str] = []
    if title := _META_TITLE_RE.search(page):
        parts.append(f"Title: {html.unescape(title.group(1))}")
    if channel := _CHANNEL_RE.search(page):
        parts.append(f"Channel: {channel.group(1)}")
    if description := _DESCRIPTION_RE.search(page):
        text = _unescape_json_string(description.group(1))
        if len(text) > MIN_DESCRIPTION_LENGTH:
            parts.append(f"\nDescription:\n{text}")
    if views := _VIEW_COUNT_RE.search(page):
        parts.append(f"\nViews: {int(views.group(1)):,}")
    return "\n".join(parts) or None


def render_thread(payload: Any) -> str | None:
    """Render a forum thread listing pair as title, post and top comments."""
    if not isinstance(payload, list) or not payload:
        return None
    try:
        post = payload[0]["data"]["children"][0]["data"]
    except (KeyError, IndexError, TypeError):
        post = {}
    comments: list[Any] = []
    if len(payload) > 1 and isinstance(payload[1], dict):
        comments = payload[1].get("data", {}).get("children") or []

    content = f"Title: {post.get('title') or ''}\n\n"
    content += f"Post: {post.get('selftext') or ''}\n\n"
    content += "Top Comments:\n"
    taken = 0
    for comment in comments:
        if taken >= MAX_COMMENTS:
            break
        body = (comment.get("data") or {}).get("body") if isinstance(comment, dict) else None
        if body:
            content += f"- {body}\n\n"
            taken += 1
    return content


def render_academic(source: Source) -> str | None:
    """Render the stored bibliographic fields of an academic source."""
    parts: list[str] = []
    if source.title:
        parts.append(f"Title: {source.title}")
    if source.author:
        parts.append(f"Author: {source.author}")
    if source.abstract:
        parts.append(f"\nAbstract:\n{source.abstract}")
    elif source.snippet:
        parts.append(f"\nSummary:\n{source.snippet}")
    if source.publish_date:
        parts.append(f"\nPublished: {source.publish_date}")
    return "\n".join(parts) or None


def parse_article(page: str) -> str | None:
    """Extract the headline and story body of a science news article.

    Only the known headline and story containers are used; pages with
    neither yield ``None``.
    """
    soup = BeautifulSoup(page, "html.parser")
    headline = soup.select_one("h1#headline")
    story = soup.select_one("div#story_text")
    content = ""
    if headline is not None:
        content += f"Title: {headline.get_text(strip=True)}\n\n"
    if story is not None:
        content += _WHITESPACE_RE.sub(" ", story.get_text(" ")).strip()
    return content or None


@dataclass(frozen=True, slots=True)
class ProductPage:
    """Text pulled from a product landing page."""

    title: str = ""
    meta_description: str = ""
    og_description: str = ""
    body_text: str = ""


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    content = tag.get("content") if tag is not None else None
    return content.strip() if isinstance(content, str) else ""


def parse_product_page(page: str) -> ProductPage:
    """Extract the title, descriptions and visible body text of a page.

    Scripts, styles and the navigation chrome are dropped before the body
    text is collected; the body is capped at
    :data:`MAX_PRODUCT_BODY_CHARS`.
    """
    soup = BeautifulSoup(page, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title is not None else ""
    meta_description = _meta_content(soup, name="description")
    og_description = _meta_content(soup, property="og:description")
    for tag in soup(["script", "style", "nav", "footer", "header"]):
        tag.decompose()
    body = soup.body or soup
    body_text = _WHITESPACE_RE.sub(" ", body.get_text(" ")).strip()
    return ProductPage(
        title=title,
        meta_description=meta_description,
        og_description=og_description,
        body_text=body_text[:MAX_PRODUCT_BODY_CHARS],
    )


def _transcript_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(segment.get("text", "")) for segment in content if isinstance(segment, dict)
        )
    return None


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class ContentFetcher:
    """Retrieves analyzable text for a :class:`Source`."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        providers: ProviderSettings | None = None,
        transcripts: TranscriptSettings | None = None,
        environ: Mapping[str, str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the fetcher.

        Args:
            client: Shared async HTTP client.
            providers: HTTP timeouts and identification.
            transcripts: Transcript job polling limits.
            environ: Source of ``SUPADATA_API_KEY`` and ``NCBI_API_KEY``.
            sleep: Awaitable sleep used between job polls.
        """
        self._client = client
        self._providers = providers or ProviderSettings()
        self._transcripts = transcripts or TranscriptSettings()
        self._pubmed = PubMedAdapter(client, self._providers, environ)
        self._environ = os.environ if environ is None else environ
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        client: httpx.AsyncClient,
        settings: Settings,
        environ: Mapping[str, str] | None = None,
    ) -> ContentFetcher:
        return cls(client, settings.providers, settings.transcripts, environ)

    async def fetch(self, source: Source) -> str | None:
        """Return analyzable text for ``source`` or ``None``."""
        try:
            if source.type in (SourceType.YOUTUBE, SourceType.PODCAST):
                return await self._video_content(source)
            if source.type is SourceType.REDDIT:
                return await self._thread_content(source.url)
            if source.type in ACADEMIC_SOURCE_TYPES:
                return await self._academic_content(source)
            if source.type is SourceType.SCIENCEDAILY:
                return parse_article(await self._get_text(source.url))
        except Exception as exc:
            logger.warning(
                "content_fetch_failed",
                source_id=source.id,
                source_type=source.type,
                error=str(exc) or type(exc).__name__,
            )
        return None

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"User-Agent": self._providers.user_agent, **kwargs.pop("headers", {})}
        response = await self._client.get(
            url, headers=headers, timeout=self._providers.timeout, **kwargs
        )
        response.raise_for_status()
        return response

    async def _get_text(self, url: str, **kwargs: Any) -> str:
        return (await self._get(url, **kwargs)).text

    async def fetch_product_page(self, url: str) -> ProductPage:
        """Download and parse a product landing page.

        Unlike :meth:`fetch`, failures propagate.

        Raises:
            httpx.HTTPError: If the page cannot be downloaded.
        """
        page = await self._get_text(
            url,
            headers={**BROWSER_HEADERS, "Accept": "text/html,application/xhtml+xml"},
            follow_redirects=True,
        )
        return parse_product_page(page)

    # -- video -------------------------------------------------------------

    async def _video_content(self, source: Source) -> str | None:
        video_id = extract_video_id(source.url)
        if video_id is None:
            return None
        try:
            transcript = await self._transcript(video_id)
        except Exception as exc:
            logger.info("transcript_fetch_failed", video_id=video_id, error=repr(exc))
            transcript = None
        if transcript and len(transcript) > MIN_TRANSCRIPT_LENGTH:
            return f"Transcript:\n{transcript}"
        logger.info("transcript_unavailable_using_metadata", video_id=video_id)
        return await self._watch_page_metadata(video_id)

    async def _transcript(self, video_id: str) -> str | None:
        api_key = (self._environ.get("SUPADATA_API_KEY") or "").strip()
        if not api_key:
            logger.debug("transcript_service_not_configured")
            return None
        headers = {"x-api-key": api_key}
        try:
            response = await self._get(
                TRANSCRIPT_API,
                headers=headers,
                params={
                    "url": f"https://www.youtube.com/watch?v={video_id}",
                    "lang": "en",
                    "text": "true",
                    "mode": "auto",
                },
            )
            payload = response.json()
            job_id = payload.get("jobId") if isinstance(payload, dict) else None
            if job_id:
                return await self._poll_transcript_job(str(job_id), headers)
            if isinstance(payload, dict):
                return _transcript_text(payload.get("content"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("transcript_fetch_failed", video_id=video_id, error=str(exc))
        return None

    async def _poll_transcript_job(self, job_id: str, headers: dict[str, str]) -> str | None:
        for attempt in range(1, self._transcripts.poll_attempts + 1):
            await self._sleep(self._transcripts.poll_interval)
            response = await self._get(f"{TRANSCRIPT_API}/{job_id}", headers=headers)
            job = response.json()
            if not isinstance(job, dict):
                logger.info("transcript_job_malformed", job_id=job_id)
                return None
            status = job.get("status")
            if status == "completed":
                result = job.get("result") if isinstance(job.get("result"), dict) else job
                return _transcript_text(result.get("content"))
            if status == "failed":
                logger.info("transcript_job_failed", job_id=job_id, error=job.get("error"))
                return None
            logger.debug("transcript_job_pending", job_id=job_id, attempt=attempt)
        logger.info("transcript_job_timed_out", job_id=job_id)
        return None

    async def _watch_page_metadata(self, video_id: str) -> str | None:
        page = await self._get_text(
            f"https://www.youtube.com/watch?v={video_id}", headers=BROWSER_HEADERS
        )
        return parse_watch_page(page)

    # -- forum -------------------------------------------------------------

    async def _thread_content(self, url: str) -> str | None:
        json_url = f"{url}.json" if url.endswith("/") else f"{url}/.json"
        response = await self._get(json_url)
        return render_thread(response.json())

    # -- academic ----------------------------------------------------------

    async def _academic_content(self, source: Source) -> str | None:
        content = render_academic(source)
        if (
            (content is None or len(content) < MIN_ACADEMIC_LENGTH)
            and source.type is SourceType.RESEARCH
            and (pmid := extract_pmid(source.url))
        ):
            return await self._pubmed.fetch_abstract(pmid)
        return content
