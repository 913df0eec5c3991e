"""Provider adapter base class and shared helpers.

Every adapter turns one provider's native search response into uniform
:class:`~angle_finder.models.Source` records. :meth:`ProviderAdapter.search`
is fault tolerant: any provider failure is logged and yields an empty
list so one outage never voids a discovery batch.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from angle_finder.config import ProviderSettings
    from angle_finder.models import Source, SourceType

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MAX_RESULTS_PER_QUERY = 10
SNIPPET_CHARS = 200

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def strip_tags(text: str) -> str:
    """Drop HTML tags and collapse whitespace."""
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub(" ", text)).strip()


def query_terms(query: str) -> list[str]:
    """Lowercased query words longer than two characters."""
    return [term for term in query.lower().split() if len(term) > 2]


def matches_terms(text: str, terms: list[str]) -> bool:
    """Whether ``text`` contains at least ``min(2, len(terms))`` of ``terms``.

    Used by feed-style providers that return a fixed listing rather than
    honouring a query.
    """
    haystack = text.lower()
    hits = sum(1 for term in terms if term in haystack)
    return hits >= min(2, len(terms))


def format_duration(seconds: float | None) -> str | None:
    """Render seconds as ``M:SS`` or ``H:MM:SS``."""
    if not seconds:
        return None
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SearchContext:
    """Per-discovery hints shared with every adapter call."""

    subreddits: list[str] = field(default_factory=list)


class ProviderAdapter(ABC):
    """Base class for the fixed set of discovery providers.

    Attributes:
        source_type: The :class:`SourceType` this adapter produces.
    """

    source_type: ClassVar[SourceType]

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: ProviderSettings,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: Shared async HTTP client.
            settings: Provider timeouts and identification.
            environ: Source of provider secrets; defaults to ``os.environ``.
        """
        self._client = client
        self._settings = settings
        self._environ = os.environ if environ is None else environ

    @property
    def name(self) -> str:
        return str(self.source_type)

    def _secret(self, name: str) -> str | None:
        value = self._environ.get(name, "").strip()
        return value or None

    async def search(self, query: str, context: SearchContext | None = None) -> list[Source]:
        """Search the provider, returning ``[]`` on any failure."""
        try:
            sources = await self._search(query, context or SearchContext())
        except Exception as exc:
            logger.warning(
                "provider_search_failed",
                provider=self.name,
                query=query,
                error=str(exc) or type(exc).__name__,
            )
            return []
        logger.debug(
            "provider_search_complete",
            provider=self.name,
            query=query,
            results=len(sources),
        )
        return sources

    @abstractmethod
    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        """Provider-specific search; may raise."""

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue an HTTP request, retrying once on transport errors.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
        """
        headers = {"User-Agent": self._settings.user_agent, **kwargs.pop("headers", {})}
        kwargs.setdefault("timeout", self._settings.timeout)
        response = await self._client.request(method, url, headers=headers, **kwargs)
        response.raise_for_status()
        return response
