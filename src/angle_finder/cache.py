"""URL-keyed content cache in front of the content fetcher.

Entries are effectively permanent: the expiry horizon is a century out,
so only an explicit admin sweep or clear ever evicts anything. Content
shorter than :data:`MIN_CACHEABLE_LENGTH` counts as a failed fetch and
is never stored. Storage failures are logged and treated as misses; the
cache never fails an analysis. Store reads and writes run in a worker
thread so cache hits never stall the event loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from angle_finder.exceptions import StoreError

if TYPE_CHECKING:
    from angle_finder.fetcher import ContentFetcher
    from angle_finder.models import Source, SourceType
    from angle_finder.records import CachedContentEntry, CacheStats
    from angle_finder.store import RecordStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MIN_CACHEABLE_LENGTH = 100


@dataclass(slots=True)
class ContentLookup:
    """Outcome of :meth:`ContentCache.get_or_fetch`."""

    content: str | None
    cache_hit: bool = False
    hit_count: int = 0


class ContentCache:
    """Content-addressed-by-URL cache over a :class:`RecordStore`."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(self, url: str) -> CachedContentEntry | None:
        """Return the cached entry for ``url``, counting the hit."""
        try:
            entry = self._store.get_cached_content(url)
        except StoreError as exc:
            logger.warning("content_cache_read_failed", url=url, error=str(exc))
            return None
        if entry is not None:
            logger.info(
                "content_cache_hit",
                url=url,
                content_length=entry.content_length,
                hit_count=entry.hit_count,
            )
        return entry

    def set(
        self,
        url: str,
        source_type: SourceType,
        content: str,
        fetch_duration_ms: int,
    ) -> bool:
        """Store ``content`` for ``url`` if it is long enough.

        Returns:
            ``True`` when the content was written.
        """
        if len(content) < MIN_CACHEABLE_LENGTH:
            logger.debug("content_cache_skip_short", url=url, length=len(content))
            return False
        try:
            self._store.set_cached_content(url, source_type, content, fetch_duration_ms)
        except StoreError as exc:
            logger.warning("content_cache_write_failed", url=url, error=str(exc))
            return False
        logger.info(
            "content_cache_store",
            url=url,
            content_length=len(content),
            fetch_duration_ms=fetch_duration_ms,
        )
        return True

    def clear_expired(self) -> int:
        return self._store.clear_expired_cache()

    def clear_all(self) -> int:
        return self._store.clear_all_cache()

    def stats(self) -> CacheStats:
        return self._store.cache_stats()

    async def get_or_fetch(self, source: Source, fetcher: ContentFetcher) -> ContentLookup:
        """Serve ``source``'s content from cache, fetching and storing on a miss.

        Fetched content below the cacheable length is returned as ``None``
        so the caller falls back to a metadata-only analysis.
        """
        entry = await asyncio.to_thread(self.get, source.url)
        if entry is not None:
            return ContentLookup(
                content=entry.content, cache_hit=True, hit_count=entry.hit_count
            )

        logger.info("content_cache_miss", source_id=source.id, url=source.url)
        started = time.perf_counter()
        content = await fetcher.fetch(source)
        duration_ms = int((time.perf_counter() - started) * 1000)

        if content is None or len(content) < MIN_CACHEABLE_LENGTH:
            return ContentLookup(content=None)
        await asyncio.to_thread(self.set, source.url, source.type, content, duration_ms)
        return ContentLookup(content=content)
