"""Discovery provider adapters, one per :class:`SourceType`."""

from __future__ import annotations

from typing import TYPE_CHECKING

from angle_finder.models import SourceType
from angle_finder.providers.arxiv import ArxivAdapter
from angle_finder.providers.base import ProviderAdapter, SearchContext
from angle_finder.providers.preprints import PreprintAdapter
from angle_finder.providers.pubmed import PubMedAdapter
from angle_finder.providers.reddit import RedditAdapter
from angle_finder.providers.scholar import ScholarAdapter
from angle_finder.providers.sciencedaily import ScienceDailyAdapter
from angle_finder.providers.youtube import PodcastAdapter, YouTubeAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from angle_finder.config import ProviderSettings

ADAPTER_TYPES: dict[SourceType, type[ProviderAdapter]] = {
    SourceType.YOUTUBE: YouTubeAdapter,
    SourceType.PODCAST: PodcastAdapter,
    SourceType.REDDIT: RedditAdapter,
    SourceType.RESEARCH: PubMedAdapter,
    SourceType.SCIENCEDAILY: ScienceDailyAdapter,
    SourceType.SCHOLAR: ScholarAdapter,
    SourceType.ARXIV: ArxivAdapter,
    SourceType.PREPRINT: PreprintAdapter,
}


def build_adapters(
    client: httpx.AsyncClient,
    settings: ProviderSettings,
    environ: Mapping[str, str] | None = None,
) -> dict[SourceType, ProviderAdapter]:
    """Instantiate one adapter per source type sharing ``client``."""
    return {
        source_type: adapter_type(client, settings, environ)
        for source_type, adapter_type in ADAPTER_TYPES.items()
    }


__all__ = [
    "ADAPTER_TYPES",
    "ProviderAdapter",
    "SearchContext",
    "build_adapters",
]
