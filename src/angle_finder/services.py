"""Wiring of the long-lived collaborators shared by the API and the CLI."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from angle_finder.analysis import AnalysisPipeline
from angle_finder.cache import ContentCache
from angle_finder.credentials import get_credential_selector
from angle_finder.discovery import DiscoveryOrchestrator
from angle_finder.fetcher import ContentFetcher
from angle_finder.llm import ResilientLLMClient
from angle_finder.providers import build_adapters
from angle_finder.store import RecordStore

if TYPE_CHECKING:
    from collections.abc import Mapping

    from angle_finder.config import Settings
    from angle_finder.credentials import CredentialSelector


@dataclass(slots=True)
class Services:
    """Everything a request needs, built once per process."""

    settings: Settings
    client: httpx.AsyncClient
    store: RecordStore
    cache: ContentCache
    llm: ResilientLLMClient
    fetcher: ContentFetcher
    pipeline: AnalysisPipeline
    orchestrator: DiscoveryOrchestrator

    async def aclose(self) -> None:
        await self.client.aclose()
        self.store.close()


def build_services(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    selector: CredentialSelector | None = None,
    environ: Mapping[str, str] | None = None,
) -> Services:
    """Construct the record store, LLM client, providers and pipelines."""
    http = client or httpx.AsyncClient(
        timeout=settings.providers.timeout, follow_redirects=True
    )
    store = RecordStore(settings.store.directory)
    cache = ContentCache(store)
    llm = ResilientLLMClient.from_settings(
        settings, store=store, selector=selector or get_credential_selector()
    )
    fetcher = ContentFetcher.from_settings(http, settings, environ)
    adapters = build_adapters(http, settings.providers, environ)
    return Services(
        settings=settings,
        client=http,
        store=store,
        cache=cache,
        llm=llm,
        fetcher=fetcher,
        pipeline=AnalysisPipeline(llm, fetcher, cache),
        orchestrator=DiscoveryOrchestrator.from_settings(settings, llm, adapters),
    )
