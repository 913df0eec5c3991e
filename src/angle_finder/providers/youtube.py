"""Video and podcast search through the ``yt-dlp`` executable.

No API key is needed: ``yt-dlp "ytsearch15:<query>" --flat-playlist -J``
returns a JSON playlist of search hits. The podcast adapter biases the
query towards long-form interviews and keeps only items of 20 minutes or
more.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from angle_finder.models import Source, SourceType
from angle_finder.providers.base import (
    MAX_RESULTS_PER_QUERY,
    ProviderAdapter,
    SearchContext,
    format_duration,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from angle_finder.config import ProviderSettings

SEARCH_COUNT = 15
PODCAST_MIN_SECONDS = 20 * 60
PODCAST_QUERY_SUFFIX = "podcast interview episode"

CommandRunner = Callable[[list[str], float], Awaitable[str]]


async def run_command(command: list[str], timeout: float) -> str:
    """Run ``command`` and return its stdout.

    The child is killed if it is still running when this returns, whether
    by timeout or by cancellation of the awaiting task.

    Raises:
        RuntimeError: If the process exits non-zero.
        TimeoutError: If it runs longer than ``timeout`` seconds.
    """
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    finally:
        if process.returncode is None:
            process.kill()
            await asyncio.shield(process.wait())
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="ignore").strip()[:300]
        raise RuntimeError(f"{command[0]} exited with {process.returncode}: {message}")
    return stdout.decode("utf-8", errors="ignore")


class YouTubeAdapter(ProviderAdapter):
    """Video platform search."""

    source_type = SourceType.YOUTUBE
    podcast = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: ProviderSettings,
        environ: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(client, settings, environ)
        self._runner = runner or run_command

    async def _search(self, query: str, context: SearchContext) -> list[Source]:
        search_query = f"{query} {PODCAST_QUERY_SUFFIX}" if self.podcast else query
        stdout = await self._runner(
            ["yt-dlp", f"ytsearch{SEARCH_COUNT}:{search_query}", "--flat-playlist", "-J"],
            self._settings.search_timeout,
        )
        payload = json.loads(stdout)
        entries = payload.get("entries") or []

        sources: list[Source] = []
        for entry in entries:
            source = self._to_source(entry)
            if source is not None:
                sources.append(source)
            if len(sources) >= MAX_RESULTS_PER_QUERY:
                break
        return sources

    def _to_source(self, entry: Any) -> Source | None:
        if not isinstance(entry, dict) or not entry.get("id"):
            return None
        seconds = entry.get("duration") or 0
        if self.podcast and seconds < PODCAST_MIN_SECONDS:
            return None
        video_id = str(entry["id"])
        return Source(
            id=f"{self.source_type}-{video_id}",
            type=self.source_type,
            title=entry.get("title") or "Untitled",
            url=f"https://www.youtube.com/watch?v={video_id}",
            views=int(entry.get("view_count") or 0),
            author=entry.get("channel") or entry.get("uploader") or "Unknown",
            duration=format_duration(seconds),
        )


class PodcastAdapter(YouTubeAdapter):
    """Long-form interview search on the video platform."""

    source_type = SourceType.PODCAST
    podcast = True
