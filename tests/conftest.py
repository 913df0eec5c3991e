"""Shared pytest fixtures for the angle-finder test suite."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from angle_finder.config import Settings
from angle_finder.credentials import CredentialSelector, set_credential_selector
from angle_finder.models import Source, SourceType
from angle_finder.store import RecordStore

# ---------------------------------------------------------------------------
# Filesystem and configuration
# ---------------------------------------------------------------------------


@pytest.fixture()
def store_dir(tmp_path: Path) -> Path:
    """Create and return a temporary record store directory."""
    directory = tmp_path / "store"
    directory.mkdir()
    return directory


@pytest.fixture()
def store(store_dir: Path) -> Iterator[RecordStore]:
    record_store = RecordStore(store_dir)
    yield record_store
    record_store.close()


@pytest.fixture()
def settings(store_dir: Path) -> Settings:
    """Return settings with fast, offline-friendly values."""
    settings = Settings()
    settings.store.directory = store_dir
    settings.llm.base_delay = 0.01
    settings.llm.max_retries = 1
    settings.providers.ncbi_request_interval = 0.0
    settings.scheduler.debounce_seconds = 0.01
    settings.transcripts.poll_interval = 0.01
    return settings


@pytest.fixture(autouse=True)
def _isolated_credentials() -> Iterator[None]:
    """Give every test a fresh process-wide credential selector."""
    set_credential_selector(CredentialSelector())
    yield
    set_credential_selector(None)


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


def make_source(
    source_id: str = "youtube-abc123def45",
    source_type: SourceType = SourceType.YOUTUBE,
    **fields: Any,
) -> Source:
    """Build a source with sensible defaults for the given type."""
    defaults: dict[str, Any] = {
        "title": f"Title for {source_id}",
        "url": f"https://example.com/{source_id}",
    }
    defaults.update(fields)
    return Source(id=source_id, type=source_type, **defaults)


class ScriptedLLM:
    """Stand-in for ``ResilientLLMClient.complete`` returning canned replies.

    Each reply is either a string (returned) or an exception (raised).
    The last reply repeats once the script is exhausted.
    """

    def __init__(self, *replies: str | BaseException) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, **kwargs: Any) -> str:
        self.prompts.append(prompt)
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply




def corrupt_content_cache(store_dir: Path) -> None:
    """Overwrite the content cache database with bytes SQLite rejects."""
    cache_dir = store_dir / "content_cache"
    cache_dir.mkdir(parents=True, exist_ok=True)
    (cache_dir / "cache.db").write_bytes(b"definitely not sqlite " * 64)
