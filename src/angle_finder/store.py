"""Persistent records: the content cache, usage telemetry and the error log.

The content cache lives in a ``diskcache.Cache`` keyed by source URL, so a
read or hit-count bump touches one row instead of the whole cache. Usage
telemetry is an append-only JSON-lines file aggregated by streaming. The
capped error log is a single JSON document replaced atomically on write.

Unreadable storage raises :class:`StoreError`; the ``clear_*`` operations
recover from it by discarding what they cannot read.
"""

from __future__ import annotations

import os
import shutil
import sqlite3
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import diskcache
import structlog
from pydantic import BaseModel, Field, ValidationError

from angle_finder.exceptions import StoreError
from angle_finder.records import (
    CachedContentEntry,
    CacheStats,
    EndpointUsage,
    ErrorKind,
    ErrorRecord,
    Timeframe,
    UsageRecord,
    UsageSummary,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from angle_finder.models import SourceType

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

CACHE_RETENTION = timedelta(days=365 * 100)
MAX_ERROR_RECORDS = 1000


class _ErrorPayload(BaseModel):
    records: list[ErrorRecord] = Field(default_factory=list)


class RecordStore:
    """Storage behind the content cache, usage telemetry and error log.

    Attributes:
        directory: Root directory holding every store file.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self._cache_dir = directory / "content_cache"
        self._usage_path = directory / "usage.jsonl"
        self._errors_path = directory / "errors.json"
        self._cache: diskcache.Cache | None = None

    def close(self) -> None:
        if self._cache is not None:
            self._cache.close()
            self._cache = None

    # ------------------------------------------------------------------
    # Content cache
    # ------------------------------------------------------------------

    @contextmanager
    def _cache_errors(self) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Unreadable content cache {self._cache_dir}: {exc}") from exc

    def _content(self) -> diskcache.Cache:
        if self._cache is None:
            with self._cache_errors():
                self._cache = diskcache.Cache(str(self._cache_dir))
        return self._cache

    def _entries(self) -> Iterator[CachedContentEntry]:
        cache = self._content()
        with self._cache_errors():
            for url in list(cache):
                value = cache.get(url)
                if value is not None:
                    yield CachedContentEntry.model_validate(value)

    def get_cached_content(self, url: str) -> CachedContentEntry | None:
        """Return the live entry for ``url`` and record the hit.

        Reading is not side-effect free: a hit increments ``hit_count`` and
        stamps ``last_accessed_at``. Expired entries read as misses.
        """
        cache = self._content()
        with self._cache_errors(), cache.transact():
            value = cache.get(url)
            if value is None:
                return None
            entry = CachedContentEntry.model_validate(value)
            now = utcnow()
            if entry.is_expired(now):
                return None
            entry.hit_count += 1
            entry.last_accessed_at = now
            cache.set(url, entry.model_dump(mode="json"))
        return entry

    def set_cached_content(
        self,
        url: str,
        source_type: SourceType,
        content: str,
        fetch_duration_ms: int,
    ) -> CachedContentEntry:
        """Upsert the content stored for ``url``.

        Overwriting keeps the existing ``hit_count`` and ``created_at``;
        the expiry horizon is renewed.
        """
        cache = self._content()
        now = utcnow()
        with self._cache_errors(), cache.transact():
            value = cache.get(url)
            previous = CachedContentEntry.model_validate(value) if value else None
            entry = CachedContentEntry(
                source_url=url,
                source_type=source_type,
                content=content,
                content_length=len(content),
                fetch_duration_ms=max(0, fetch_duration_ms),
                created_at=previous.created_at if previous else now,
                expires_at=now + CACHE_RETENTION,
                hit_count=previous.hit_count if previous else 0,
                last_accessed_at=previous.last_accessed_at if previous else None,
            )
            cache.set(url, entry.model_dump(mode="json"))
        return entry

    def clear_expired_cache(self) -> int:
        now = utcnow()
        expired = [entry.source_url for entry in self._entries() if entry.is_expired(now)]
        cache = self._content()
        with self._cache_errors():
            for url in expired:
                cache.delete(url)
        if expired:
            logger.info("content_cache_swept", removed=len(expired))
        return len(expired)

    def clear_all_cache(self) -> int:
        """Drop every cached entry, rebuilding the cache if it is unreadable."""
        try:
            cache = self._content()
            with self._cache_errors():
                removed = len(cache)
                cache.clear()
        except StoreError as exc:
            logger.warning("content_cache_rebuilt", error=str(exc))
            self.close()
            shutil.rmtree(self._cache_dir, ignore_errors=True)
            removed = 0
        return removed

    def cache_stats(self) -> CacheStats:
        entries = list(self._entries())
        if not entries:
            return CacheStats()
        now = utcnow()
        created = [entry.created_at for entry in entries]
        return CacheStats(
            total_entries=len(entries),
            total_size_bytes=sum(len(entry.content.encode("utf-8")) for entry in entries),
            total_hits=sum(entry.hit_count for entry in entries),
            by_source_type=dict(Counter(str(entry.source_type) for entry in entries)),
            avg_fetch_duration_ms=round(
                sum(entry.fetch_duration_ms for entry in entries) / len(entries), 1
            ),
            oldest_entry=min(created),
            newest_entry=max(created),
            expired_count=sum(1 for entry in entries if entry.is_expired(now)),
        )

    # ------------------------------------------------------------------
    # Usage telemetry
    # ------------------------------------------------------------------

    def track_usage(self, record: UsageRecord) -> None:
        """Append one usage record as a JSON line."""
        try:
            with self._usage_path.open("a", encoding="utf-8") as fh:
                fh.write(record.model_dump_json() + "\n")
        except OSError as exc:
            raise StoreError(f"Cannot append to {self._usage_path}: {exc}") from exc

    def _usage_records(self) -> Iterator[UsageRecord]:
        if not self._usage_path.exists():
            return
        try:
            with self._usage_path.open(encoding="utf-8", errors="replace") as fh:
                for lineno, line in enumerate(fh, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield UsageRecord.model_validate_json(line)
                    except ValidationError:
                        logger.warning(
                            "usage_record_skipped", path=str(self._usage_path), line=lineno
                        )
        except OSError as exc:
            raise StoreError(f"Unreadable store file {self._usage_path}: {exc}") from exc

    def usage_summary(self, timeframe: Timeframe = Timeframe.ALL) -> UsageSummary:
        """Aggregate usage records that fall inside ``timeframe``."""
        cutoff = timeframe.cutoff()
        summary = UsageSummary(timeframe=timeframe)
        by_endpoint: dict[str, EndpointUsage] = {}
        by_credential: Counter[str] = Counter()
        durations: Counter[str] = Counter()
        total_duration = 0
        cost = 0.0

        for record in self._usage_records():
            if cutoff is not None and record.created_at < cutoff:
                continue
            summary.total_requests += 1
            summary.total_input_tokens += record.input_tokens
            summary.total_output_tokens += record.output_tokens
            summary.total_cache_read_tokens += record.cache_read_tokens
            summary.total_cache_creation_tokens += record.cache_creation_tokens
            summary.rate_limited_requests += int(record.was_rate_limited)
            total_duration += record.duration_ms
            cost += record.estimated_cost_usd()
            by_credential[str(record.credential)] += 1

            usage = by_endpoint.setdefault(record.endpoint, EndpointUsage())
            usage.requests += 1
            usage.input_tokens += record.input_tokens
            usage.output_tokens += record.output_tokens
            usage.rate_limited += int(record.was_rate_limited)
            durations[record.endpoint] += record.duration_ms

        if not summary.total_requests:
            return summary
        for endpoint, usage in by_endpoint.items():
            usage.avg_duration_ms = round(durations[endpoint] / usage.requests, 1)
        summary.avg_duration_ms = round(total_duration / summary.total_requests, 1)
        summary.by_endpoint = by_endpoint
        summary.by_credential = dict(by_credential)
        summary.estimated_cost_usd = round(cost, 6)
        return summary

    def clear_usage(self) -> int:
        try:
            with self._usage_path.open("rb") as fh:
                removed = sum(1 for line in fh if line.strip())
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logger.warning("usage_count_failed", error=str(exc))
            removed = 0
        try:
            self._usage_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot remove {self._usage_path}: {exc}") from exc
        return removed

    # ------------------------------------------------------------------
    # Error log
    # ------------------------------------------------------------------

    def _load_errors(self) -> _ErrorPayload:
        if not self._errors_path.exists():
            return _ErrorPayload()
        try:
            return _ErrorPayload.model_validate_json(
                self._errors_path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as exc:
            raise StoreError(f"Unreadable store file {self._errors_path}: {exc}") from exc

    def _save_errors(self, payload: _ErrorPayload) -> None:
        tmp = self._errors_path.with_name(self._errors_path.name + ".tmp")
        try:
            tmp.write_text(payload.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self._errors_path)
        except OSError as exc:
            raise StoreError(f"Cannot write store file {self._errors_path}: {exc}") from exc

    def log_error(
        self,
        endpoint: str,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> ErrorRecord:
        """Append a durable error record, keeping the newest entries only."""
        record = ErrorRecord(
            id=uuid.uuid4().hex,
            endpoint=endpoint,
            kind=kind,
            message=message,
            status_code=status_code,
            context=context or {},
        )
        payload = self._load_errors()
        payload.records.append(record)
        payload.records = payload.records[-MAX_ERROR_RECORDS:]
        self._save_errors(payload)
        return record

    def list_errors(self, limit: int = 50) -> list[ErrorRecord]:
        """Return up to ``limit`` error records, newest first."""
        records = self._load_errors().records
        return list(reversed(records))[:limit]

    def clear_errors(self) -> int:
        try:
            removed = len(self._load_errors().records)
        except StoreError as exc:
            logger.warning("error_log_reset", error=str(exc))
            removed = 0
        self._save_errors(_ErrorPayload())
        return removed
