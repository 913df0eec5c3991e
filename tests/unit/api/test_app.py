"""Tests for the FastAPI endpoints and their error boundary."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from angle_finder.api.app import create_app
from angle_finder.credentials import CredentialSelector
from angle_finder.exceptions import StoreError
from angle_finder.models import AnalysisResult, Claim, Hook, ProductProfile, SourceType
from angle_finder.records import ErrorKind, UsageRecord
from angle_finder.services import Services, build_services
from tests.conftest import corrupt_content_cache, make_source

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from angle_finder.config import Settings


class RateLimited(Exception):
    status_code = 429


DISCOVER_PAYLOAD = {
    "niche": "sleep",
    "product": "magnesium gummies",
    "strategy": "translocate",
    "sourceTypes": ["youtube", "reddit"],
}


@pytest.fixture
def services(settings: Settings) -> Services:
    return build_services(
        settings,
        client=httpx.AsyncClient(),
        selector=CredentialSelector(),
        environ={},
    )


@pytest.fixture
def client(settings: Settings, services: Services) -> Iterator[TestClient]:
    app = create_app(settings, services=services)
    with TestClient(app) as test_client:
        yield test_client


def _analyze_payload() -> dict[str, Any]:
    return {
        "source": make_source().model_dump(mode="json", by_alias=True),
        "niche": "sleep",
        "product": "gummies",
        "strategy": "direct",
    }


def _hook() -> Hook:
    return Hook.from_llm(
        {"headline": "The 2am cortisol spike", "awarenessLevel": "hidden"},
        source_id="youtube-abc123def45",
        index=0,
        source_name="Video",
        source_type=SourceType.YOUTUBE,
        source_url="https://example.com/v",
    )


def test_health_and_cors(settings: Settings, services: Services) -> None:
    settings.api.cors_origins = ["http://localhost:3000"]
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        resp = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert resp.headers.get("access-control-allow-origin") == "http://localhost:3000"


# ---------------------------------------------------------------------------
# Discovery and analysis
# ---------------------------------------------------------------------------


class TestDiscover:
    def test_returns_camel_case_sources(self, client: TestClient, services: Services) -> None:
        source = make_source(publish_date="2024-01-01", views=10)
        services.orchestrator.discover = AsyncMock(return_value=[source])  # type: ignore[method-assign]

        resp = client.post("/api/discover", json=DISCOVER_PAYLOAD)

        assert resp.status_code == 200
        body = resp.json()
        assert body["sources"][0]["id"] == source.id
        assert body["sources"][0]["publishDate"] == "2024-01-01"
        request = services.orchestrator.discover.await_args.args[0]
        assert request.source_types == [SourceType.YOUTUBE, SourceType.REDDIT]

    def test_invalid_payload_is_rejected(self, client: TestClient) -> None:
        resp = client.post("/api/discover", json={**DISCOVER_PAYLOAD, "sourceTypes": []})
        assert resp.status_code == 422

    def test_failure_is_logged_and_reported(
        self, client: TestClient, services: Services
    ) -> None:
        services.orchestrator.discover = AsyncMock(  # type: ignore[method-assign]
            side_effect=RuntimeError("provider exploded")
        )

        resp = client.post("/api/discover", json=DISCOVER_PAYLOAD)

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to discover sources"}
        (record,) = services.store.list_errors()
        assert record.endpoint == "/api/discover"
        assert record.kind is ErrorKind.DISCOVER_ERROR
        assert record.message == "provider exploded"
        assert record.status_code == 500
        assert record.context["sourceTypes"] == ["youtube", "reddit"]


class TestAnalyze:
    def test_returns_result(self, client: TestClient, services: Services) -> None:
        source = make_source()
        result = AnalysisResult(
            source_id=source.id,
            source_name=source.title,
            source_type=source.type,
            source_url=source.url,
        )
        services.pipeline.analyze = AsyncMock(return_value=result)  # type: ignore[method-assign]

        resp = client.post("/api/analyze", json=_analyze_payload())

        assert resp.status_code == 200
        assert resp.json()["sourceId"] == source.id
        assert services.pipeline.analyze.await_args.kwargs["niche"] == "sleep"

    def test_analysis_error_includes_detail(
        self, client: TestClient, services: Services
    ) -> None:
        services.pipeline.analyze = AsyncMock(  # type: ignore[method-assign]
            side_effect=ValueError("No JSON object found in response")
        )
        resp = client.post("/api/analyze", json=_analyze_payload())
        assert resp.status_code == 500
        assert resp.json()["error"] == (
            "Failed to analyze source: No JSON object found in response"
        )
        assert services.store.list_errors()[0].kind is ErrorKind.ANALYSIS_ERROR

    def test_exhausted_rate_limit_returns_429(
        self, client: TestClient, services: Services
    ) -> None:
        services.pipeline.analyze = AsyncMock(  # type: ignore[method-assign]
            side_effect=RateLimited("slow down")
        )
        resp = client.post("/api/analyze", json=_analyze_payload())
        assert resp.status_code == 429
        (record,) = services.store.list_errors()
        assert record.kind is ErrorKind.RATE_LIMIT
        assert record.status_code == 429
        assert record.context["sourceId"] == "youtube-abc123def45"


class TestHooks:
    def test_generate_hook(self, client: TestClient, services: Services) -> None:
        hook = _hook()
        services.pipeline.generate_hook = AsyncMock(return_value=hook)  # type: ignore[method-assign]
        claim = Claim.from_llm({"claim": "Cortisol peaks"}, source_id="s", index=0)

        resp = client.post(
            "/api/generate-hook",
            json={
                "claim": claim.model_dump(mode="json", by_alias=True),
                "sourceName": "Video",
                "sourceType": "youtube",
                "sourceUrl": "https://example.com/v",
                "niche": "sleep",
                "product": "gummies",
                "strategy": "translocate",
            },
        )

        assert resp.status_code == 200
        assert resp.json()["hook"]["id"] == hook.id
        kwargs = services.pipeline.generate_hook.await_args.kwargs
        assert kwargs["source_type"] is SourceType.YOUTUBE

    def test_variation_failure(self, client: TestClient, services: Services) -> None:
        services.pipeline.generate_variation = AsyncMock(  # type: ignore[method-assign]
            side_effect=RuntimeError("bad reply")
        )
        hook = _hook()
        resp = client.post(
            "/api/variation",
            json={"hook": hook.model_dump(mode="json", by_alias=True), "feedback": "shorter"},
        )
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to generate variation"}
        (record,) = services.store.list_errors()
        assert record.kind is ErrorKind.VARIATION_ERROR
        assert record.context == {"hookId": hook.id}

    def test_variation_requires_feedback(self, client: TestClient) -> None:
        resp = client.post(
            "/api/variation",
            json={"hook": _hook().model_dump(mode="json", by_alias=True), "feedback": ""},
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Product pages
# ---------------------------------------------------------------------------

PRODUCT_URL = "https://shop.example.com/products/dream-gummies"


class TestAnalyzeUrl:
    def test_returns_profile(self, client: TestClient, services: Services) -> None:
        profile = ProductProfile(
            product_name="DreamGummies",
            detected_niche="sleep",
            product_description="Magnesium gummies for sleep.",
        )
        services.pipeline.analyze_product_url = AsyncMock(return_value=profile)  # type: ignore[method-assign]

        resp = client.post(
            "/api/analyze-url", json={"url": PRODUCT_URL, "sessionId": "s-1"}
        )

        assert resp.status_code == 200
        assert resp.json()["productName"] == "DreamGummies"
        assert resp.json()["detectedNiche"] == "sleep"
        call = services.pipeline.analyze_product_url.await_args
        assert call.args[0] == PRODUCT_URL
        assert call.kwargs["session_id"] == "s-1"

    def test_unreachable_page_is_a_bad_request(
        self, client: TestClient, services: Services
    ) -> None:
        request = httpx.Request("GET", PRODUCT_URL)
        services.pipeline.analyze_product_url = AsyncMock(  # type: ignore[method-assign]
            side_effect=httpx.HTTPStatusError(
                "not found", request=request, response=httpx.Response(404, request=request)
            )
        )

        resp = client.post("/api/analyze-url", json={"url": PRODUCT_URL})

        assert resp.status_code == 400
        assert resp.json() == {"error": "Failed to fetch page: 404"}
        (record,) = services.store.list_errors()
        assert record.kind is ErrorKind.PRODUCT_URL_ERROR
        assert record.context["url"] == PRODUCT_URL

    def test_analysis_failure(self, client: TestClient, services: Services) -> None:
        services.pipeline.analyze_product_url = AsyncMock(  # type: ignore[method-assign]
            side_effect=ValueError("No JSON object found in response")
        )
        resp = client.post("/api/analyze-url", json={"url": PRODUCT_URL})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to analyze URL"}

    def test_invalid_url_is_rejected(self, client: TestClient) -> None:
        assert client.post("/api/analyze-url", json={"url": "not a url"}).status_code == 422


# ---------------------------------------------------------------------------
# Selection sessions
# ---------------------------------------------------------------------------


def _selection_payload(*sources: Any) -> dict[str, Any]:
    return {
        "sources": [s.model_dump(mode="json", by_alias=True) for s in sources],
        "niche": "sleep",
        "product": "gummies",
        "strategy": "direct",
    }


def _result_for(source: Any, **kwargs: Any) -> AnalysisResult:
    return AnalysisResult(
        source_id=source.id,
        source_name=source.title,
        source_type=source.type,
        source_url=source.url,
    )


class TestSelection:
    @pytest.fixture(autouse=True)
    def _analyze(self, services: Services) -> None:
        services.pipeline.analyze = AsyncMock(side_effect=_result_for)  # type: ignore[method-assign]

    def _wait_until_ready(self, client: TestClient, session_id: str) -> dict[str, Any]:
        for _ in range(200):
            body = client.get(f"/api/selection/{session_id}").json()
            if body["statuses"] and set(body["statuses"].values()) == {"ready"}:
                return body
            time.sleep(0.01)
        raise AssertionError(f"selection {session_id} never became ready: {body}")

    def test_selected_sources_are_pre_analyzed(
        self, client: TestClient, services: Services
    ) -> None:
        first = make_source("youtube-aaaaaaaaaaa")
        second = make_source("youtube-bbbbbbbbbbb")

        resp = client.put("/api/selection/s-1", json=_selection_payload(first, second))
        assert resp.status_code == 200
        assert resp.json()["selected"] == [first.id, second.id]

        body = self._wait_until_ready(client, "s-1")
        assert [r["sourceId"] for r in body["results"]] == [first.id, second.id]
        call = services.pipeline.analyze.await_args
        assert call.kwargs["niche"] == "sleep"
        assert call.kwargs["session_id"] == "s-1"

    def test_commit_reuses_background_results(
        self, client: TestClient, services: Services
    ) -> None:
        source = make_source()
        client.put("/api/selection/s-1", json=_selection_payload(source))
        self._wait_until_ready(client, "s-1")

        resp = client.post("/api/selection/s-1/commit")

        assert resp.status_code == 200
        assert [r["sourceId"] for r in resp.json()["results"]] == [source.id]
        assert resp.json()["failed"] == []
        assert services.pipeline.analyze.await_count == 1

    def test_discard_reports_cleared_count(self, client: TestClient) -> None:
        client.put("/api/selection/s-1", json=_selection_payload(make_source()))

        assert client.delete("/api/selection/s-1").json() == {"cleared": 1}
        assert client.get("/api/selection/s-1").status_code == 404

    def test_unknown_session(self, client: TestClient) -> None:
        missing = {"error": "Unknown selection session"}
        for resp in (
            client.get("/api/selection/nope"),
            client.post("/api/selection/nope/commit"),
            client.delete("/api/selection/nope"),
        ):
            assert resp.status_code == 404
            assert resp.json() == missing


# ---------------------------------------------------------------------------
# Admin surfaces
# ---------------------------------------------------------------------------


class TestAdmin:
    def test_cache_lifecycle(self, client: TestClient, services: Services) -> None:
        services.store.set_cached_content(
            "https://example.com/a", SourceType.YOUTUBE, "x" * 200, fetch_duration_ms=40
        )

        stats = client.get("/api/cache").json()
        assert stats["totalEntries"] == 1
        assert stats["bySourceType"] == {"youtube": 1}

        assert client.post("/api/cache").json() == {"cleared": 0}
        assert client.delete("/api/cache").json() == {"cleared": 1}
        assert client.get("/api/cache").json()["totalEntries"] == 0

    def test_usage_summary_and_clear(self, client: TestClient, services: Services) -> None:
        services.store.track_usage(
            UsageRecord(
                endpoint="/api/analyze",
                model="claude-sonnet",
                input_tokens=100,
                output_tokens=20,
            )
        )

        summary = client.get("/api/usage", params={"timeframe": "day"}).json()
        assert summary["timeframe"] == "day"
        assert summary["totalRequests"] == 1
        assert summary["byEndpoint"]["/api/analyze"]["inputTokens"] == 100

        assert client.get("/api/usage", params={"timeframe": "year"}).status_code == 422
        assert client.delete("/api/usage").json() == {"cleared": 1}
        assert client.get("/api/usage").json()["totalRequests"] == 0

    def test_error_log_listing(self, client: TestClient, services: Services) -> None:
        for index in range(3):
            services.store.log_error("/api/analyze", ErrorKind.ANALYSIS_ERROR, f"e{index}")

        listed = client.get("/api/errors", params={"limit": 2}).json()["errors"]
        assert [e["message"] for e in listed] == ["e2", "e1"]
        assert listed[0]["kind"] == "analysis_error"

        assert client.get("/api/errors", params={"limit": 0}).status_code == 422
        assert client.delete("/api/errors").json() == {"cleared": 3}
        assert client.get("/api/errors").json() == {"errors": []}

    def test_corrupt_cache_is_reported_then_recovered(
        self, client: TestClient, services: Services, store_dir: Path
    ) -> None:
        corrupt_content_cache(store_dir)

        resp = client.get("/api/cache")
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to read cache stats"}
        (record,) = services.store.list_errors()
        assert record.kind is ErrorKind.ADMIN_ERROR
        assert record.context == {"method": "GET"}

        assert client.post("/api/cache").status_code == 500
        assert client.delete("/api/cache").json() == {"cleared": 0}
        resp = client.get("/api/cache")
        assert resp.status_code == 200
        assert resp.json()["totalEntries"] == 0

    def test_corrupt_error_log_is_reported_then_recovered(
        self, client: TestClient, store_dir: Path
    ) -> None:
        (store_dir / "errors.json").write_text("{not json", encoding="utf-8")

        resp = client.get("/api/errors")
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to read error log"}

        assert client.delete("/api/errors").json() == {"cleared": 0}
        assert client.get("/api/errors").json() == {"errors": []}

    def test_torn_usage_line_is_skipped(
        self, client: TestClient, services: Services, store_dir: Path
    ) -> None:
        services.store.track_usage(UsageRecord(endpoint="/api/analyze", model="claude-sonnet"))
        with (store_dir / "usage.jsonl").open("a", encoding="utf-8") as fh:
            fh.write('{"endpoint": "/api/ana')

        resp = client.get("/api/usage", params={"timeframe": "all"})

        assert resp.status_code == 200
        assert resp.json()["totalRequests"] == 1

    def test_usage_store_failure_is_a_json_error(
        self, client: TestClient, services: Services
    ) -> None:
        services.store.usage_summary = MagicMock(  # type: ignore[method-assign]
            side_effect=StoreError("Unreadable store file usage.jsonl")
        )

        resp = client.get("/api/usage")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to read usage"}
        (record,) = services.store.list_errors()
        assert record.endpoint == "/api/usage"
        assert record.kind is ErrorKind.ADMIN_ERROR
