"""Unit tests for angle_finder.llm."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from angle_finder.credentials import CredentialSelector
from angle_finder.llm import (
    CallContext,
    ResilientLLMClient,
    is_rate_limit_error,
    retry_after_seconds,
)
from angle_finder.records import CredentialSlot, UsageRecord
from angle_finder.store import RecordStore


class RateLimited(Exception):
    """Provider-style 429 error."""

    def __init__(self, retry_after: str | None = None) -> None:
        super().__init__("rate limited")
        self.status_code = 429
        self.headers = {"retry-after": retry_after} if retry_after else {}


def _response(prompt_tokens: int = 10, completion_tokens: int = 5) -> Any:
    return SimpleNamespace(
        model="claude-sonnet-4-20250514",
        usage={"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
        choices=[SimpleNamespace(message=SimpleNamespace(content="hello"))],
    )


class Script:
    """Call factory that replays outcomes and records the credentials used."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.credentials: list[CredentialSlot] = []
        self.keys: list[str | None] = []

    async def __call__(self, context: CallContext) -> Any:
        self.credentials.append(context.credential)
        self.keys.append(context.api_key)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _client(
    selector: CredentialSelector, store: RecordStore | None = None, **kwargs: Any
) -> tuple[ResilientLLMClient, AsyncMock]:
    sleep = AsyncMock()
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("base_delay", 2.0)
    return ResilientLLMClient(selector, store, sleep=sleep, **kwargs), sleep


# ---------------------------------------------------------------------------
# Error inspection
# ---------------------------------------------------------------------------


class TestErrorInspection:
    def test_status_attribute(self) -> None:
        assert is_rate_limit_error(RateLimited())
        assert not is_rate_limit_error(ValueError("x"))

    def test_status_on_response(self) -> None:
        exc = Exception("x")
        exc.response = SimpleNamespace(status_code=429, headers={"Retry-After": "7"})  # type: ignore[attr-defined]
        assert is_rate_limit_error(exc)
        assert retry_after_seconds(exc) == 7.0

    def test_bad_retry_after_ignored(self) -> None:
        assert retry_after_seconds(RateLimited("soon")) is None
        assert retry_after_seconds(RateLimited("-3")) is None
        assert retry_after_seconds(RateLimited()) is None


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        client, sleep = _client(CredentialSelector(primary="pk", secondary="sk"))
        script = Script(_response())
        result = await client.with_retry(script)
        assert result.choices[0].message.content == "hello"
        assert script.credentials == [CredentialSlot.PRIMARY]
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failover_is_immediate_and_free(self) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        client, sleep = _client(selector, max_retries=0)
        script = Script(RateLimited(), _response())
        await client.with_retry(script)
        assert script.credentials == [CredentialSlot.PRIMARY, CredentialSlot.SECONDARY]
        assert script.keys == ["pk", "sk"]
        sleep.assert_not_awaited()
        assert selector.current() is CredentialSlot.SECONDARY

    @pytest.mark.asyncio
    async def test_secondary_stays_active_for_later_calls(self) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        client, _ = _client(selector)
        await client.with_retry(Script(RateLimited(), _response()))
        later = Script(_response())
        await client.with_retry(later)
        assert later.credentials == [CredentialSlot.SECONDARY]

    @pytest.mark.asyncio
    async def test_backoff_doubles_without_secondary(self) -> None:
        client, sleep = _client(CredentialSelector(primary="pk"), max_retries=3, base_delay=2.0)
        script = Script(RateLimited(), RateLimited(), RateLimited(), _response())
        await client.with_retry(script)
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0, 8.0]
        assert len(script.credentials) == 4

    @pytest.mark.asyncio
    async def test_retry_after_header_wins(self) -> None:
        client, sleep = _client(CredentialSelector(primary="pk"))
        await client.with_retry(Script(RateLimited(retry_after="11"), _response()))
        assert [call.args[0] for call in sleep.await_args_list] == [11.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_provider_error(self) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        client, sleep = _client(selector, max_retries=2)
        last = RateLimited()
        script = Script(RateLimited(), RateLimited(), RateLimited(), last)
        with pytest.raises(RateLimited) as exc_info:
            await client.with_retry(script)
        assert exc_info.value is last
        # one free failover plus the initial attempt and two retries on the secondary
        assert script.credentials == [
            CredentialSlot.PRIMARY,
            CredentialSlot.SECONDARY,
            CredentialSlot.SECONDARY,
            CredentialSlot.SECONDARY,
        ]
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self) -> None:
        client, sleep = _client(CredentialSelector(primary="pk", secondary="sk"))
        script = Script(ValueError("bad request"), _response())
        with pytest.raises(ValueError, match="bad request"):
            await client.with_retry(script)
        assert len(script.credentials) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_per_call_overrides(self) -> None:
        client, sleep = _client(CredentialSelector(), max_retries=5, base_delay=2.0)
        with pytest.raises(RateLimited):
            await client.with_retry(
                Script(RateLimited(), RateLimited()), max_retries=1, base_delay=0.5
            )
        assert [call.args[0] for call in sleep.await_args_list] == [0.5]


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class TestTelemetry:
    @pytest.mark.asyncio
    async def test_usage_recorded_on_success(self, store: RecordStore) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        client, _ = _client(selector, store)
        await client.with_retry(
            Script(RateLimited(), _response(100, 20)),
            endpoint="/api/analyze",
            session_id="session-1",
        )
        summary = store.usage_summary()
        assert summary.total_requests == 1
        assert summary.total_input_tokens == 100
        assert summary.total_output_tokens == 20
        assert summary.rate_limited_requests == 1
        assert summary.by_credential == {"secondary": 1}
        assert "/api/analyze" in summary.by_endpoint

    @pytest.mark.asyncio
    async def test_nothing_recorded_on_failure(self, store: RecordStore) -> None:
        client, _ = _client(CredentialSelector(), store)
        with pytest.raises(ValueError):
            await client.with_retry(Script(ValueError("x")))
        assert store.usage_summary().total_requests == 0

    @pytest.mark.asyncio
    async def test_telemetry_failure_never_fails_the_call(self) -> None:
        broken = MagicMock(spec=RecordStore)
        broken.track_usage.side_effect = RuntimeError("disk full")
        client, _ = _client(CredentialSelector(), broken)
        result = await client.with_retry(Script(_response()))
        assert result.choices[0].message.content == "hello"
        broken.track_usage.assert_called_once()
        assert isinstance(broken.track_usage.call_args.args[0], UsageRecord)


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_sends_cacheable_system_prompt_and_key(self) -> None:
        selector = CredentialSelector(primary="pk")
        client, _ = _client(selector, model="anthropic/test-model", max_tokens=99)
        acompletion = AsyncMock(return_value=_response())
        with patch("litellm.acompletion", acompletion):
            text = await client.complete("prompt", system="be terse")
        assert text == "hello"
        kwargs = acompletion.await_args.kwargs
        assert kwargs["model"] == "anthropic/test-model"
        assert kwargs["max_tokens"] == 99
        assert kwargs["api_key"] == "pk"
        system, user = kwargs["messages"]
        assert system["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert user == {"role": "user", "content": "prompt"}

    @pytest.mark.asyncio
    async def test_default_credential_omits_key(self) -> None:
        client, _ = _client(CredentialSelector())
        acompletion = AsyncMock(return_value=_response())
        with patch("litellm.acompletion", acompletion):
            await client.complete("prompt", max_tokens=7)
        kwargs = acompletion.await_args.kwargs
        assert "api_key" not in kwargs
        assert kwargs["max_tokens"] == 7
        assert len(kwargs["messages"]) == 1
