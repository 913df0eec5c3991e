"""Rate-limit resilient LLM access with dual-key failover and telemetry.

Every LLM call in the application goes through
:meth:`ResilientLLMClient.with_retry`, which layers three behaviours on a
single call:

1. On a rate limit (HTTP 429) while the primary credential is active, switch
   to the secondary credential and retry immediately. This happens at most
   once per call, costs no retry slot and never sleeps.
2. On further rate limits, back off and retry on whichever credential is
   active, honouring ``Retry-After`` when the provider sends one and
   doubling ``base_delay`` otherwise. Retries are driven by tenacity.
3. On success, append token usage to the record store from a worker
   thread. Telemetry failures are logged and never reach the caller.

Any other error propagates immediately. Once the retry budget is spent,
the provider's own rate-limit exception is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from angle_finder.credentials import get_credential_selector
from angle_finder.records import CredentialSlot, UsageRecord

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

    from angle_finder.config import Settings
    from angle_finder.credentials import CredentialSelector
    from angle_finder.store import RecordStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

_RATE_LIMIT_STATUS = 429


# ---------------------------------------------------------------------------
# Error inspection
# ---------------------------------------------------------------------------


def error_status(exc: BaseException) -> int | None:
    """Return the HTTP status carried by a provider exception, if any."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Whether ``exc`` is an HTTP 429 from the LLM provider."""
    return error_status(exc) == _RATE_LIMIT_STATUS


def retry_after_seconds(exc: BaseException) -> float | None:
    """Parse the ``Retry-After`` header (in seconds) from a provider error."""
    headers = getattr(exc, "headers", None)
    if headers is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class RateLimitWait(wait_base):
    """Wait ``Retry-After`` seconds if supplied, else ``base * 2**(n-1)``."""

    def __init__(self, base_delay: float) -> None:
        self.base_delay = base_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if exc is not None:
            retry_after = retry_after_seconds(exc)
            if retry_after is not None:
                return retry_after
        return float(self.base_delay * 2 ** (retry_state.attempt_number - 1))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CallContext:
    """Credential handed to one attempt of a wrapped call."""

    credential: CredentialSlot
    api_key: str | None


def _usage_value(usage: Any, name: str) -> int:
    value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
    return value if isinstance(value, int) else 0


class ResilientLLMClient:
    """LLM call wrapper with credential failover, backoff and usage capture.

    Attributes:
        model: litellm model identifier used by :meth:`complete`.
        max_retries: Default number of sleep-based retries per call.
        base_delay: Default backoff base, in seconds.
    """

    def __init__(
        self,
        selector: CredentialSelector | None = None,
        store: RecordStore | None = None,
        *,
        model: str = "anthropic/claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        max_retries: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            selector: Credential selector; defaults to the process-wide one.
            store: Record store receiving usage telemetry, or ``None``.
            model: litellm model identifier.
            max_tokens: Default completion token limit.
            timeout: Per-request timeout in seconds.
            max_retries: Sleep-based retries after the free credential switch.
            base_delay: Backoff base in seconds.
            sleep: Awaitable sleep, injectable for tests.
        """
        self._selector = selector or get_credential_selector()
        self._store = store
        self._sleep = sleep
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: RecordStore | None = None,
        selector: CredentialSelector | None = None,
    ) -> ResilientLLMClient:
        return cls(
            selector=selector,
            store=store,
            model=settings.llm.model,
            max_tokens=settings.llm.max_tokens,
            timeout=float(settings.llm.timeout),
            max_retries=settings.llm.max_retries,
            base_delay=settings.llm.base_delay,
        )

    @property
    def selector(self) -> CredentialSelector:
        return self._selector

    async def with_retry(
        self,
        call: Callable[[CallContext], Awaitable[T]],
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        endpoint: str = "unknown",
        session_id: str | None = None,
    ) -> T:
        """Run ``call`` with credential failover and rate-limit backoff.

        Args:
            call: Coroutine factory receiving the credential to use.
            max_retries: Override for the number of sleep-based retries.
            base_delay: Override for the backoff base, in seconds.
            endpoint: Endpoint name recorded with usage telemetry.
            session_id: Optional correlation id recorded with telemetry.

        Returns:
            Whatever ``call`` returns.

        Raises:
            Exception: Non-rate-limit errors immediately, or the last
                rate-limit error once retries are exhausted.
        """
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.base_delay if base_delay is None else base_delay
        tried_secondary = False
        was_rate_limited = False
        used = CallContext(self._selector.current(), None)
        started = time.perf_counter()

        async def attempt() -> T:
            nonlocal tried_secondary, was_rate_limited, used
            while True:
                slot = self._selector.current()
                used = CallContext(slot, self._selector.api_key(slot))
                try:
                    return await call(used)
                except Exception as exc:
                    if not is_rate_limit_error(exc):
                        raise
                    was_rate_limited = True
                    if (
                        not tried_secondary
                        and slot is not CredentialSlot.SECONDARY
                        and self._selector.switch_to_secondary()
                    ):
                        tried_secondary = True
                        logger.warning(
                            "llm_rate_limited_failover",
                            endpoint=endpoint,
                            from_credential=slot,
                        )
                        continue
                    raise

        def log_backoff(retry_state: RetryCallState) -> None:
            action = retry_state.next_action
            logger.warning(
                "llm_rate_limited_backoff",
                endpoint=endpoint,
                attempt=retry_state.attempt_number,
                max_retries=retries,
                sleep_seconds=round(action.sleep, 2) if action else 0.0,
                credential=used.credential,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=RateLimitWait(delay),
            retry=retry_if_exception(is_rate_limit_error),
            sleep=self._sleep,
            before_sleep=log_backoff,
            reraise=True,
        )
        result = await retrying(attempt)

        await asyncio.to_thread(
            self._record_usage,
            result,
            endpoint=endpoint,
            credential=used.credential,
            was_rate_limited=was_rate_limited,
            duration_ms=int((time.perf_counter() - started) * 1000),
            session_id=session_id,
        )
        return result

    def _record_usage(
        self,
        response: Any,
        *,
        endpoint: str,
        credential: CredentialSlot,
        was_rate_limited: bool,
        duration_ms: int,
        session_id: str | None,
    ) -> None:
        if self._store is None:
            return
        usage = getattr(response, "usage", None)
        if usage is None:
            return
        try:
            record = UsageRecord(
                endpoint=endpoint,
                model=str(getattr(response, "model", None) or self.model),
                input_tokens=_usage_value(usage, "prompt_tokens"),
                output_tokens=_usage_value(usage, "completion_tokens"),
                cache_read_tokens=_usage_value(usage, "cache_read_input_tokens"),
                cache_creation_tokens=_usage_value(
                    usage, "cache_creation_input_tokens"
                ),
                duration_ms=duration_ms,
                credential=credential,
                was_rate_limited=was_rate_limited,
                session_id=session_id,
            )
            self._store.track_usage(record)
        except Exception as exc:
            logger.warning("usage_tracking_failed", endpoint=endpoint, error=str(exc))

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int | None = None,
        endpoint: str = "unknown",
        session_id: str | None = None,
    ) -> str:
        """Send one user prompt and return the completion text.

        A ``system`` prompt is sent as a cacheable block so repeated calls
        with the same instructions reuse the provider's prompt cache.
        """
        import litellm

        messages: list[dict[str, Any]] = []
        if system:
            messages.append(
                {
                    "role": "system",
                    "content": [
                        {
                            "type": "text",
                            "text": system,
                            "cache_control": {"type": "ephemeral"},
                        }
                    ],
                }
            )
        messages.append({"role": "user", "content": prompt})

        async def call(context: CallContext) -> Any:
            extra: dict[str, Any] = {}
            if context.api_key:
                extra["api_key"] = context.api_key
            return await litellm.acompletion(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens or self.max_tokens,
                timeout=self.timeout,
                **extra,
            )

        response = await self.with_retry(call, endpoint=endpoint, session_id=session_id)
        content = response.choices[0].message.content
        return content or ""
