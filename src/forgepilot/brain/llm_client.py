"""
brain/llm_client.py — Completion client contract, retry and provider failover

The planner talks to one BaseLLMClient. In production that is a
ResilientLLMClient over the configured provider chain (`llm.provider`
first, then `llm.fallback_providers`):

    plan / fix request
        → _call_with_retry(primary)       backoff on transient errors
        → _call_with_retry(fallback 1)    only if the error may fail over
        → ...
        → LLMError(provider="all")        PlanGenerator turns this into ERROR

Each error class declares how it is handled: `retryable` errors are
retried against the same provider, and errors with `fails_over` move on
to the next provider once retries are spent. An over-long prompt or a
rejected parameter fails the same way everywhere, so it is raised
straight to the planner.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Optional

from forgepilot.brain.types import LLMConfig, LLMResponse, Message, Provider
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """A plan or fix completion could not be obtained."""

    retryable = False
    fails_over = True

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable, timed out, or rejected the API key."""

    retryable = True


class LLMRateLimitError(LLMError):
    """429 from the provider. `retry_after` (seconds) overrides the backoff."""

    retryable = True

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Prompt (task + catalog + file list + snippets) exceeds the model's window."""

    fails_over = False


class LLMInvalidRequestError(LLMError):
    """Provider rejected the request parameters."""

    fails_over = False


# ─────────────────────────────────────────────────────────────────────────────
# Client contract
# ─────────────────────────────────────────────────────────────────────────────


class BaseLLMClient(ABC):
    """Implemented by OpenAIClient (and OpenRouterClient through it)."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        """Return the completion text for one plan/fix exchange, or raise LLMError."""

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Retry
# ─────────────────────────────────────────────────────────────────────────────


def _backoff(attempt: int, error: LLMError, base_delay: float, max_delay: float) -> float:
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        return min(retry_after, max_delay)
    return min(base_delay * (2 ** attempt) + random.uniform(0, 0.5), max_delay)


async def _call_with_retry(
    client: BaseLLMClient,
    messages: list[Message],
    config: LLMConfig,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> LLMResponse:
    """
    Send one request to `client`, retrying retryable errors with
    exponential backoff plus jitter. The last error is raised once
    `max_attempts` is spent; non-retryable errors are raised at once.
    """
    for attempt in range(max_attempts):
        try:
            return await client.generate(messages=messages, config=config)
        except LLMError as e:
            if not e.retryable or attempt == max_attempts - 1:
                raise
            delay = _backoff(attempt, e, base_delay, max_delay)
            log.warning(
                "llm.retrying",
                purpose=config.purpose.value,
                model=config.model,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
    raise LLMError("max_attempts must be at least 1")


# ─────────────────────────────────────────────────────────────────────────────
# Provider chain
# ─────────────────────────────────────────────────────────────────────────────


class ResilientLLMClient(BaseLLMClient):
    """
    The provider chain the planner actually calls.

    Every client gets its own retry budget. An error whose class does
    not fail over is raised immediately; otherwise the next client is
    tried, and when the chain is exhausted a single LLMError with
    provider="all" is raised.

    health_check() pings whichever client answered last, so after a
    failover the CLI reports on the provider that is actually serving.
    """

    def __init__(
        self,
        primary: BaseLLMClient,
        fallbacks: Optional[list[BaseLLMClient]] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        super().__init__()
        self._primary = primary
        self._fallbacks = fallbacks or []
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._active_client: BaseLLMClient = primary

    @property
    def primary(self) -> BaseLLMClient:
        return self._primary

    @property
    def chain(self) -> list[BaseLLMClient]:
        return [self._primary, *self._fallbacks]

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        chain = self.chain
        last_error: Optional[LLMError] = None

        for position, client in enumerate(chain):
            if last_error is not None:
                log.warning(
                    "llm.failing_over",
                    purpose=config.purpose.value,
                    to_client=repr(client),
                    reason=str(last_error),
                )
            try:
                response = await _call_with_retry(
                    client,
                    messages,
                    config,
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                )
            except LLMError as e:
                if not e.fails_over:
                    raise
                last_error = e
                log.error(
                    "llm.client_exhausted",
                    purpose=config.purpose.value,
                    client=repr(client),
                    error=str(e),
                    remaining=len(chain) - position - 1,
                )
                continue

            self._active_client = client
            return response

        raise LLMError(f"All LLM clients failed. Last error: {last_error}", provider="all")

    async def health_check(self) -> bool:
        return await self._active_client.health_check()

    def __repr__(self) -> str:
        n = len(self._fallbacks)
        suffix = f" + {n} fallback(s)" if n else ""
        return f"<ResilientLLMClient primary={self._primary!r}{suffix}>"


def create_llm_client(
    provider: Provider | str,
    api_key: Optional[str],
    base_url: Optional[str] = None,
) -> BaseLLMClient:
    """Build the client for one entry of the provider chain."""
    provider = Provider(provider)
    if not api_key:
        raise LLMConnectionError(
            f"An API key is required for provider '{provider.value}'",
            provider=provider.value,
        )
    if provider == Provider.OPENROUTER:
        from forgepilot.brain.openrouter_client import OpenRouterClient
        return OpenRouterClient(api_key=api_key)
    from forgepilot.brain.openai_client import OpenAIClient
    return OpenAIClient(api_key=api_key, base_url=base_url)
