"""
tests/unit/test_brain.py — Completion clients, retry and failover

Tests the completion clients with mocked API calls.
No real API keys or network calls required.

Covers:
  - Message exchange, LLMConfig defaults, error handling flags
  - create_llm_client(): provider dispatch, missing key, unknown provider
  - OpenAIClient: response translation and error normalisation
  - OpenRouterClient: base URL and attribution headers
  - _call_with_retry(): transient errors retried, permanent errors raised
  - ResilientLLMClient: failover order, permanent errors skip failover
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from forgepilot.brain import (
    LLMConfig,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMResponse,
    Message,
    ResilientLLMClient,
    Role,
    create_llm_client,
)
from forgepilot.brain.llm_client import _call_with_retry
from forgepilot.brain.types import FinishReason, Provider, Purpose


# ─────────────────────────────────────────────────────────────────────────────
# Shared fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def basic_messages() -> list[Message]:
    return [
        Message.system("You plan code changes."),
        Message.user("Add a footer."),
    ]


@pytest.fixture
def basic_config() -> LLMConfig:
    return LLMConfig(model="gpt-4o", temperature=0.2, max_tokens=100)


def _fake_client(*outcomes) -> MagicMock:
    """A client whose generate() yields each outcome in turn (exceptions are raised)."""
    client = MagicMock()
    client.generate = AsyncMock(side_effect=list(outcomes))
    client.health_check = AsyncMock(return_value=True)
    return client


def _ok(content: str = "ok") -> LLMResponse:
    return LLMResponse(content=content, model="m")


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────


class TestTypes:
    def test_exchange_is_system_then_user(self):
        messages = Message.exchange("plan in JSON", "Add a footer")
        assert [m.role for m in messages] == [Role.SYSTEM, Role.USER]
        assert messages[1].content == "Add a footer"

    def test_config_defaults(self):
        config = LLMConfig(model="x")
        assert config.temperature == 0.3
        assert config.max_tokens == 2000
        assert config.timeout_seconds == 60.0
        assert config.purpose == Purpose.PLAN

    @pytest.mark.parametrize("error,retryable,fails_over", [
        (LLMConnectionError("x"), True, True),
        (LLMRateLimitError("x"), True, True),
        (LLMError("x"), False, True),
        (LLMContextError("x"), False, False),
        (LLMInvalidRequestError("x"), False, False),
    ])
    def test_error_handling_flags(self, error, retryable, fails_over):
        assert (error.retryable, error.fails_over) == (retryable, fails_over)

    def test_response_helpers(self):
        response = LLMResponse(content=None, finish_reason=FinishReason.LENGTH)
        assert response.text == ""
        assert response.is_truncated


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────


class TestCreateLLMClient:
    def test_create_openai(self):
        from forgepilot.brain.openai_client import OpenAIClient
        client = create_llm_client("openai", api_key="sk-test", base_url="http://localhost:8000/v1")
        assert isinstance(client, OpenAIClient)
        assert client.base_url == "http://localhost:8000/v1"

    def test_create_openrouter(self):
        from forgepilot.brain.openrouter_client import OpenRouterClient
        client = create_llm_client(Provider.OPENROUTER, api_key="sk-or-test")
        assert isinstance(client, OpenRouterClient)
        assert client.provider == Provider.OPENROUTER
        assert client.base_url == "https://openrouter.ai/api/v1"

    def test_missing_key_raises(self):
        with pytest.raises(LLMConnectionError, match="API key"):
            create_llm_client("openai", api_key=None)

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError):
            create_llm_client("grok", api_key="test")


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI client
# ─────────────────────────────────────────────────────────────────────────────


class TestOpenAIClient:
    @pytest.fixture
    def client(self):
        from forgepilot.brain.openai_client import OpenAIClient
        return OpenAIClient(api_key="sk-test-fake")

    def _make_mock_response(self, content="Hello!", finish_reason="stop", model="gpt-4o"):
        mock = MagicMock()
        mock.model = model
        mock.choices = [MagicMock()]
        mock.choices[0].finish_reason = finish_reason
        mock.choices[0].message.content = content
        mock.usage.prompt_tokens = 10
        mock.usage.completion_tokens = 5
        return mock

    @pytest.mark.asyncio
    async def test_basic_generate(self, client, basic_messages, basic_config):
        create = AsyncMock(return_value=self._make_mock_response(content='{"summary": "x"}'))
        client._client.chat.completions.create = create

        result = await client.generate(basic_messages, basic_config)

        assert result.content == '{"summary": "x"}'
        assert result.finish_reason == FinishReason.STOP
        assert result.provider == Provider.OPENAI
        assert result.usage.total_tokens == 15
        sent = create.await_args.kwargs
        assert sent["model"] == "gpt-4o"
        assert sent["messages"][0] == {"role": "system", "content": "You plan code changes."}

    @pytest.mark.asyncio
    async def test_length_finish_reason(self, client, basic_messages, basic_config):
        client._client.chat.completions.create = AsyncMock(
            return_value=self._make_mock_response(finish_reason="length")
        )
        result = await client.generate(basic_messages, basic_config)
        assert result.is_truncated

    @pytest.mark.asyncio
    async def test_no_choices(self, client, basic_messages, basic_config):
        response = self._make_mock_response()
        response.choices = []
        client._client.chat.completions.create = AsyncMock(return_value=response)
        result = await client.generate(basic_messages, basic_config)
        assert result.finish_reason == FinishReason.ERROR
        assert result.text == ""

    @pytest.mark.asyncio
    async def test_auth_error_raises_connection_error(self, client, basic_messages, basic_config):
        import openai as oai
        client._client.chat.completions.create = AsyncMock(
            side_effect=oai.AuthenticationError("Invalid key", response=MagicMock(), body={})
        )
        with pytest.raises(LLMConnectionError) as exc_info:
            await client.generate(basic_messages, basic_config)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_rate_limit_raises(self, client, basic_messages, basic_config):
        import openai as oai
        client._client.chat.completions.create = AsyncMock(
            side_effect=oai.RateLimitError("Rate limit", response=MagicMock(), body={})
        )
        with pytest.raises(LLMRateLimitError):
            await client.generate(basic_messages, basic_config)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message,expected", [
        ("This model's maximum context length is 8192 tokens", LLMContextError),
        ("Unsupported parameter: top_p", LLMInvalidRequestError),
    ])
    async def test_bad_request_classified(self, client, basic_messages, basic_config, message, expected):
        import openai as oai
        client._client.chat.completions.create = AsyncMock(
            side_effect=oai.BadRequestError(message, response=MagicMock(), body={})
        )
        with pytest.raises(expected):
            await client.generate(basic_messages, basic_config)

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        client._client.models.list = AsyncMock(return_value=MagicMock(data=[]))
        assert await client.health_check() is True
        client._client.models.list = AsyncMock(side_effect=OSError("network error"))
        assert await client.health_check() is False


# ─────────────────────────────────────────────────────────────────────────────
# Retry + failover
# ─────────────────────────────────────────────────────────────────────────────


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_transient_error_retried(self, basic_messages, basic_config):
        client = _fake_client(LLMConnectionError("blip"), LLMRateLimitError("slow down", retry_after=5), _ok())
        result = await _call_with_retry(client, basic_messages, basic_config, max_attempts=3, max_delay=0)
        assert result.content == "ok"
        assert client.generate.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self, basic_messages, basic_config):
        client = _fake_client(LLMConnectionError("one"), LLMConnectionError("two"))
        with pytest.raises(LLMConnectionError, match="two"):
            await _call_with_retry(client, basic_messages, basic_config, max_attempts=2, max_delay=0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        LLMContextError("too long"),
        LLMInvalidRequestError("bad"),
        LLMError("server said no"),
    ])
    async def test_permanent_error_not_retried(self, basic_messages, basic_config, error):
        client = _fake_client(error, _ok())
        with pytest.raises(type(error)):
            await _call_with_retry(client, basic_messages, basic_config, max_attempts=3, max_delay=0)
        assert client.generate.await_count == 1


class TestResilientLLMClient:
    @pytest.mark.asyncio
    async def test_primary_success(self, basic_messages, basic_config):
        primary = _fake_client(_ok("primary"))
        fallback = _fake_client(_ok("fallback"))
        client = ResilientLLMClient(primary, fallbacks=[fallback], max_delay=0)
        assert (await client.generate(basic_messages, basic_config)).content == "primary"
        fallback.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fails_over_after_retries(self, basic_messages, basic_config):
        primary = _fake_client(LLMConnectionError("down"), LLMConnectionError("down"))
        fallback = _fake_client(_ok("fallback"))
        client = ResilientLLMClient(primary, fallbacks=[fallback], max_attempts=2, max_delay=0)

        result = await client.generate(basic_messages, basic_config)

        assert result.content == "fallback"
        assert primary.generate.await_count == 2
        assert await client.health_check() is True
        fallback.health_check.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_permanent_error_skips_failover(self, basic_messages, basic_config):
        primary = _fake_client(LLMContextError("too long"))
        fallback = _fake_client(_ok())
        client = ResilientLLMClient(primary, fallbacks=[fallback], max_delay=0)
        with pytest.raises(LLMContextError):
            await client.generate(basic_messages, basic_config)
        fallback.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_clients_failing(self, basic_messages, basic_config):
        primary = _fake_client(LLMError("a"))
        fallback = _fake_client(LLMError("b"))
        client = ResilientLLMClient(primary, fallbacks=[fallback], max_delay=0)
        with pytest.raises(LLMError, match="All LLM clients failed") as exc_info:
            await client.generate(basic_messages, basic_config)
        assert exc_info.value.provider == "all"

    def test_repr(self):
        client = ResilientLLMClient(_fake_client(), fallbacks=[_fake_client()])
        assert "1 fallback(s)" in repr(client)
