"""
brain/openai_client.py — OpenAI Completion Client

Works with the official OpenAI endpoint and any OpenAI-compatible gateway
(OpenRouter, LiteLLM proxy, local vLLM). Handles token counting and error
normalisation.
"""

from __future__ import annotations

from typing import Optional

import openai
from openai import AsyncOpenAI

from forgepilot.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from forgepilot.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Provider,
    TokenUsage,
)
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)


class OpenAIClient(BaseLLMClient):
    """OpenAI chat-completions client."""

    provider: Provider = Provider.OPENAI

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        default_headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers=default_headers,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        log.debug(
            "openai.generate.start",
            purpose=config.purpose.value,
            model=config.model,
            message_count=len(messages),
        )

        try:
            response = await self._client.chat.completions.create(
                model=config.model,
                messages=[{"role": m.role.value, "content": m.content} for m in messages],
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=config.timeout_seconds,
            )
        except openai.AuthenticationError as e:
            raise LLMConnectionError(str(e), provider=self.provider.value, status_code=401) from e
        except openai.RateLimitError as e:
            raise LLMRateLimitError(str(e), provider=self.provider.value) from e
        except openai.BadRequestError as e:
            if "context" in str(e).lower() or "too long" in str(e).lower():
                raise LLMContextError(str(e), provider=self.provider.value) from e
            raise LLMInvalidRequestError(str(e), provider=self.provider.value) from e
        except openai.APIConnectionError as e:
            raise LLMConnectionError(str(e), provider=self.provider.value) from e
        except openai.APIError as e:
            raise LLMError(
                str(e),
                provider=self.provider.value,
                status_code=getattr(e, "status_code", None),
            ) from e

        result = self._from_provider_response(response)
        log.debug(
            "openai.generate.complete",
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            finish_reason=result.finish_reason.value,
        )
        return result

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except (openai.APIError, OSError) as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _from_provider_response(self, response) -> LLMResponse:
        """Translate OpenAI ChatCompletion → internal LLMResponse."""
        if not response.choices:
            return LLMResponse(
                content="",
                finish_reason=FinishReason.ERROR,
                model=getattr(response, "model", "") or "",
                provider=self.provider,
            )
        choice = response.choices[0]

        finish_map = {
            "stop": FinishReason.STOP,
            "length": FinishReason.LENGTH,
        }
        finish_reason = finish_map.get(choice.finish_reason or "stop", FinishReason.STOP)

        usage = TokenUsage(
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
        )

        return LLMResponse(
            content=choice.message.content,
            finish_reason=finish_reason,
            usage=usage,
            model=response.model,
            provider=self.provider,
        )
