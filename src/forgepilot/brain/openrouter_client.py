"""
brain/openrouter_client.py — OpenRouter Completion Client

OpenRouter is a unified API gateway for many models (DeepSeek, Claude,
GPT-4o, Mistral, ...). It speaks the OpenAI API, so we reuse OpenAIClient
pointed at openrouter.ai with the attribution headers it expects.

Models the editor routes to by default:
  - deepseek/deepseek-chat-v3-0324:free   (planning)
  - mistralai/devstral-2512:free          (multi-file work)
  - anthropic/claude-3.5-sonnet
"""

from __future__ import annotations

from forgepilot.brain.openai_client import OpenAIClient
from forgepilot.brain.types import Provider

_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterClient(OpenAIClient):
    """
    OpenRouter client — routes requests to any OpenRouter model via one API.

    Requires an OpenRouter API key (https://openrouter.ai/keys).
    app_name/site_url feed OpenRouter's usage analytics dashboard.
    """

    provider: Provider = Provider.OPENROUTER

    def __init__(
        self,
        api_key: str,
        app_name: str = "ForgePilot",
        site_url: str = "https://github.com/forgepilot",
    ):
        super().__init__(
            api_key=api_key,
            base_url=_OPENROUTER_BASE_URL,
            default_headers={
                "HTTP-Referer": site_url,
                "X-Title": app_name,
            },
        )
        self._app_name = app_name
        self._site_url = site_url
