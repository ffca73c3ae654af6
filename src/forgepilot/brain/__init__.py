"""
brain/__init__.py — ForgePilot AI Completion Service
"""

from __future__ import annotations

from forgepilot.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    ResilientLLMClient,
    create_llm_client,
)
from forgepilot.brain.model_selector import Intent, ModelChoice, ModelSelector, Tier
from forgepilot.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Provider,
    Purpose,
    Role,
    TokenUsage,
)

__all__ = [
    "BaseLLMClient",
    "ResilientLLMClient",
    "create_llm_client",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
    "ModelSelector",
    "ModelChoice",
    "Intent",
    "Tier",
    "Message",
    "LLMConfig",
    "LLMResponse",
    "TokenUsage",
    "Role",
    "Provider",
    "Purpose",
    "FinishReason",
]
