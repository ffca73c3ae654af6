"""
brain/types.py — Completion request / response models

ForgePilot sends the completion service exactly two kinds of request:

  - PLAN   task + tool catalog + project files → JSON plan
  - FIX    failed action + error → JSON retry decision

Both are a single system + user exchange that expects a JSON object
back. The types below carry only what those two exchanges need; the
provider clients translate to and from the OpenAI wire shape.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"


class Provider(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"


class Purpose(str, Enum):
    """Which exchange a request belongs to. Carried into retry/failover logs."""
    PLAN = "plan"
    FIX = "fix"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"       # the JSON body was cut off by max_tokens
    ERROR = "error"         # provider returned no choices


class Message(BaseModel):
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def exchange(cls, instructions: str, prompt: str) -> list["Message"]:
        """The system + user pair every plan and fix request is built from."""
        return [cls.system(instructions), cls.user(prompt)]


class LLMConfig(BaseModel):
    """
    Per-request settings for one plan or fix completion.

    `model` is whatever the ModelSelector (or the configured default)
    picked for this request; the rest comes from the `llm` config section.
    """
    model: str
    purpose: Purpose = Purpose.PLAN
    temperature: float = 0.3
    max_tokens: int = 2000
    timeout_seconds: float = 60.0


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    """Raw completion text plus the bookkeeping the planner logs."""
    content: Optional[str] = None
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    provider: Provider = Provider.OPENAI

    @property
    def text(self) -> str:
        return self.content or ""

    @property
    def is_truncated(self) -> bool:
        """A truncated plan cannot parse; the planner logs this before failing."""
        return self.finish_reason == FinishReason.LENGTH
