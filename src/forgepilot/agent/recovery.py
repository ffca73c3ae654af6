"""
agent/recovery.py — Bounded retry policy

Failure recovery is an explicit decision, not control flow hidden in
AI calls:

    decision = await planner.suggest_fix(action, error)   # Retry | GiveUp
    if policy.allows(decision):
        policy.consume()
        ...re-run the action with decision.new_params merged in

The attempt counter is shared by every action of one task.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

RECOVERABLE_MARKERS = (
    "ENOENT",
    "timeout",
    "ECONNREFUSED",
    "EADDRINUSE",
    "ETIMEDOUT",
    "EAI_AGAIN",
)


@dataclass(frozen=True)
class Retry:
    new_params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass(frozen=True)
class GiveUp:
    reason: str = ""


RetryDecision = Union[Retry, GiveUp]


class RetryPolicy:
    """Retry budget shared across all actions of a task."""

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_retries

    @property
    def remaining(self) -> int:
        return max(self.max_retries - self.attempts, 0)

    def allows(self, decision: RetryDecision) -> bool:
        return isinstance(decision, Retry) and not self.exhausted

    def consume(self) -> int:
        self.attempts += 1
        return self.attempts

    def reset(self) -> None:
        self.attempts = 0

    def __repr__(self) -> str:
        return f"<RetryPolicy {self.attempts}/{self.max_retries}>"


def is_recoverable_output(text: str) -> bool:
    """True when command output mentions a transient, retry-worthy failure."""
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in RECOVERABLE_MARKERS)


def failure_indicator(result: Any) -> str | None:
    """
    Error text for a tool result that reports failure, else None.

    A result fails when it carries a non-zero exit_code/exitCode or a
    truthy `error` field.
    """
    if not isinstance(result, dict):
        return None
    exit_code = result.get("exit_code", result.get("exitCode"))
    failed_exit = isinstance(exit_code, int) and not isinstance(exit_code, bool) and exit_code != 0
    error = result.get("error")
    if not failed_exit and not error:
        return None
    parts = [str(error)] if error else []
    for key in ("output", "stderr", "stdout"):
        if result.get(key):
            parts.append(str(result[key]))
    return "\n".join(parts) or f"exit code {exit_code}"
