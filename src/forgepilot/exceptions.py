"""
exceptions.py — ForgePilot Unified Error Hierarchy

All ForgePilot-specific exceptions live here. Every layer of the stack
raises typed subclasses of ForgePilotError, never bare Exception.

Import from here, not from individual modules:
    from forgepilot.exceptions import PlanParseError, AtomicApplyFailure

Hierarchy:
    ForgePilotError
    ├── AgentError
    │   ├── PlanParseError
    │   ├── InvalidStateError
    │   └── ApprovalError
    ├── ToolError
    │   ├── UnknownToolError
    │   ├── ToolExecutionError
    │   └── ToolValidationError
    ├── ComposerError
    │   ├── ValidationError
    │   ├── DependencyUnmetError
    │   ├── AtomicApplyFailure
    │   └── UnknownChangeError
    ├── FileStoreError
    │   ├── FileNotFoundError
    │   └── FileExistsError
    └── LLMError  (re-exported from brain for convenience)
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError
"""

from __future__ import annotations

import builtins
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ForgePilotError(Exception):
    """Base class for all ForgePilot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(ForgePilotError):
    """Base for agent orchestration errors."""


class PlanParseError(AgentError):
    """The AI response could not be turned into a valid Plan."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class InvalidStateError(AgentError):
    """Operation is not allowed in the state machine's current state."""

    def __init__(self, operation: str, state: str, message: str = "") -> None:
        self.operation = operation
        self.state = state
        super().__init__(message or f"Cannot {operation}: agent is {state}")


class ApprovalError(AgentError):
    """approve/reject was called while nothing is awaiting approval."""


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(ForgePilotError):
    """Base for all tool-related errors."""


class UnknownToolError(ToolError):
    """Requested tool id is not registered in the ToolRegistry."""

    def __init__(self, tool_id: str, message: str = "") -> None:
        self.tool_id = tool_id
        super().__init__(message or f"Unknown tool: {tool_id}")


class ToolExecutionError(ToolError):
    """A tool's execute contract raised."""

    def __init__(self, tool_id: str, cause: BaseException, message: str = "") -> None:
        self.tool_id = tool_id
        self.cause = cause
        super().__init__(message or f"Tool '{tool_id}' failed: {type(cause).__name__}: {cause}")


class ToolValidationError(ToolError):
    """Tool parameters failed validation against the tool's JSON schema."""


# ─────────────────────────────────────────────────────────────────────────────
# Composer layer
# ─────────────────────────────────────────────────────────────────────────────

class ComposerError(ForgePilotError):
    """Base for change composer errors."""


class ValidationError(ComposerError):
    """A proposed change was rejected before entering the pending set."""

    def __init__(self, message: str, change: Optional[dict[str, Any]] = None) -> None:
        self.change = change
        super().__init__(message)


class DependencyUnmetError(ComposerError):
    """Atomic-mode apply refused: dependencies of the change are still pending."""

    def __init__(self, filename: str, unmet: list[str], message: str = "") -> None:
        self.filename = filename
        self.unmet = list(unmet)
        super().__init__(
            message
            or f"Cannot apply {filename}: depends on {', '.join(unmet)} which must be applied first"
        )


class AtomicApplyFailure(ComposerError):
    """An atomic batch failed part-way and was rolled back."""

    def __init__(
        self,
        filename: str,
        cause: BaseException,
        rolled_back: Optional[list[str]] = None,
        rollback_errors: Optional[list[str]] = None,
    ) -> None:
        self.filename = filename
        self.cause = cause
        self.rolled_back = list(rolled_back or [])
        self.rollback_errors = list(rollback_errors or [])
        super().__init__(
            f"Atomic apply failed at {filename}: {cause}. "
            f"Rolled back {len(self.rolled_back)} change(s)."
        )


class UnknownChangeError(ComposerError):
    """No pending change has the requested id."""

    def __init__(self, change_id: str) -> None:
        self.change_id = change_id
        super().__init__(f"No pending change with id '{change_id}'")


# ─────────────────────────────────────────────────────────────────────────────
# FileStore layer
# ─────────────────────────────────────────────────────────────────────────────

class FileStoreError(ForgePilotError):
    """Base for file store errors."""


class FileNotFoundError(FileStoreError, builtins.FileNotFoundError):  # noqa: A001
    """Target file does not exist in the store."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"File not found: {name}")


class FileExistsError(FileStoreError, builtins.FileExistsError):  # noqa: A001
    """A create targeted a name that is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"File already exists: {name}")


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer (defined in brain/llm_client.py, re-exported here)
# ─────────────────────────────────────────────────────────────────────────────

from forgepilot.brain.llm_client import (  # noqa: E402,F401
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "ForgePilotError",
    # Agent
    "AgentError",
    "PlanParseError",
    "InvalidStateError",
    "ApprovalError",
    # Tool
    "ToolError",
    "UnknownToolError",
    "ToolExecutionError",
    "ToolValidationError",
    # Composer
    "ComposerError",
    "ValidationError",
    "DependencyUnmetError",
    "AtomicApplyFailure",
    "UnknownChangeError",
    # FileStore
    "FileStoreError",
    "FileNotFoundError",
    "FileExistsError",
    # LLM (re-exported)
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
]
