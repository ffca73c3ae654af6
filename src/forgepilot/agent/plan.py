"""
agent/plan.py — Task / Plan / Action state

Plain runtime state owned by the orchestrator. A Plan is fixed once
generated; the orchestrator executes copies of its steps, so Plan.steps
keeps reporting the plan as the model produced it.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETE = "complete"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class Task:
    description: str
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    started_at: float = field(default_factory=time.time)


@dataclass
class Action:
    id: int
    description: str
    tool: str
    params: dict[str, Any] = field(default_factory=dict)
    depends_on: list[int] = field(default_factory=list)
    status: ActionStatus = ActionStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "tool": self.tool,
            "params": dict(self.params),
            "dependsOn": list(self.depends_on),
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }

    def copy(self) -> "Action":
        """Independent copy for the execution queue; params and deps are not shared."""
        return replace(self, params=dict(self.params), depends_on=list(self.depends_on))


@dataclass
class Plan:
    task_id: str
    summary: str
    steps: list[Action]
    estimated_actions: int
    requires_approval: bool
    generated_at: float = field(default_factory=time.time)

    def get(self, action_id: int) -> Optional[Action]:
        for action in self.steps:
            if action.id == action_id:
                return action
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "summary": self.summary,
            "steps": [a.to_dict() for a in self.steps],
            "estimatedActions": self.estimated_actions,
            "requiresApproval": self.requires_approval,
            "generatedAt": self.generated_at,
        }
