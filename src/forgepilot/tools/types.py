"""
tools/types.py — Tool System Data Models

Shared types used by the tool registry, the built-in tools and the
agent orchestrator.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def _empty_parameters() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class Tool(BaseModel):
    """
    A named capability the agent can invoke.

    `handler` is an async callable receiving the action's params dict;
    it returns any JSON-friendly result or raises.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    description: str
    requires_approval: bool = False
    parameters: dict[str, Any] = Field(default_factory=_empty_parameters)
    handler: ToolHandler = Field(exclude=True, repr=False)

    async def execute(self, params: dict[str, Any]) -> Any:
        return await self.handler(params)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "requiresApproval": self.requires_approval,
        }
