"""
tools/registry.py — Tool Registry

Central registry for every capability the agent can invoke, keyed by id.

The registry stores Tool models (metadata + JSON schema + async handler).
Tools are added programmatically or through the decorator form:

    registry = ToolRegistry()

    @registry.register(
        "read_file",
        name="Read File",
        description="Read the content of a file",
        parameters={
            "type": "object",
            "properties": {"filename": {"type": "string"}},
            "required": ["filename"],
        },
    )
    async def read_file(params: dict) -> dict:
        ...

    registry.get("read_file")          # -> Tool, or raises UnknownToolError
    registry.describe()                # -> [{id, name, description, requiresApproval}]
"""

from __future__ import annotations

from typing import Any, Optional

from forgepilot.exceptions import ToolValidationError, UnknownToolError
from forgepilot.observability.logger import get_logger
from forgepilot.tools.types import Tool, ToolHandler

log = get_logger(__name__)

_JSON_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


class ToolRegistry:
    """
    Maps tool ids to Tool models, preserving registration order.

    Not designed for concurrent writes; tools are registered once at
    startup and read-only afterwards.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    # ── Registration ─────────────────────────────────────────────────────────

    def register(
        self,
        tool_id: str,
        tool: Optional[Tool] = None,
        *,
        name: Optional[str] = None,
        description: str = "",
        requires_approval: bool = False,
        parameters: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Register a tool under `tool_id`. Re-registration overwrites.

        With a Tool instance, stores it and returns it. Without one, returns
        a decorator that wraps an async handler into a Tool.
        """
        if tool is not None:
            if tool.id != tool_id:
                tool = tool.model_copy(update={"id": tool_id})
            self._store(tool)
            return tool

        def decorator(fn: ToolHandler) -> ToolHandler:
            self._store(
                Tool(
                    id=tool_id,
                    name=name or tool_id,
                    description=description,
                    requires_approval=requires_approval,
                    parameters=parameters or {"type": "object", "properties": {}, "required": []},
                    handler=fn,
                )
            )
            return fn

        return decorator

    def _store(self, tool: Tool) -> None:
        if tool.id in self._tools:
            log.info("tool.overwritten", tool=tool.id)
        self._tools[tool.id] = tool
        log.debug("tool.registered", tool=tool.id, requires_approval=tool.requires_approval)

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get(self, tool_id: str) -> Tool:
        try:
            return self._tools[tool_id]
        except KeyError:
            raise UnknownToolError(tool_id) from None

    def has(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def ids(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def describe(self) -> list[dict[str, Any]]:
        """Catalog entries for every tool, in registration order."""
        return [t.describe() for t in self._tools.values()]

    def describe_for_prompt(self) -> str:
        """Render the tool catalog as the text block used in planning prompts."""
        blocks = []
        for tool in self._tools.values():
            props = tool.parameters.get("properties", {})
            required = set(tool.parameters.get("required", []))
            params = "\n".join(
                f"    - {key}{' (required)' if key in required else ''}: "
                f"{spec.get('description', spec.get('type', ''))}"
                for key, spec in props.items()
            )
            approval = " [REQUIRES APPROVAL]" if tool.requires_approval else ""
            blocks.append(
                f"- {tool.id}: {tool.description}{approval}"
                + (f"\n  Parameters:\n{params}" if params else "")
            )
        return "\n".join(blocks)

    # ── Validation ───────────────────────────────────────────────────────────

    def validate_params(self, tool_id: str, params: dict[str, Any]) -> None:
        """
        Check params against the tool's JSON schema.

        Raises ToolValidationError on a missing required field or a value
        whose type does not match the declared JSON type. Unknown fields
        are tolerated.
        """
        error = _validate_args(params, self.get(tool_id).parameters)
        if error:
            raise ToolValidationError(f"{tool_id}: {error}")

    # ── Composition ──────────────────────────────────────────────────────────

    @classmethod
    def merge(cls, *registries: "ToolRegistry") -> "ToolRegistry":
        """Combine registries into a new one; later registries win on id clashes."""
        merged = cls()
        for registry in registries:
            for tool in registry.tools():
                merged._store(tool)
        return merged

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._tools)}>"


def _validate_args(arguments: dict, schema: dict) -> Optional[str]:
    """Return an error string if arguments violate the schema, None if valid."""
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    for field in required:
        if arguments.get(field) is None:
            return f"Missing required field: '{field}'"

    for field, value in arguments.items():
        prop_schema = properties.get(field)
        if prop_schema is None:
            continue
        json_type = prop_schema.get("type")
        expected = _JSON_TYPE_MAP.get(json_type) if json_type else None
        if expected is None:
            continue
        # bool is a subclass of int in Python, so check bool explicitly first
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{field}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            return f"Field '{field}': expected {json_type}, got {type(value).__name__}"

    return None
