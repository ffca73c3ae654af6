"""
tools/__init__.py — ForgePilot Tool System

Usage:
    from forgepilot.tools import ToolRegistry, register_default_tools

    registry = register_default_tools(ToolRegistry(), store, composer=composer)
    tool = registry.get("read_file")
    result = await tool.execute({"filename": "src/app.js"})
"""

from __future__ import annotations

from forgepilot.tools.builtin import TerminalRunner, analyze_source, register_default_tools
from forgepilot.tools.registry import ToolRegistry
from forgepilot.tools.types import Tool, ToolHandler

__all__ = [
    "TerminalRunner",
    "Tool",
    "ToolHandler",
    "ToolRegistry",
    "analyze_source",
    "register_default_tools",
]
