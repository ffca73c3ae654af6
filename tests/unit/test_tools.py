"""
tests/unit/test_tools.py — ToolRegistry + built-in tools

Covers:
  - register / get / has / describe in registration order
  - decorator registration wraps an async handler
  - re-registration overwrites
  - UnknownToolError on miss
  - validate_params: missing required, wrong JSON type, bool-as-integer
  - merge(): later registries win
  - built-ins against an InMemoryFileStore: read, write, delete, list,
    search, analyze, propose_changes, run_terminal
"""

from __future__ import annotations

import sys

import pytest

from forgepilot.composer.composer import ChangeComposer
from forgepilot.exceptions import FileNotFoundError, ToolValidationError, UnknownToolError
from forgepilot.files.store import InMemoryFileStore
from forgepilot.tools.builtin import TerminalRunner, analyze_source, register_default_tools
from forgepilot.tools.registry import ToolRegistry
from forgepilot.tools.types import Tool


# ── Helpers ───────────────────────────────────────────────────────────────────

async def _echo(params: dict) -> dict:
    return {"echo": params}


def _make_tool(tool_id="echo", requires_approval=False, parameters=None) -> Tool:
    return Tool(
        id=tool_id,
        name=tool_id.title(),
        description=f"{tool_id} tool",
        requires_approval=requires_approval,
        parameters=parameters or {"type": "object", "properties": {}, "required": []},
        handler=_echo,
    )


def _defaults(files=None, composer=False):
    store = InMemoryFileStore(files or {})
    comp = ChangeComposer(store) if composer else None
    registry = register_default_tools(ToolRegistry(), store, composer=comp)
    return registry, store, comp


# ── ToolRegistry ──────────────────────────────────────────────────────────────

class TestToolRegistry:
    def test_register_and_get(self):
        registry = ToolRegistry()
        tool = _make_tool()
        registry.register("echo", tool)
        assert registry.get("echo") is tool
        assert registry.has("echo")
        assert "echo" in registry
        assert len(registry) == 1

    def test_register_under_different_id_copies(self):
        registry = ToolRegistry()
        registry.register("alias", _make_tool("echo"))
        assert registry.get("alias").id == "alias"

    def test_get_unknown_raises(self):
        with pytest.raises(UnknownToolError) as exc_info:
            ToolRegistry().get("nope")
        assert exc_info.value.tool_id == "nope"
        assert "nope" in str(exc_info.value)

    def test_reregistration_overwrites(self):
        registry = ToolRegistry()
        registry.register("echo", _make_tool(requires_approval=False))
        registry.register("echo", _make_tool(requires_approval=True))
        assert len(registry) == 1
        assert registry.get("echo").requires_approval is True

    def test_describe_in_registration_order(self):
        registry = ToolRegistry()
        for tool_id in ("b_tool", "a_tool", "c_tool"):
            registry.register(tool_id, _make_tool(tool_id, requires_approval=tool_id == "a_tool"))
        catalog = registry.describe()
        assert [t["id"] for t in catalog] == ["b_tool", "a_tool", "c_tool"]
        assert catalog[1] == {
            "id": "a_tool",
            "name": "A_Tool",
            "description": "a_tool tool",
            "requiresApproval": True,
        }

    def test_describe_for_prompt_marks_required_and_approval(self):
        registry = ToolRegistry()
        registry.register(
            "write",
            _make_tool(
                "write",
                requires_approval=True,
                parameters={
                    "type": "object",
                    "properties": {"filename": {"type": "string", "description": "target"}},
                    "required": ["filename"],
                },
            ),
        )
        text = registry.describe_for_prompt()
        assert "[REQUIRES APPROVAL]" in text
        assert "filename (required): target" in text

    @pytest.mark.asyncio
    async def test_decorator_registration(self):
        registry = ToolRegistry()

        @registry.register("double", description="Double a number", parameters={
            "type": "object",
            "properties": {"n": {"type": "integer"}},
            "required": ["n"],
        })
        async def double(params: dict) -> int:
            return params["n"] * 2

        tool = registry.get("double")
        assert tool.name == "double"
        assert tool.requires_approval is False
        assert await tool.execute({"n": 21}) == 42

    def test_merge_later_wins(self):
        first, second = ToolRegistry(), ToolRegistry()
        first.register("a", _make_tool("a"))
        first.register("shared", _make_tool("shared", requires_approval=False))
        second.register("shared", _make_tool("shared", requires_approval=True))
        merged = ToolRegistry.merge(first, second)
        assert merged.ids() == ["a", "shared"]
        assert merged.get("shared").requires_approval is True


class TestValidateParams:
    def _registry(self):
        registry = ToolRegistry()
        registry.register(
            "t",
            _make_tool(
                "t",
                parameters={
                    "type": "object",
                    "properties": {"name": {"type": "string"}, "count": {"type": "integer"}},
                    "required": ["name"],
                },
            ),
        )
        return registry

    def test_valid(self):
        self._registry().validate_params("t", {"name": "x", "count": 2, "extra": True})

    def test_missing_required(self):
        with pytest.raises(ToolValidationError, match="name"):
            self._registry().validate_params("t", {"count": 2})

    def test_none_counts_as_missing(self):
        with pytest.raises(ToolValidationError):
            self._registry().validate_params("t", {"name": None})

    def test_wrong_type(self):
        with pytest.raises(ToolValidationError, match="count"):
            self._registry().validate_params("t", {"name": "x", "count": "two"})

    def test_bool_is_not_integer(self):
        with pytest.raises(ToolValidationError, match="boolean"):
            self._registry().validate_params("t", {"name": "x", "count": True})

    def test_unknown_tool(self):
        with pytest.raises(UnknownToolError):
            self._registry().validate_params("missing", {})


# ── Built-in tools ────────────────────────────────────────────────────────────

class TestBuiltinTools:
    def test_default_set(self):
        registry, _, _ = _defaults()
        assert registry.ids() == [
            "read_file",
            "write_file",
            "delete_file",
            "list_files",
            "search_codebase",
            "analyze_code",
            "run_terminal",
        ]
        approval = {t["id"] for t in registry.describe() if t["requiresApproval"]}
        assert approval == {"write_file", "delete_file", "run_terminal"}

    def test_propose_changes_only_with_composer(self):
        registry, _, _ = _defaults(composer=True)
        assert registry.has("propose_changes")
        assert registry.get("propose_changes").requires_approval is False

    @pytest.mark.asyncio
    async def test_read_file(self):
        registry, _, _ = _defaults({"src/app.js": "console.log(1)"})
        result = await registry.get("read_file").execute({"filename": "src/app.js"})
        assert result == {"filename": "src/app.js", "content": "console.log(1)", "language": "javascript"}

    @pytest.mark.asyncio
    async def test_read_missing_file_raises(self):
        registry, _, _ = _defaults()
        with pytest.raises(FileNotFoundError):
            await registry.get("read_file").execute({"filename": "nope.js"})

    @pytest.mark.asyncio
    async def test_write_file_creates_then_overwrites(self):
        registry, store, _ = _defaults()
        write = registry.get("write_file")
        first = await write.execute({"filename": "a.py", "content": "x = 1\n"})
        second = await write.execute({"filename": "a.py", "content": "x = 2\n"})
        assert first["created"] is True
        assert second["created"] is False
        assert store.snapshot() == {"a.py": "x = 2\n"}
        assert store.opened == ["a.py", "a.py"]

    @pytest.mark.asyncio
    async def test_delete_file(self):
        registry, store, _ = _defaults({"a.txt": "bye"})
        await registry.get("delete_file").execute({"filename": "a.txt"})
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_list_files_with_pattern(self):
        registry, _, _ = _defaults({"src/a.js": "", "src/b.ts": "", "README.md": ""})
        everything = await registry.get("list_files").execute({})
        only_js = await registry.get("list_files").execute({"pattern": "*.js"})
        assert everything["count"] == 3
        assert only_js["files"] == ["src/a.js"]

    @pytest.mark.asyncio
    async def test_search_substring_case_insensitive(self):
        registry, _, _ = _defaults({
            "a.js": "const Theme = 'dark';\nexport default Theme;",
            "b.css": "body { color: black; }",
        })
        result = await registry.get("search_codebase").execute({"query": "theme"})
        assert result["total"] == 2
        assert {m["line"] for m in result["matches"]} == {1, 2}
        assert all(m["filename"] == "a.js" for m in result["matches"])

    @pytest.mark.asyncio
    async def test_search_regex_with_file_pattern(self):
        registry, _, _ = _defaults({
            "a.js": "function toggle() {}",
            "b.py": "def toggle():\n    pass",
        })
        result = await registry.get("search_codebase").execute(
            {"query": r"def\s+\w+", "regex": True, "file_pattern": "*.py"}
        )
        assert result["matches"] == [{"filename": "b.py", "line": 1, "text": "def toggle():"}]
        assert result["truncated"] is False

    @pytest.mark.asyncio
    async def test_analyze_code(self):
        source = (
            "import React from 'react';\n"
            "import './styles.css';\n"
            "\n"
            "// toggles the theme\n"
            "export function toggle() {}\n"
            "export class Settings {}\n"
            "const helper = (x) => x;\n"
        )
        registry, _, _ = _defaults({"src/settings.js": source})
        result = await registry.get("analyze_code").execute({"filename": "src/settings.js"})
        assert result["language"] == "javascript"
        assert result["imports"] == ["react", "./styles.css"]
        assert "toggle" in result["exports"] and "Settings" in result["exports"]
        assert result["functions"] == ["toggle", "helper"]
        assert result["classes"] == ["Settings"]
        assert result["lines"] == {"total": 7, "code": 5, "blank": 1, "comment": 1}

    def test_analyze_python_source(self):
        result = analyze_source("from .utils import slugify\nimport os\n\nclass Page:\n    async def render(self):\n        pass\n")
        assert result["imports"] == [".utils", "os"]
        assert result["classes"] == ["Page"]
        assert result["functions"] == ["render"]

    @pytest.mark.asyncio
    async def test_propose_changes_queues_valid_docs(self):
        registry, _, composer = _defaults({"a.js": "old"}, composer=True)
        result = await registry.get("propose_changes").execute({
            "task": "tweak a.js",
            "changes": [
                {"filename": "a.js", "type": "modify", "content": "new"},
                {"filename": "", "type": "create", "content": "x"},
            ],
        })
        assert len(result["accepted"]) == 1
        assert result["skipped"] == 1
        assert result["pending"] == 1
        assert composer.session.task_description == "tweak a.js"


class TestTerminalRunner:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        runner = TerminalRunner(working_dir=tmp_path, timeout_seconds=10)
        result = await runner.run(f'"{sys.executable}" -c "print(\'hello\')"')
        assert result["exit_code"] == 0
        assert result["error"] is None
        assert "hello" in result["output"]

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, tmp_path):
        runner = TerminalRunner(working_dir=tmp_path, timeout_seconds=10)
        result = await runner.run(f'"{sys.executable}" -c "import sys; sys.exit(3)"')
        assert result["exit_code"] == 3
        assert "3" in result["error"]

    @pytest.mark.asyncio
    async def test_timeout_reports_recoverable_error(self, tmp_path):
        runner = TerminalRunner(working_dir=tmp_path, timeout_seconds=1)
        result = await runner.run(f'"{sys.executable}" -c "import time; time.sleep(5)"')
        assert result["exit_code"] == -1
        assert "timeout" in result["error"]

    @pytest.mark.asyncio
    async def test_secrets_not_inherited(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-secret")
        runner = TerminalRunner(working_dir=tmp_path, timeout_seconds=10)
        cmd = f'"{sys.executable}" -c "import os; print(os.environ.get(\'OPENROUTER_API_KEY\', \'absent\'))"'
        result = await runner.run(cmd)
        assert "absent" in result["output"]
        assert "sk-secret" not in result["output"]
