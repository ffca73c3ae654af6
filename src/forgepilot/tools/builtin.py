"""
tools/builtin.py — Built-in tool set

Registers the tools the planner can use against a project:

  - read_file        → file content + language
  - write_file       → create or overwrite a file        [approval]
  - delete_file      → remove a file                     [approval]
  - list_files       → project file names, optional glob
  - search_codebase  → substring / regex search over file contents
  - analyze_code     → imports, exports, functions, classes, line counts
  - run_terminal     → run a shell command in the project [approval]
  - propose_changes  → queue Change documents on the ChangeComposer

Every handler takes the raw params dict and returns a JSON-serialisable
dict. Failures raise; the orchestrator turns them into failed actions.
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Any, Optional

from forgepilot.composer.composer import ChangeComposer
from forgepilot.files.store import FileStore, detect_language, matches_pattern
from forgepilot.exceptions import FileNotFoundError
from forgepilot.observability.logger import get_logger
from forgepilot.tools.registry import ToolRegistry

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 50_000
MAX_SEARCH_RESULTS = 100
DEFAULT_TIMEOUT = 60

# Variables matching these are stripped from the subprocess environment.
_SECRET_ENV_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"API[_-]?KEY",
        r"SECRET",
        r"PASSWORD",
        r"TOKEN",
        r"CREDENTIAL",
        r"PRIVATE[_-]?KEY",
        r"ACCESS[_-]?KEY",
        r"OPENAI",
        r"OPENROUTER",
        r"AWS[_-]",
    ]
]


def _safe_env() -> dict[str, str]:
    return {
        key: value
        for key, value in os.environ.items()
        if not any(pat.search(key) for pat in _SECRET_ENV_PATTERNS)
    }


# ─────────────────────────────────────────────────────────────────────────────
# Terminal
# ─────────────────────────────────────────────────────────────────────────────


class TerminalRunner:
    """Runs shell commands in a fixed working directory with a timeout."""

    def __init__(self, working_dir: str | Path = ".", timeout_seconds: int = DEFAULT_TIMEOUT):
        self.working_dir = Path(working_dir).expanduser().resolve()
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "TerminalRunner":
        terminal = settings.tools.terminal
        return cls(working_dir=terminal.working_dir, timeout_seconds=terminal.timeout_seconds)

    async def run(self, command: str, timeout_seconds: Optional[int] = None) -> dict[str, Any]:
        """
        Execute `command` and return {command, output, exit_code, error}.

        stdout and stderr are merged into `output`. A timeout or a failure
        to start the process is reported with exit_code -1 rather than raised.
        """
        timeout = timeout_seconds or self.timeout_seconds
        log.info("terminal.run", command=command[:200], cwd=str(self.working_dir))

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self.working_dir),
                env={**_safe_env(), "PYTHONUNBUFFERED": "1"},
            )
            try:
                stdout_bytes, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.communicate()
                log.warning("terminal.timeout", command=command[:200], timeout=timeout)
                return {
                    "command": command,
                    "output": "",
                    "exit_code": -1,
                    "error": f"timeout: command exceeded {timeout} seconds",
                }
        except OSError as e:
            log.warning("terminal.start_failed", command=command[:200], error=str(e))
            return {"command": command, "output": "", "exit_code": -1, "error": f"Failed to start process: {e}"}

        output = stdout_bytes.decode("utf-8", errors="replace")
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n[output truncated, {len(output)} total chars]"

        exit_code = proc.returncode
        log.info("terminal.done", exit_code=exit_code, output_chars=len(output))
        return {
            "command": command,
            "output": output,
            "exit_code": exit_code,
            "error": None if exit_code == 0 else f"Command exited with code {exit_code}",
        }


# ─────────────────────────────────────────────────────────────────────────────
# Code analysis
# ─────────────────────────────────────────────────────────────────────────────

_IMPORT_PATTERNS = [
    re.compile(r"""^\s*import\s+(?:[\w*{}\s,]+\s+from\s+)?['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"^\s*from\s+([.\w]+)\s+import\s", re.MULTILINE),
    re.compile(r"^\s*import\s+([\w.]+)\s*$", re.MULTILINE),
    re.compile(r"""^\s*@import\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""^\s*#include\s+["<]([^">]+)[">]""", re.MULTILINE),
]
_EXPORT_PATTERN = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:function\*?|class|const|let|var)?\s*(\w+)",
    re.MULTILINE,
)
_FUNCTION_PATTERNS = [
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+(\w+)", re.MULTILINE),
    re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?(?:\([^)]*\)|\w+)\s*=>", re.MULTILINE),
    re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE),
]
_CLASS_PATTERN = re.compile(r"^\s*(?:export\s+)?(?:default\s+)?class\s+(\w+)", re.MULTILINE)
_COMMENT_PREFIXES = ("#", "//", "/*", "*", "--")


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def analyze_source(content: str) -> dict[str, Any]:
    """Regex-level structure of a source file; language agnostic."""
    lines = content.splitlines()
    blank = sum(1 for line in lines if not line.strip())
    comment = sum(1 for line in lines if line.strip().startswith(_COMMENT_PREFIXES))
    return {
        "imports": _unique([m for p in _IMPORT_PATTERNS for m in p.findall(content)]),
        "exports": _unique(_EXPORT_PATTERN.findall(content)),
        "functions": _unique([m for p in _FUNCTION_PATTERNS for m in p.findall(content)]),
        "classes": _unique(_CLASS_PATTERN.findall(content)),
        "lines": {
            "total": len(lines),
            "code": len(lines) - blank - comment,
            "blank": blank,
            "comment": comment,
        },
    }


# ─────────────────────────────────────────────────────────────────────────────
# Registration
# ─────────────────────────────────────────────────────────────────────────────


def _filename_schema(description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"filename": {"type": "string", "description": description}},
        "required": ["filename"],
    }


def register_default_tools(
    registry: ToolRegistry,
    store: FileStore,
    composer: Optional[ChangeComposer] = None,
    terminal: Optional[TerminalRunner] = None,
) -> ToolRegistry:
    """
    Register the built-in tools on `registry` and return it.

    propose_changes is only registered when a composer is supplied.
    Without a TerminalRunner, commands run in the current directory.
    """
    terminal = terminal or TerminalRunner()

    async def _require(filename: str):
        record = await store.find(filename)
        if record is None:
            raise FileNotFoundError(filename)
        return record

    @registry.register(
        "read_file",
        name="Read File",
        description="Read the content of a file",
        parameters=_filename_schema("Path of the file to read"),
    )
    async def read_file(params: dict) -> dict:
        record = await _require(params["filename"])
        return {"filename": record.name, "content": record.content, "language": record.language}

    @registry.register(
        "write_file",
        name="Write File",
        description="Create a file or replace its content",
        requires_approval=True,
        parameters={
            "type": "object",
            "properties": {
                "filename": {"type": "string", "description": "Path of the file to write"},
                "content": {"type": "string", "description": "Full new content"},
            },
            "required": ["filename", "content"],
        },
    )
    async def write_file(params: dict) -> dict:
        filename, content = params["filename"], params["content"]
        existing = await store.find(filename)
        if existing is None:
            record = await store.create(filename, content)
        else:
            record = await store.overwrite(filename, content)
        await store.open(record.name)
        return {"filename": record.name, "created": existing is None, "bytes": len(content)}

    @registry.register(
        "delete_file",
        name="Delete File",
        description="Delete a file",
        requires_approval=True,
        parameters=_filename_schema("Path of the file to delete"),
    )
    async def delete_file(params: dict) -> dict:
        await store.delete(params["filename"])
        return {"filename": params["filename"], "deleted": True}

    @registry.register(
        "list_files",
        name="List Files",
        description="List project files, optionally filtered by a glob pattern",
        parameters={
            "type": "object",
            "properties": {"pattern": {"type": "string", "description": "Glob such as '*.js' or 'src/*'"}},
            "required": [],
        },
    )
    async def list_files(params: dict) -> dict:
        pattern = params.get("pattern")
        names = [r.name for r in await store.list() if matches_pattern(r.name, pattern)]
        return {"files": names, "count": len(names)}

    @registry.register(
        "search_codebase",
        name="Search Codebase",
        description="Search file contents for a substring or regular expression",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Text or regex to look for"},
                "regex": {"type": "boolean", "description": "Treat query as a regular expression"},
                "case_sensitive": {"type": "boolean", "description": "Match case (default false)"},
                "file_pattern": {"type": "string", "description": "Only search files matching this glob"},
            },
            "required": ["query"],
        },
    )
    async def search_codebase(params: dict) -> dict:
        query = params["query"]
        flags = 0 if params.get("case_sensitive") else re.IGNORECASE
        matcher = re.compile(query if params.get("regex") else re.escape(query), flags)
        file_pattern = params.get("file_pattern")

        matches: list[dict[str, Any]] = []
        total = 0
        for record in await store.list():
            if not matches_pattern(record.name, file_pattern):
                continue
            for lineno, line in enumerate(record.content.splitlines(), start=1):
                if matcher.search(line):
                    total += 1
                    if len(matches) < MAX_SEARCH_RESULTS:
                        matches.append({"filename": record.name, "line": lineno, "text": line.strip()[:200]})
        return {"query": query, "matches": matches, "total": total, "truncated": total > len(matches)}

    @registry.register(
        "analyze_code",
        name="Analyze Code",
        description="Summarise a file's imports, exports, functions, classes and line counts",
        parameters=_filename_schema("Path of the file to analyse"),
    )
    async def analyze_code(params: dict) -> dict:
        record = await _require(params["filename"])
        return {"filename": record.name, "language": detect_language(record.name), **analyze_source(record.content)}

    @registry.register(
        "run_terminal",
        name="Run Terminal Command",
        description="Run a shell command in the project directory and capture its output",
        requires_approval=True,
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command, e.g. 'npm test'"},
                "timeout_seconds": {"type": "integer", "description": "Override the default timeout"},
            },
            "required": ["command"],
        },
    )
    async def run_terminal(params: dict) -> dict:
        return await terminal.run(params["command"], params.get("timeout_seconds"))

    if composer is not None:

        @registry.register(
            "propose_changes",
            name="Propose Changes",
            description=(
                "Queue file changes for review. Each change has filename, type "
                "(create|modify|delete|rename), content (required unless deleting), newFilename, "
                "description and dependsOn"
            ),
            parameters={
                "type": "object",
                "properties": {
                    "changes": {"type": "array", "description": "List of change objects"},
                    "task": {"type": "string", "description": "Task the changes belong to"},
                },
                "required": ["changes"],
            },
        )
        async def propose_changes(params: dict) -> dict:
            docs = params["changes"]
            if composer.session is None:
                await composer.start_session(params.get("task", ""))
            accepted = await composer.add_changes(docs)
            return {
                "accepted": [c.id for c in accepted],
                "skipped": len(docs) - len(accepted),
                "pending": len(composer.pending),
            }

    log.info("tools.defaults_registered", count=len(registry))
    return registry
