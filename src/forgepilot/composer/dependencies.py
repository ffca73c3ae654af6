"""
composer/dependencies.py — Dependency Resolver

Builds a per-filename graph over the pending change set and produces an
application order in which every change comes after the changes it
depends on.

Edges come from two sources:
  1. Explicit hints: Change.depends_on
  2. References detected in the change's content (imports, requires,
     CSS @import, C #include, Python relative imports). A detected
     reference only becomes an edge when it resolves to the filename of
     another pending change.

Ordering is a depth-first topological traversal in discovery order.
Cycles do not fail the batch: the edge that closes a cycle is skipped,
logged as resolver.cycle_detected and recorded in `cycles`.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from forgepilot.composer.changes import Change, ChangeStatus
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)

_REFERENCE_PATTERNS = [
    re.compile(r"""import\s+[^'";]*?\s+from\s+['"](\.[^'"]*)['"]"""),     # import x from './x'
    re.compile(r"""import\s+['"](\.[^'"]*)['"]"""),                        # import './x'
    re.compile(r"""require\s*\(\s*['"](\.[^'"]*)['"]\s*\)"""),             # require('./x')
    re.compile(r"""import\s*\(\s*['"](\.[^'"]*)['"]\s*\)"""),              # import('./x')
    re.compile(r"""@import\s+(?:url\()?\s*['"](\.[^'"]*)['"]"""),         # @import './x.css'
    re.compile(r"""^\s*#\s*include\s+"([^"]+)\"""", re.MULTILINE),         # #include "x.h"
]
_PY_RELATIVE_IMPORT = re.compile(r"^\s*from\s+(\.+)([\w.]*)\s+import\s", re.MULTILINE)

_EXTENSIONS = ("", ".js", ".ts", ".jsx", ".tsx", ".css", ".py", ".h")
_INDEX_FILES = ("index.js", "index.ts", "index.jsx", "index.tsx", "__init__.py")


@dataclass
class DependencyGraphNode:
    filename: str
    depends_on: set[str] = field(default_factory=set)
    required_by: set[str] = field(default_factory=set)


def _python_specifier(dots: str, module: str) -> str:
    """Translate `from ..pkg.mod import x` into a relative path spec."""
    prefix = "./" if len(dots) == 1 else "../" * (len(dots) - 1)
    return prefix + module.replace(".", "/") if module else prefix.rstrip("/") or "."


def detect_references(filename: str, content: str) -> list[str]:
    """
    Relative module specifiers referenced by a file's content, resolved
    against the file's directory (without extension probing).
    """
    if not content:
        return []
    specifiers: list[str] = []
    for pattern in _REFERENCE_PATTERNS:
        specifiers.extend(m.group(1) for m in pattern.finditer(content))
    if filename.endswith(".py"):
        specifiers.extend(
            _python_specifier(m.group(1), m.group(2)) for m in _PY_RELATIVE_IMPORT.finditer(content)
        )

    base_dir = posixpath.dirname(filename)
    resolved: list[str] = []
    for spec in specifiers:
        path = posixpath.normpath(posixpath.join(base_dir, spec))
        if path.startswith("..") or path == ".":
            continue  # escapes the project root
        if path not in resolved:
            resolved.append(path)
    return resolved


class DependencyResolver:
    """Dependency graph over one pending change set. Rebuilt on every change."""

    def __init__(self, auto_detect: bool = True):
        self.auto_detect = auto_detect
        self.nodes: dict[str, DependencyGraphNode] = {}
        self.cycles: list[tuple[str, str]] = []
        self._pending: list[Change] = []

    # ── Graph construction ───────────────────────────────────────────────────

    def rebuild(self, changes: Iterable[Change]) -> None:
        self._pending = [c for c in changes if c.status == ChangeStatus.PENDING]
        self.nodes = {c.filename: DependencyGraphNode(c.filename) for c in self._pending}
        self.cycles = []

        for change in self._pending:
            node = self.nodes[change.filename]
            for dep in change.depends_on:
                if dep == change.filename:
                    continue
                node.depends_on.add(dep)
                if dep in self.nodes:
                    self.nodes[dep].required_by.add(change.filename)

            if not self.auto_detect:
                continue
            for ref in detect_references(change.filename, change.content):
                target = self._match_pending(ref)
                if target is None or target == change.filename:
                    continue
                node.depends_on.add(target)
                self.nodes[target].required_by.add(change.filename)

    def _match_pending(self, path: str) -> Optional[str]:
        for ext in _EXTENSIONS:
            if path + ext in self.nodes:
                return path + ext
        for index in _INDEX_FILES:
            candidate = posixpath.join(path, index)
            if candidate in self.nodes:
                return candidate
        return None

    def remove(self, filename: str) -> None:
        """Drop a node and every link pointing at it."""
        node = self.nodes.pop(filename, None)
        if node is None:
            return
        for other in self.nodes.values():
            other.depends_on.discard(filename)
            other.required_by.discard(filename)
        self._pending = [c for c in self._pending if c.filename != filename]

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_ordered_changes(self) -> list[Change]:
        """
        Pending changes in dependency order, each exactly once.

        A dependency reached again while its own subtree is still being
        visited closes a cycle; that edge is skipped.
        """
        by_name = {c.filename: c for c in self._pending}
        ordered: list[Change] = []
        visited: set[str] = set()
        visiting: set[str] = set()
        self.cycles = []

        def visit(filename: str, parent: Optional[str]) -> None:
            if filename in visited:
                return
            if filename in visiting:
                log.warning("resolver.cycle_detected", from_file=parent, to_file=filename)
                self.cycles.append((parent or filename, filename))
                return
            visiting.add(filename)
            node = self.nodes.get(filename)
            if node is not None:
                for dep in sorted(node.depends_on, key=self._discovery_index):
                    visit(dep, filename)
            visiting.discard(filename)
            visited.add(filename)
            if filename in by_name:
                ordered.append(by_name[filename])

        for change in self._pending:
            visit(change.filename, None)
        return ordered

    def _discovery_index(self, filename: str) -> int:
        for i, change in enumerate(self._pending):
            if change.filename == filename:
                return i
        return len(self._pending)

    def unmet_dependencies(self, change: Change, pending: Optional[Iterable[Change]] = None) -> list[str]:
        """Dependency filenames of `change` that are still pending."""
        pending_names = {
            c.filename
            for c in (pending if pending is not None else self._pending)
            if c.status == ChangeStatus.PENDING and c.filename != change.filename
        }
        node = self.nodes.get(change.filename)
        deps = node.depends_on if node is not None else set(change.depends_on)
        return sorted(d for d in deps if d in pending_names)

    def __len__(self) -> int:
        return len(self.nodes)
