"""
files/store.py — FileStore contract + implementations

The FileStore owns the project's filename space. Both the agent tools and
the change composer mutate files exclusively through it.

  - FileStore           Protocol every backend satisfies
  - InMemoryFileStore   dict-backed, used by tests and embedders
  - DirectoryFileStore  files under a root directory on disk; names are
                        POSIX relative paths and may not escape the root

All mutating methods are async. Lookups of absent names for
overwrite/delete/rename raise forgepilot.exceptions.FileNotFoundError;
creating a name that exists raises FileExistsError.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, runtime_checkable

from forgepilot.exceptions import FileExistsError, FileNotFoundError, FileStoreError
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)

_LANGUAGE_BY_EXTENSION = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "less": "less",
    "json": "json",
    "md": "markdown",
    "yaml": "yaml",
    "yml": "yaml",
    "sql": "sql",
    "sh": "bash",
    "bash": "bash",
    "c": "c",
    "h": "c",
}


def detect_language(filename: str) -> str:
    """Map a filename's extension to a language id ("text" when unknown)."""
    suffix = PurePosixPath(filename).suffix.lstrip(".").lower()
    return _LANGUAGE_BY_EXTENSION.get(suffix, "text")


def normalise_name(name: str) -> str:
    """Canonical POSIX form of a store name: no leading './', no backslashes."""
    cleaned = name.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


@dataclass
class FileRecord:
    id: str
    name: str
    content: str
    language: str = "text"


@runtime_checkable
class FileStore(Protocol):
    """Operations the agent tools and the change composer rely on."""

    async def find(self, name: str) -> Optional[FileRecord]: ...

    async def create(self, name: str, content: str) -> FileRecord: ...

    async def overwrite(self, name: str, content: str) -> FileRecord: ...

    async def delete(self, name: str) -> None: ...

    async def rename(self, old_name: str, new_name: str) -> FileRecord: ...

    async def list(self) -> list[FileRecord]: ...

    async def open(self, name: str) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────────────────────────────────────


class InMemoryFileStore:
    """
    Dict-backed FileStore. Insertion order is preserved by list().

    `opened` records names passed to open(), in order, so callers can
    assert which files would have been focused in an editor.
    """

    def __init__(self, files: Optional[dict[str, str]] = None):
        self._files: dict[str, FileRecord] = {}
        self.opened: list[str] = []
        for name, content in (files or {}).items():
            self._put(name, content)

    def _put(self, name: str, content: str) -> FileRecord:
        name = normalise_name(name)
        record = FileRecord(
            id=f"file_{uuid.uuid4().hex[:12]}",
            name=name,
            content=content,
            language=detect_language(name),
        )
        self._files[name] = record
        return record

    async def find(self, name: str) -> Optional[FileRecord]:
        return self._files.get(normalise_name(name))

    async def create(self, name: str, content: str) -> FileRecord:
        if normalise_name(name) in self._files:
            raise FileExistsError(name)
        return self._put(name, content)

    async def overwrite(self, name: str, content: str) -> FileRecord:
        record = self._files.get(normalise_name(name))
        if record is None:
            raise FileNotFoundError(name)
        record.content = content
        return record

    async def delete(self, name: str) -> None:
        if self._files.pop(normalise_name(name), None) is None:
            raise FileNotFoundError(name)

    async def rename(self, old_name: str, new_name: str) -> FileRecord:
        old_key, new_key = normalise_name(old_name), normalise_name(new_name)
        record = self._files.get(old_key)
        if record is None:
            raise FileNotFoundError(old_name)
        if new_key != old_key and new_key in self._files:
            raise FileExistsError(new_name)
        del self._files[old_key]
        record.name = new_key
        record.language = detect_language(new_key)
        self._files[new_key] = record
        return record

    async def list(self) -> list[FileRecord]:
        return list(self._files.values())

    async def open(self, name: str) -> None:
        self.opened.append(normalise_name(name))

    def snapshot(self) -> dict[str, str]:
        """Plain name → content mapping of the current state."""
        return {name: rec.content for name, rec in self._files.items()}

    def __len__(self) -> int:
        return len(self._files)

    def __repr__(self) -> str:
        return f"<InMemoryFileStore files={len(self._files)}>"


# ─────────────────────────────────────────────────────────────────────────────
# On-disk backend
# ─────────────────────────────────────────────────────────────────────────────

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


class DirectoryFileStore:
    """
    FileStore over a directory tree. Blocking I/O runs in a worker thread.

    Record ids are a stable hash of the relative path so the same file
    keeps its id across list() calls.
    """

    def __init__(self, root: str | Path, encoding: str = "utf-8"):
        self.root = Path(root).expanduser().resolve()
        self.encoding = encoding
        if not self.root.is_dir():
            raise FileStoreError(f"FileStore root is not a directory: {self.root}")

    # ── Path handling ────────────────────────────────────────────────────────

    def _path(self, name: str) -> Path:
        rel = normalise_name(name)
        if not rel:
            raise FileStoreError("File name must not be empty")
        resolved = (self.root / rel).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise FileStoreError(f"Path escapes the project root: {name}")
        return resolved

    def _record(self, path: Path, content: str) -> FileRecord:
        rel = path.relative_to(self.root).as_posix()
        return FileRecord(
            id="file_" + hashlib.sha1(rel.encode("utf-8")).hexdigest()[:12],
            name=rel,
            content=content,
            language=detect_language(rel),
        )

    # ── Blocking helpers (run via asyncio.to_thread) ─────────────────────────

    def _read(self, path: Path) -> Optional[FileRecord]:
        if not path.is_file():
            return None
        return self._record(path, path.read_text(encoding=self.encoding, errors="replace"))

    def _write(self, path: Path, content: str) -> FileRecord:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding=self.encoding)
        return self._record(path, content)

    def _walk(self) -> list[FileRecord]:
        records = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            if any(part in _SKIP_DIRS for part in path.relative_to(self.root).parts):
                continue
            try:
                content = path.read_text(encoding=self.encoding)
            except (UnicodeDecodeError, OSError):
                continue  # binary or unreadable
            records.append(self._record(path, content))
        return records

    # ── FileStore API ────────────────────────────────────────────────────────

    async def find(self, name: str) -> Optional[FileRecord]:
        return await asyncio.to_thread(self._read, self._path(name))

    async def create(self, name: str, content: str) -> FileRecord:
        path = self._path(name)
        if path.exists():
            raise FileExistsError(name)
        log.debug("file_store.create", name=name)
        return await asyncio.to_thread(self._write, path, content)

    async def overwrite(self, name: str, content: str) -> FileRecord:
        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(name)
        log.debug("file_store.overwrite", name=name)
        return await asyncio.to_thread(self._write, path, content)

    async def delete(self, name: str) -> None:
        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(name)
        log.debug("file_store.delete", name=name)
        await asyncio.to_thread(path.unlink)

    async def rename(self, old_name: str, new_name: str) -> FileRecord:
        src, dst = self._path(old_name), self._path(new_name)
        if not src.is_file():
            raise FileNotFoundError(old_name)
        if dst.exists() and dst != src:
            raise FileExistsError(new_name)
        log.debug("file_store.rename", old=old_name, new=new_name)

        def _move() -> FileRecord:
            dst.parent.mkdir(parents=True, exist_ok=True)
            src.rename(dst)
            return self._record(dst, dst.read_text(encoding=self.encoding, errors="replace"))

        return await asyncio.to_thread(_move)

    async def list(self) -> list[FileRecord]:
        return await asyncio.to_thread(self._walk)

    async def open(self, name: str) -> None:
        log.debug("file_store.open", name=normalise_name(name))

    def __repr__(self) -> str:
        return f"<DirectoryFileStore root={self.root}>"


def matches_pattern(name: str, pattern: Optional[str]) -> bool:
    """Glob match on the full name or the basename ("*.js", "src/**/*.ts")."""
    if not pattern:
        return True
    return fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(PurePosixPath(name).name, pattern)
