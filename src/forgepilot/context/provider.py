"""
context/provider.py — Project Context Provider

Supplies the planner with what it knows about the project: the list of
file names and, for a query, the most relevant code snippets.

Ranking is plain keyword overlap between the query and each file's name
and content, chunked into fixed-size line windows. No embeddings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from forgepilot.files.store import FileStore
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{2,}")
_STOP_WORDS = {
    "the", "and", "for", "with", "that", "this", "from", "into", "add", "make",
    "file", "files", "code", "use", "new", "all", "are", "not", "should",
}


@dataclass(frozen=True)
class Snippet:
    filename: str
    start_line: int          # 1-based, inclusive
    end_line: int
    text: str
    score: float


@runtime_checkable
class ContextProvider(Protocol):
    async def known_files(self) -> list[str]: ...

    async def relevant_snippets(self, query: str, limit: int = 5) -> list[Snippet]: ...


def _terms(text: str) -> set[str]:
    words = set()
    for match in _WORD_RE.findall(text):
        lower = match.lower()
        if lower in _STOP_WORDS:
            continue
        words.add(lower)
        # split camelCase / snake_case so "getUserName" matches "user"
        for part in re.split(r"_|(?<=[a-z])(?=[A-Z])", match):
            if len(part) > 2:
                words.add(part.lower())
    return words


class FileStoreContextProvider:
    """ContextProvider backed directly by a FileStore."""

    def __init__(self, store: FileStore, window_lines: int = 30, max_files: int = 500):
        self._store = store
        self._window = window_lines
        self._max_files = max_files

    async def known_files(self) -> list[str]:
        records = await self._store.list()
        return [r.name for r in records[: self._max_files]]

    async def relevant_snippets(self, query: str, limit: int = 5) -> list[Snippet]:
        query_terms = _terms(query)
        if not query_terms or limit <= 0:
            return []

        scored: list[Snippet] = []
        for record in await self._store.list():
            name_bonus = 2.0 * len(query_terms & _terms(record.name))
            lines = record.content.splitlines()
            for start in range(0, max(len(lines), 1), self._window):
                chunk = lines[start : start + self._window]
                overlap = len(query_terms & _terms("\n".join(chunk)))
                score = overlap + name_bonus
                if score <= 0:
                    continue
                scored.append(
                    Snippet(
                        filename=record.name,
                        start_line=start + 1,
                        end_line=start + len(chunk),
                        text="\n".join(chunk),
                        score=float(score),
                    )
                )

        scored.sort(key=lambda s: (-s.score, s.filename, s.start_line))
        log.debug("context.snippets_ranked", query_terms=len(query_terms), candidates=len(scored))
        return scored[:limit]
