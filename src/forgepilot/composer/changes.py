"""
composer/changes.py — Change Composer data model

A Change is one proposed file mutation. AI responses and tool calls hand
the composer loosely-shaped dicts; normalise_change() turns them into
validated Change objects:

    normalise_change({"file": "src/app.js", "action": "modify", "content": "..."})
    # → Change(filename="src/app.js", type=ChangeType.MODIFY, ...)

Accepted aliases: file → filename, action → type, dependsOn → depends_on,
newFilename → new_filename, originalContent → original_content.
"""

from __future__ import annotations

import difflib
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from forgepilot.exceptions import ValidationError
from forgepilot.files.store import detect_language, normalise_name


class ChangeType(str, Enum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    RENAME = "RENAME"


class ChangeStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    ERROR = "error"
    REJECTED = "rejected"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass
class Change:
    filename: str
    type: ChangeType
    content: str = ""
    original_content: Optional[str] = None
    new_filename: Optional[str] = None
    language: str = "text"
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    status: ChangeStatus = ChangeStatus.PENDING
    id: str = field(default_factory=lambda: f"chg_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)
    applied_at: Optional[float] = None
    error: Optional[str] = None
    diff: str = ""

    @property
    def target_name(self) -> str:
        """Name the file carries after this change is applied."""
        if self.type == ChangeType.RENAME and self.new_filename:
            return self.new_filename
        return self.filename

    def summary(self) -> str:
        if self.type == ChangeType.RENAME:
            return f"RENAME {self.filename} -> {self.new_filename}"
        return f"{self.type.value} {self.filename}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "type": self.type.value,
            "newFilename": self.new_filename,
            "language": self.language,
            "description": self.description,
            "dependsOn": list(self.depends_on),
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class RollbackEntry:
    change_id: str
    filename: str
    type: ChangeType
    original_content: Optional[str]         # None: the file did not exist
    applied_at: float
    new_filename: Optional[str] = None


@dataclass
class Session:
    task_description: str = ""
    id: str = field(default_factory=lambda: f"sess_{uuid.uuid4().hex[:12]}")
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    changes: list[Change] = field(default_factory=list)
    applied_changes: list[Change] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_empty(self) -> bool:
        return not self.changes and not self.applied_changes


@dataclass
class ApplyReport:
    applied: list[Change] = field(default_factory=list)
    failed: list[Change] = field(default_factory=list)
    skipped: list[Change] = field(default_factory=list)
    total: int = 0
    atomic: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped


@dataclass
class RollbackReport:
    restored: list[RollbackEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────────────────────────────────────

_TYPE_ALIASES = {
    "create": ChangeType.CREATE,
    "add": ChangeType.CREATE,
    "new": ChangeType.CREATE,
    "modify": ChangeType.MODIFY,
    "update": ChangeType.MODIFY,
    "edit": ChangeType.MODIFY,
    "delete": ChangeType.DELETE,
    "remove": ChangeType.DELETE,
    "rename": ChangeType.RENAME,
    "move": ChangeType.RENAME,
}


def _first(doc: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if doc.get(key) is not None:
            return doc[key]
    return None


def _parse_type(raw: Any, doc: dict[str, Any]) -> ChangeType:
    if isinstance(raw, ChangeType):
        return raw
    if raw is None:
        return ChangeType.MODIFY
    parsed = _TYPE_ALIASES.get(str(raw).strip().lower())
    if parsed is None:
        raise ValidationError(f"Unknown change type: {raw!r}", change=doc)
    return parsed


def normalise_change(doc: dict[str, Any] | Change) -> Change:
    """
    Build a validated Change from a loosely-shaped document.

    Raises ValidationError for an empty filename, missing content on a
    non-DELETE change, a RENAME without new_filename, or an unknown type.
    """
    if isinstance(doc, Change):
        doc = {
            "id": doc.id,
            "filename": doc.filename,
            "type": doc.type,
            "content": doc.content,
            "original_content": doc.original_content,
            "new_filename": doc.new_filename,
            "description": doc.description,
            "depends_on": doc.depends_on,
            "language": doc.language,
        }
    if not isinstance(doc, dict):
        raise ValidationError(f"Change must be an object, got {type(doc).__name__}")

    filename = normalise_name(str(_first(doc, "filename", "file", "path") or ""))
    if not filename:
        raise ValidationError("Change has no filename", change=doc)

    change_type = _parse_type(_first(doc, "type", "action"), doc)

    content = _first(doc, "content")
    if change_type != ChangeType.DELETE:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(f"{change_type.value} {filename} has no content", change=doc)
    content = content if isinstance(content, str) else ""

    new_filename = _first(doc, "new_filename", "newFilename")
    if change_type == ChangeType.RENAME:
        if not new_filename or not str(new_filename).strip():
            raise ValidationError(f"RENAME {filename} has no new_filename", change=doc)
        new_filename = normalise_name(str(new_filename))

    depends_raw = _first(doc, "depends_on", "dependsOn") or []
    if isinstance(depends_raw, str):
        depends_raw = [depends_raw]
    depends_on = [normalise_name(str(d)) for d in depends_raw if str(d).strip()]

    change = Change(
        filename=filename,
        type=change_type,
        content=content,
        original_content=_first(doc, "original_content", "originalContent"),
        new_filename=new_filename,
        language=_first(doc, "language") or detect_language(filename),
        description=str(_first(doc, "description") or ""),
        depends_on=[d for d in depends_on if d != filename],
    )
    if doc.get("id"):
        change.id = str(doc["id"])
    return change


def make_diff(filename: str, before: Optional[str], after: Optional[str], max_lines: int) -> str:
    """Unified diff between two versions, truncated to max_lines lines."""
    lines = list(
        difflib.unified_diff(
            (before or "").splitlines(),
            (after or "").splitlines(),
            fromfile=f"a/{filename}" if before is not None else "/dev/null",
            tofile=f"b/{filename}" if after is not None else "/dev/null",
            lineterm="",
        )
    )
    if len(lines) > max_lines:
        omitted = len(lines) - max_lines
        lines = lines[:max_lines] + [f"... ({omitted} more lines)"]
    return "\n".join(lines)
