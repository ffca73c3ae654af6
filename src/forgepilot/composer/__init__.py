from forgepilot.composer.changes import (
    ApplyReport,
    Change,
    ChangeStatus,
    ChangeType,
    RollbackEntry,
    RollbackReport,
    Session,
    SessionStatus,
    normalise_change,
)
from forgepilot.composer.composer import ChangeComposer, ComposerState
from forgepilot.composer.dependencies import DependencyGraphNode, DependencyResolver, detect_references

__all__ = [
    "ApplyReport",
    "Change",
    "ChangeComposer",
    "ChangeStatus",
    "ChangeType",
    "ComposerState",
    "DependencyGraphNode",
    "DependencyResolver",
    "RollbackEntry",
    "RollbackReport",
    "Session",
    "SessionStatus",
    "detect_references",
    "normalise_change",
]
