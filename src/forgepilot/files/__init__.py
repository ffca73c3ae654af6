from forgepilot.files.store import (
    DirectoryFileStore,
    FileRecord,
    FileStore,
    InMemoryFileStore,
    detect_language,
)

__all__ = [
    "DirectoryFileStore",
    "FileRecord",
    "FileStore",
    "InMemoryFileStore",
    "detect_language",
]
