"""Value objects shared by the parser, engine and watcher."""

from .diff import ChangeKind, ChangeStats, CommitRecord, DiffResult, FileChange
from .watch import CheckOutcome, WatcherStats

__all__ = [
    "ChangeKind",
    "ChangeStats",
    "CheckOutcome",
    "CommitRecord",
    "DiffResult",
    "FileChange",
    "WatcherStats",
]
