"""Core functionality package."""

from .diff_engine import DiffEngine, combine_diff_results, parse_numstat_lines, parse_stat_summary
from .diff_parser import normalize_diff_path, parse_file_header, parse_unified_diff, split_file_sections
from .errors import (
    DiffwatchError,
    GitCommandError,
    GitNotFoundError,
    NotARepositoryError,
    VcsCommandError,
)
from .git_gateway import GitGateway, SubprocessGitGateway
from .worktree_watcher import (
    WatchSession,
    WorktreeChangeChecker,
    WorktreeWatcher,
    backoff_delay,
    is_ignored_path,
    start_observer,
)

__all__ = [
    "DiffEngine",
    "DiffwatchError",
    "GitCommandError",
    "GitGateway",
    "GitNotFoundError",
    "NotARepositoryError",
    "SubprocessGitGateway",
    "VcsCommandError",
    "WatchSession",
    "WorktreeChangeChecker",
    "WorktreeWatcher",
    "backoff_delay",
    "combine_diff_results",
    "is_ignored_path",
    "normalize_diff_path",
    "parse_file_header",
    "parse_numstat_lines",
    "parse_stat_summary",
    "parse_unified_diff",
    "split_file_sections",
    "start_observer",
]
