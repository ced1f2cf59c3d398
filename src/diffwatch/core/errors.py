"""Exception hierarchy for git-facing operations."""

from typing import Sequence


class DiffwatchError(Exception):
    """Base class for all diffwatch errors."""
    pass


class GitNotFoundError(DiffwatchError):
    """Raised when the git executable cannot be located or launched."""
    pass


class GitCommandError(DiffwatchError):
    """Raised when a git invocation exits non-zero, times out or overflows its buffer.

    Attributes:
        args_list: Arguments passed to git (without the executable)
        returncode: Process exit status, or None for timeouts/overflow
        stderr: Captured standard error text
    """

    def __init__(
        self,
        args_list: Sequence[str],
        returncode: int | None,
        stderr: str = "",
        message: str | None = None,
    ):
        self.args_list = list(args_list)
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            detail = stderr.strip() or f"exit status {returncode}"
            message = f"git {' '.join(self.args_list)} failed: {detail}"
        super().__init__(message)

    @property
    def is_fatal(self) -> bool:
        """True when git itself reported a fatal/error condition."""
        return "fatal:" in self.stderr or "error:" in self.stderr


class NotARepositoryError(DiffwatchError):
    """Raised by explicit capture calls when the root is not a git working tree."""
    pass


class VcsCommandError(DiffwatchError):
    """Raised when an explicitly requested artifact (commit, history) cannot be retrieved."""
    pass
