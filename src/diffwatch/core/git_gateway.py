"""Git command gateway.

Every git invocation made by the engine and the watcher goes through a
``GitGateway``. The default implementation shells out to the git executable
with an argv list (never through a shell), so paths and revisions need no
quoting.

Two calling conventions exist:
- ``run``/``run_async`` return stdout and raise ``GitCommandError`` on a
  non-zero exit.
- ``returncode`` exposes the exit status for commands whose exit code is the
  answer (``diff-files --quiet`` and friends).
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

import anyio
from loguru import logger

from .errors import GitCommandError, GitNotFoundError

_DEFAULT_TIMEOUT = 10.0
_DEFAULT_MAX_BUFFER = 10 * 1024 * 1024  # 10MB


class GitGateway(Protocol):
    """Capability consumed by DiffEngine and WorktreeChangeChecker."""

    def run(
        self,
        args: Sequence[str],
        cwd: str | Path,
        *,
        encoding: str = "utf-8",
        max_buffer_bytes: int | None = None,
        silent: bool = False,
        timeout: float | None = None,
    ) -> str:
        ...

    def returncode(
        self,
        args: Sequence[str],
        cwd: str | Path,
        *,
        timeout: float | None = None,
    ) -> int:
        ...


def _git_env() -> dict[str, str]:
    """Environment for git children: stable English output, no prompts."""
    env = dict(os.environ)
    env["LC_ALL"] = "C"
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.pop("GIT_DIR", None)
    env.pop("GIT_WORK_TREE", None)
    env.pop("GIT_INDEX_FILE", None)
    return env


class SubprocessGitGateway:
    """GitGateway backed by the git executable."""

    def __init__(
        self,
        executable: str | None = None,
        default_timeout: float = _DEFAULT_TIMEOUT,
        max_buffer_bytes: int = _DEFAULT_MAX_BUFFER,
    ) -> None:
        self._executable = executable
        self._git_path: str | None = None
        self._default_timeout = default_timeout
        self._max_buffer_bytes = max_buffer_bytes

    @classmethod
    def from_settings(cls, settings) -> "SubprocessGitGateway":
        """Build a gateway from the ``git`` settings section."""
        return cls(
            executable=settings.git.executable,
            default_timeout=settings.git.command_timeout,
            max_buffer_bytes=settings.git.max_buffer_bytes,
        )

    @property
    def git_path(self) -> str:
        """Return cached git path, detecting on first access."""
        if self._git_path is None:
            self._git_path = self._detect_git()
        return self._git_path

    def _detect_git(self) -> str:
        if self._executable:
            if os.path.isfile(self._executable):
                return self._executable
            found = shutil.which(self._executable)
            if found:
                return found
            raise GitNotFoundError(f"Configured git executable not found: {self._executable}")

        found = shutil.which("git")
        if found:
            return found
        raise GitNotFoundError("git not found on PATH. Install git or set DIFFWATCH_GIT__EXECUTABLE.")

    def build_args(self, args: Sequence[str]) -> list[str]:
        """Return the full argv: [git_path, *args]."""
        return [self.git_path, *args]

    def _decode(self, data: bytes, encoding: str) -> str:
        return data.decode(encoding, errors="replace")

    def _check_buffer(self, args: Sequence[str], stdout: bytes, max_buffer_bytes: int | None) -> None:
        limit = max_buffer_bytes if max_buffer_bytes is not None else self._max_buffer_bytes
        if len(stdout) > limit:
            raise GitCommandError(
                args,
                None,
                message=f"git {' '.join(args)} produced {len(stdout)} bytes (limit {limit})",
            )

    def run(
        self,
        args: Sequence[str],
        cwd: str | Path,
        *,
        encoding: str = "utf-8",
        max_buffer_bytes: int | None = None,
        silent: bool = False,
        timeout: float | None = None,
    ) -> str:
        """Run git and return stdout.

        Raises:
            GitCommandError: On non-zero exit, timeout or buffer overflow
            GitNotFoundError: If git cannot be launched
        """
        if not silent:
            logger.debug(f"Executing: git {' '.join(args)} in {cwd}")

        try:
            result = subprocess.run(
                self.build_args(args),
                cwd=str(cwd),
                capture_output=True,
                env=_git_env(),
                timeout=timeout or self._default_timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(args, None, message=f"git {' '.join(args)} timed out in {cwd}")
        except FileNotFoundError as e:
            # Either git vanished or cwd does not exist
            if not Path(cwd).is_dir():
                raise GitCommandError(args, None, message=f"Working directory does not exist: {cwd}")
            raise GitNotFoundError(str(e))
        except NotADirectoryError:
            raise GitCommandError(args, None, message=f"Not a directory: {cwd}")

        if result.returncode != 0:
            stderr = self._decode(result.stderr, encoding)
            if not silent:
                logger.debug(f"Failed: git {' '.join(args)} ({result.returncode}): {stderr.strip()}")
            raise GitCommandError(args, result.returncode, stderr)

        self._check_buffer(args, result.stdout, max_buffer_bytes)
        return self._decode(result.stdout, encoding)

    def returncode(
        self,
        args: Sequence[str],
        cwd: str | Path,
        *,
        timeout: float | None = None,
    ) -> int:
        """Run git and return its exit status without raising on non-zero.

        Raises:
            GitCommandError: On timeout or a missing working directory
            GitNotFoundError: If git cannot be launched
        """
        try:
            result = subprocess.run(
                self.build_args(args),
                cwd=str(cwd),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=_git_env(),
                timeout=timeout or self._default_timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(args, None, message=f"git {' '.join(args)} timed out in {cwd}")
        except (FileNotFoundError, NotADirectoryError) as e:
            if not Path(cwd).is_dir():
                raise GitCommandError(args, None, message=f"Working directory does not exist: {cwd}")
            raise GitNotFoundError(str(e))
        return result.returncode

    async def run_async(
        self,
        args: Sequence[str],
        cwd: str | Path,
        *,
        encoding: str = "utf-8",
        max_buffer_bytes: int | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> str:
        """Async variant of ``run`` with a hard timeout.

        Raises:
            GitCommandError: On non-zero exit, timeout or buffer overflow
            GitNotFoundError: If git cannot be launched
        """
        logger.debug(f"Executing async: git {' '.join(args)} in {cwd}")
        try:
            with anyio.fail_after(timeout):
                result = await anyio.run_process(
                    self.build_args(args),
                    cwd=str(cwd),
                    env=_git_env(),
                    check=False,
                )
        except TimeoutError:
            raise GitCommandError(args, None, message=f"git {' '.join(args)} timed out after {timeout}s")
        except FileNotFoundError as e:
            if not Path(cwd).is_dir():
                raise GitCommandError(args, None, message=f"Working directory does not exist: {cwd}")
            raise GitNotFoundError(str(e))

        if result.returncode != 0:
            raise GitCommandError(args, result.returncode, self._decode(result.stderr, encoding))

        self._check_buffer(args, result.stdout, max_buffer_bytes)
        return self._decode(result.stdout, encoding)
