"""Test doubles and git helpers shared across test modules."""

import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from diffwatch.core.errors import GitCommandError
from diffwatch.models.watch import CheckOutcome

GIT_AVAILABLE = shutil.which("git") is not None

requires_git = pytest.mark.skipif(not GIT_AVAILABLE, reason="git executable not available")


class FakeGitGateway:
    """GitGateway double answering from scripted responses keyed by argument tuples.

    Values may be a string (stdout), an exception instance (raised) or a
    callable returning either.
    """

    def __init__(
        self,
        responses: dict[tuple[str, ...], Any] | None = None,
        returncodes: dict[tuple[str, ...], int] | None = None,
    ):
        self.responses = dict(responses or {})
        self.returncodes = dict(returncodes or {})
        self.calls: list[tuple[str, ...]] = []
        self._lock = threading.Lock()

    def _record(self, args: Sequence[str]) -> tuple[str, ...]:
        key = tuple(args)
        with self._lock:
            self.calls.append(key)
        return key

    def run(self, args, cwd, *, encoding="utf-8", max_buffer_bytes=None, silent=False, timeout=None) -> str:
        key = self._record(args)
        if key not in self.responses:
            raise GitCommandError(args, 128, f"fatal: unscripted command {' '.join(args)}")
        value = self.responses[key]
        if callable(value):
            value = value()
        if isinstance(value, BaseException):
            raise value
        return value

    def returncode(self, args, cwd, *, timeout=None) -> int:
        key = self._record(args)
        value = self.returncodes.get(key, 0)
        if isinstance(value, BaseException):
            raise value
        return value

    def count(self, *args: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call == tuple(args))


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled, "fired a cancelled timer"
        self.fired = True
        self.callback()


class FakeTimers:
    """Timer factory recording every scheduled delay; tests fire timers by hand."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> list[float]:
        return [t.delay for t in self.timers]

    def active(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_latest(self) -> None:
        active = self.active()
        assert active, "no armed timer"
        active[-1].fire()


class FakeWatchHandle:
    def __init__(self, root: str, on_event: Callable[[str], None]):
        self.root = root
        self.on_event = on_event
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeWatchFactory:
    """Watch factory counting open and closed handles."""

    def __init__(self, fail: bool = False):
        self.handles: list[FakeWatchHandle] = []
        self.fail = fail

    def __call__(self, root: str, on_event: Callable[[str], None]) -> FakeWatchHandle:
        if self.fail:
            raise OSError("watch limit reached")
        handle = FakeWatchHandle(root, on_event)
        self.handles.append(handle)
        return handle

    @property
    def open_count(self) -> int:
        return sum(1 for h in self.handles if not h.closed)


class FakeChecker:
    """Checker returning scripted outcomes; the last outcome repeats."""

    def __init__(self, outcomes: list[CheckOutcome], gate: threading.Event | None = None):
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = 0
        self.roots: list[str] = []

    def check(self, root: str) -> CheckOutcome:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.calls += 1
        self.roots.append(root)
        index = min(self.calls - 1, len(self.outcomes) - 1)
        return self.outcomes[index]



def git(repo: Path, *args: str, env: dict[str, str] | None = None) -> str:
    """Run git in a test repository and return stdout."""
    full_env = dict(os.environ)
    full_env.update({
        "GIT_CONFIG_NOSYSTEM": "1",
        "HOME": str(repo.parent),
        "LC_ALL": "C",
    })
    if env:
        full_env.update(env)
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        env=full_env,
        check=True,
    )
    return result.stdout


def commit_all(repo: Path, message: str, date: str) -> str:
    """Stage everything and commit with a fixed author/committer date."""
    git(repo, "add", "-A")
    git(
        repo,
        "commit",
        "-q",
        "-m",
        message,
        env={"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date},
    )
    return git(repo, "rev-parse", "HEAD").strip()
