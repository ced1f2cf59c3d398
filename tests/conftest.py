"""Shared fixtures: fake timers/watch handles and real git repositories."""

from pathlib import Path

import pytest

from helpers import GIT_AVAILABLE, FakeTimers, FakeWatchFactory, commit_all, git


@pytest.fixture
def fake_timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def fake_watch_factory() -> FakeWatchFactory:
    return FakeWatchFactory()


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A git repository on branch main with one committed file."""
    if not GIT_AVAILABLE:
        pytest.skip("git executable not available")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "a.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")
    commit_all(repo, "initial commit", "2024-01-01T10:00:00+00:00")
    return repo
