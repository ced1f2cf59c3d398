"""Tests for worktree_watcher module.

Test categories:
1. Ignore rules and backoff arithmetic
2. WorktreeChangeChecker against a scripted git gateway
3. WorktreeWatcher state machine with fake timers and watch handles
4. watchdog plumbing with a real observer
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirCreatedEvent, DirDeletedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from helpers import FakeChecker, FakeGitGateway, FakeTimers, FakeWatchFactory
from diffwatch.config import Settings, WatcherConfig
from diffwatch.core.worktree_watcher import (
    ObserverHandle,
    WorktreeChangeChecker,
    WorktreeWatcher,
    _is_network_path,
    _WorktreeEventHandler,
    backoff_delay,
    is_ignored_path,
    start_observer,
)
from diffwatch.models.watch import CheckOutcome

CHANGED = CheckOutcome.CHANGED
UNCHANGED = CheckOutcome.UNCHANGED
INDETERMINATE = CheckOutcome.INDETERMINATE


def make_watcher(checker, timers: FakeTimers, factory: FakeWatchFactory, settings: Settings | None = None):
    return WorktreeWatcher(
        settings=settings or Settings(),
        checker=checker,
        watch_factory=factory,
        timer_factory=timers,
    )


class TestIgnoreRules:
    """Test paths that can never affect git status."""

    @pytest.mark.parametrize("path", [
        ".git/index",
        ".git",
        "sub/.git/HEAD",
        "node_modules/pkg/index.js",
        "web/node_modules/pkg/index.js",
        ".DS_Store",
        "docs/.DS_Store",
        "thumbs.db",
        "src/main.py.swp",
        "src/main.py.swo",
        "notes.txt~",
        "src/.#main.py",
        "src/#main.py#",
        "./.git/config",
        ".git\\objects\\ab",
    ])
    def test_ignored(self, path):
        assert is_ignored_path(path)

    @pytest.mark.parametrize("path", [
        "src/main.py",
        "README.md",
        ".gitignore",
        "git/notes.txt",
        "my_node_modules.txt",
        "#",
        "docs/readme#",
    ])
    def test_not_ignored(self, path):
        assert not is_ignored_path(path)

    def test_custom_patterns(self):
        assert is_ignored_path("build/out.o", ["build/"])
        assert not is_ignored_path(".git/index", ["build/"])


class TestBackoffDelay:
    """Test exponential backoff arithmetic."""

    def test_doubles_per_streak(self):
        assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(6) == 30.0
        assert backoff_delay(50) == 30.0

    def test_custom_base_and_cap(self):
        assert backoff_delay(3, base=0.5, maximum=1.5) == 1.5

    def test_zero_streak_is_base(self):
        assert backoff_delay(0) == 1.0


class TestChangeChecker:
    """Test the plumbing-command check against scripted git."""

    def _gateway(self, **returncodes) -> FakeGitGateway:
        return FakeGitGateway(
            {
                ("rev-parse", "--is-inside-work-tree"): "true\n",
                ("rev-parse", "--git-dir"): ".git\n",
                ("update-index", "-q", "--refresh", "--ignore-submodules"): "",
                ("ls-files", "--others", "--exclude-standard"): "",
            },
            {
                ("diff-files", "--quiet", "--ignore-submodules"): returncodes.get("files", 0),
                ("diff-index", "--cached", "--quiet", "HEAD", "--ignore-submodules"): returncodes.get("index", 0),
            },
        )

    def test_clean_tree_unchanged(self, tmp_path):
        assert WorktreeChangeChecker(self._gateway()).check(str(tmp_path)) is UNCHANGED

    def test_unstaged_change(self, tmp_path):
        assert WorktreeChangeChecker(self._gateway(files=1)).check(str(tmp_path)) is CHANGED

    def test_staged_change(self, tmp_path):
        assert WorktreeChangeChecker(self._gateway(index=1)).check(str(tmp_path)) is CHANGED

    def test_unexpected_exit_code(self, tmp_path):
        assert WorktreeChangeChecker(self._gateway(files=128)).check(str(tmp_path)) is INDETERMINATE

    def test_untracked_file(self, tmp_path):
        gateway = self._gateway()
        gateway.responses[("ls-files", "--others", "--exclude-standard")] = "new.txt\n"
        assert WorktreeChangeChecker(gateway).check(str(tmp_path)) is CHANGED

    def test_not_inside_work_tree(self, tmp_path):
        gateway = self._gateway()
        gateway.responses[("rev-parse", "--is-inside-work-tree")] = "false\n"
        assert WorktreeChangeChecker(gateway).check(str(tmp_path)) is INDETERMINATE

    def test_git_failure(self, tmp_path):
        assert WorktreeChangeChecker(FakeGitGateway()).check(str(tmp_path)) is INDETERMINATE

    def test_index_lock_defers(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "index.lock").write_text("", encoding="utf-8")
        gateway = self._gateway(files=1)

        assert WorktreeChangeChecker(gateway).check(str(tmp_path)) is INDETERMINATE
        assert gateway.count("update-index", "-q", "--refresh", "--ignore-submodules") == 0

    def test_absolute_git_dir(self, tmp_path):
        git_dir = tmp_path / "elsewhere.git"
        git_dir.mkdir()
        (git_dir / "index.lock").write_text("", encoding="utf-8")
        gateway = self._gateway()
        gateway.responses[("rev-parse", "--git-dir")] = f"{git_dir}\n"

        assert WorktreeChangeChecker(gateway).check(str(tmp_path)) is INDETERMINATE

    def test_refresh_failure(self, tmp_path):
        gateway = self._gateway()
        del gateway.responses[("update-index", "-q", "--refresh", "--ignore-submodules")]
        assert WorktreeChangeChecker(gateway).check(str(tmp_path)) is INDETERMINATE


class TestWatcherLifecycle:
    """Test session registration and teardown."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)

        assert watcher.start_watching("s1", tmp_path) is True
        assert watcher.is_watching("s1")
        assert watcher.get_session("s1").root_path == str(tmp_path)

        assert watcher.stop_watching("s1") is True
        assert not watcher.is_watching("s1")
        assert fake_watch_factory.open_count == 0
        assert watcher.stop_watching("s1") is False

    @pytest.mark.asyncio
    async def test_restart_replaces_previous_watch(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)

        watcher.start_watching("s1", tmp_path)
        watcher.start_watching("s1", tmp_path)

        assert len(fake_watch_factory.handles) == 2
        assert fake_watch_factory.open_count == 1
        assert watcher.get_stats().total_watched == 1

    @pytest.mark.asyncio
    async def test_stop_all(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)
        watcher.start_watching("s2", tmp_path)
        watcher.handle_event("s1", "a.py")

        watcher.stop_all()
        watcher.stop_all()

        assert fake_watch_factory.open_count == 0
        assert fake_timers.active() == []
        assert watcher.get_stats().total_watched == 0

    @pytest.mark.asyncio
    async def test_disabled_watcher(self, tmp_path, fake_timers, fake_watch_factory):
        settings = Settings(watcher=WatcherConfig(enabled=False))
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory, settings)

        assert watcher.start_watching("s1", tmp_path) is False
        assert fake_watch_factory.handles == []

    @pytest.mark.asyncio
    async def test_watch_factory_failure(self, tmp_path, fake_timers):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, FakeWatchFactory(fail=True))

        assert watcher.start_watching("s1", tmp_path) is False
        assert not watcher.is_watching("s1")

    @pytest.mark.asyncio
    async def test_stats_count_pending_sessions(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)
        watcher.start_watching("s2", tmp_path)

        watcher.handle_event("s2", "src/app.py")

        stats = watcher.get_stats()
        assert stats.total_watched == 2
        assert stats.sessions_needing_refresh == 1


class TestDebounce:
    """Test event coalescing into checks."""

    @pytest.mark.asyncio
    async def test_burst_produces_single_check(self, tmp_path, fake_timers, fake_watch_factory):
        checker = FakeChecker([UNCHANGED])
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)

        for i in range(5):
            watcher.handle_event("s1", f"src/file{i}.py")

        assert fake_timers.delays == [1.5] * 5
        assert len(fake_timers.active()) == 1

        fake_timers.fire_latest()
        await watcher.wait_for_checks()

        assert checker.calls == 1
        assert checker.roots == [str(tmp_path)]
        assert fake_timers.active() == []

    @pytest.mark.asyncio
    async def test_ignored_events_do_not_arm(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)

        for path in (".git/index", "node_modules/x.js", "a.swp", str(tmp_path / ".git" / "HEAD")):
            watcher.handle_event("s1", path)

        assert fake_timers.timers == []
        assert watcher.get_session("s1").pending_refresh is False

    @pytest.mark.asyncio
    async def test_event_updates_last_activity(self, tmp_path, fake_timers, fake_watch_factory):
        ticks = iter([10.0, 25.0])
        watcher = WorktreeWatcher(
            settings=Settings(),
            checker=FakeChecker([UNCHANGED]),
            watch_factory=fake_watch_factory,
            timer_factory=fake_timers,
            clock=lambda: next(ticks),
        )
        watcher.start_watching("s1", tmp_path)
        assert watcher.get_session("s1").last_activity == 10.0

        watcher.handle_event("s1", "a.py")

        assert watcher.get_session("s1").last_activity == 25.0

    @pytest.mark.asyncio
    async def test_event_for_unknown_session_ignored(self, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.handle_event("missing", "a.py")
        assert fake_timers.timers == []

    @pytest.mark.asyncio
    async def test_events_from_observer_thread(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)
        handle = fake_watch_factory.handles[0]

        thread = threading.Thread(target=handle.on_event, args=("src/app.py",))
        thread.start()
        thread.join()
        await asyncio.sleep(0.05)

        assert len(fake_timers.active()) == 1
        assert watcher.get_session("s1").pending_refresh is True

    @pytest.mark.asyncio
    async def test_events_after_stop_ignored(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([UNCHANGED]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)
        handle = fake_watch_factory.handles[0]
        watcher.stop_watching("s1")

        handle.on_event("src/app.py")
        await asyncio.sleep(0.05)

        assert fake_timers.timers == []


class TestCheckOutcomes:
    """Test how check results drive notifications and retries."""

    @pytest.mark.asyncio
    async def test_emits_only_on_change(self, tmp_path, fake_timers, fake_watch_factory):
        checker = FakeChecker([UNCHANGED, CHANGED])
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        notified: list[str] = []
        watcher.subscribe(notified.append)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()
        assert notified == []

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()
        assert notified == ["s1"]

    @pytest.mark.asyncio
    async def test_backoff_sequence(self, tmp_path, fake_timers, fake_watch_factory):
        checker = FakeChecker([INDETERMINATE, INDETERMINATE, INDETERMINATE, CHANGED])
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        notified: list[str] = []
        watcher.subscribe(notified.append)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        for _ in range(4):
            fake_timers.fire_latest()
            await watcher.wait_for_checks()

        assert fake_timers.delays == [1.5, 1.0, 2.0, 4.0]
        assert checker.calls == 4
        assert notified == ["s1"]
        assert watcher.get_session("s1").error_streak == 0
        assert fake_timers.active() == []

    @pytest.mark.asyncio
    async def test_backoff_keeps_pending(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([INDETERMINATE]), fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()

        session = watcher.get_session("s1")
        assert session.pending_refresh is True
        assert session.error_streak == 1
        assert watcher.get_stats().sessions_needing_refresh == 1

    @pytest.mark.asyncio
    async def test_checker_crash_treated_as_indeterminate(self, tmp_path, fake_timers, fake_watch_factory):
        checker = MagicMock()
        checker.check.side_effect = RuntimeError("boom")
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()

        assert watcher.get_session("s1").error_streak == 1
        assert fake_timers.delays == [1.5, 1.0]

    @pytest.mark.asyncio
    async def test_event_during_check_rearms_debounce(self, tmp_path, fake_timers, fake_watch_factory):
        checker = FakeChecker([UNCHANGED])
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        assert watcher.get_session("s1").checking is True

        # Arrives while the check is in flight: no second concurrent check
        watcher.handle_event("s1", "b.py")
        assert fake_timers.active() == []

        await watcher.wait_for_checks()

        assert checker.calls == 1
        assert [t.delay for t in fake_timers.active()] == [1.5]

        fake_timers.fire_latest()
        await watcher.wait_for_checks()
        assert checker.calls == 2

    @pytest.mark.asyncio
    async def test_stop_during_check_discards_result(self, tmp_path, fake_timers, fake_watch_factory):
        gate = threading.Event()
        checker = FakeChecker([CHANGED], gate=gate)
        watcher = make_watcher(checker, fake_timers, fake_watch_factory)
        notified: list[str] = []
        watcher.subscribe(notified.append)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await asyncio.sleep(0)
        watcher.stop_watching("s1")
        gate.set()
        await watcher.wait_for_checks()

        assert checker.calls == 1
        assert notified == []
        assert fake_timers.active() == []

    @pytest.mark.asyncio
    async def test_restart_during_check_discards_old_result(self, tmp_path, fake_timers, fake_watch_factory):
        gate = threading.Event()
        watcher = make_watcher(FakeChecker([CHANGED], gate=gate), fake_timers, fake_watch_factory)
        notified: list[str] = []
        watcher.subscribe(notified.append)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        watcher.start_watching("s1", tmp_path)
        gate.set()
        await watcher.wait_for_checks()

        assert notified == []
        assert watcher.get_session("s1").checking is False


class TestSubscribers:
    """Test the needs-refresh observer registration."""

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([CHANGED]), fake_timers, fake_watch_factory)
        received: list[str] = []

        def broken(session_id):
            raise ValueError("subscriber bug")

        watcher.subscribe(broken)
        watcher.subscribe(received.append)
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()

        assert received == ["s1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, tmp_path, fake_timers, fake_watch_factory):
        watcher = make_watcher(FakeChecker([CHANGED]), fake_timers, fake_watch_factory)
        received: list[str] = []
        unsubscribe = watcher.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        watcher.start_watching("s1", tmp_path)

        watcher.handle_event("s1", "a.py")
        fake_timers.fire_latest()
        await watcher.wait_for_checks()

        assert received == []


class TestWatchdogPlumbing:
    """Test the watchdog event handler and observer lifecycle."""

    def test_network_paths(self):
        assert _is_network_path(r"\\server\share\repo")
        assert _is_network_path("/mnt/share/repo")
        assert _is_network_path("/net/share/repo")
        assert not _is_network_path("/home/user/repo")

    def test_handler_forwards_relative_paths(self):
        received: list[str] = []
        handler = _WorktreeEventHandler("/repo", received.append)

        handler.on_created(FileCreatedEvent("/repo/src/new.py"))
        handler.on_modified(FileModifiedEvent("/repo/README.md"))
        handler.on_created(DirCreatedEvent("/repo/build"))
        handler.on_deleted(DirDeletedEvent("/repo/old"))
        handler.on_moved(FileMovedEvent("/repo/a.txt", "/repo/b.txt"))

        assert received == ["src/new.py", "README.md", "old", "a.txt", "b.txt"]

    def test_observer_handle_close_idempotent(self):
        observer = MagicMock()
        handle = ObserverHandle(observer, "/repo")

        handle.close()
        handle.close()

        assert handle.closed
        observer.stop.assert_called_once()
        observer.join.assert_called_once_with(timeout=2.0)

    @pytest.mark.parametrize("force_polling", [False, True])
    def test_real_observer_reports_changes(self, tmp_path, force_polling):
        seen = threading.Event()
        received: list[str] = []

        def on_event(path):
            received.append(path)
            if path == "hello.txt":
                seen.set()

        handle = start_observer(str(tmp_path), on_event, force_polling=force_polling)
        try:
            time.sleep(0.2)
            (tmp_path / "hello.txt").write_text("hi", encoding="utf-8")
            assert seen.wait(timeout=10), f"no event for hello.txt, got {received}"
        finally:
            handle.close()
        assert handle.closed
