"""Working-tree watcher that turns filesystem noise into needs-refresh signals.

This module implements WorktreeWatcher, which watches git working trees and
tells subscribers when a session's git status actually changed.

Per-session state machine:
    Idle -> Debouncing -> Checking -> (Idle | Backoff -> Checking)

Key features:
- Debounce: trailing-edge, 1.5s by default; every relevant event re-arms the timer
- Ignore rules: VCS internals, dependency dirs, OS metadata and editor temp files
- Cheap check: git plumbing commands answer "changed / unchanged / indeterminate"
- Backoff: indeterminate checks retry after min(base * 2**(streak-1), max)
- One timer slot per session shared by debounce and backoff

Threading:
    watchdog delivers events on its observer thread; they are marshalled onto
    the asyncio loop with call_soon_threadsafe. Git checks run in worker
    threads via asyncio.to_thread and report back on the loop, so a session's
    state is only ever mutated on the loop thread.
"""

import asyncio
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from ..config import DEFAULT_IGNORE_PATTERNS, Settings, get_settings
from ..models.watch import CheckOutcome, WatcherStats
from .errors import DiffwatchError
from .git_gateway import GitGateway, SubprocessGitGateway


class WatchHandle(Protocol):
    """OS watch resource owned by one session."""

    def close(self) -> None:
        ...


class TimerHandle(Protocol):
    """Cancellable scheduled callback."""

    def cancel(self) -> None:
        ...


WatchFactory = Callable[[str, Callable[[str], None]], WatchHandle]
TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
RefreshCallback = Callable[[str], None]


# ----------------------------------------------------------------------
# Ignore rules
# ----------------------------------------------------------------------


def is_ignored_path(path: str, patterns: list[str] | None = None) -> bool:
    """Check whether a root-relative path can never affect git status.

    Pattern types:
        "dir/"   directory prefix or "/dir/" anywhere in the path
        "*.ext"  suffix match
        "*~"     backup files (suffix "~")
        ".#*"    editor lock files (basename prefix)
        "#*#"    editor autosave files (basename wrapped in "#")
        other    exact basename match
    """
    if patterns is None:
        patterns = DEFAULT_IGNORE_PATTERNS

    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    basename = normalized.rstrip("/").split("/")[-1]

    for pattern in patterns:
        if pattern.endswith("/"):
            if (
                normalized.startswith(pattern)
                or f"/{pattern}" in normalized
                or normalized == pattern[:-1]
                or normalized.endswith(f"/{pattern[:-1]}")
            ):
                return True
        elif pattern.startswith("*."):
            if normalized.endswith(pattern[1:]):
                return True
        elif pattern == "*~":
            if normalized.endswith("~"):
                return True
        elif pattern.startswith(".#"):
            if basename.startswith(".#"):
                return True
        elif pattern.startswith("#") and pattern.endswith("#"):
            if len(basename) >= 2 and basename.startswith("#") and basename.endswith("#"):
                return True
        elif basename == pattern:
            return True
    return False


def backoff_delay(error_streak: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """Delay before the next check after ``error_streak`` consecutive indeterminate checks."""
    if error_streak < 1:
        return base
    return min(base * (2 ** (error_streak - 1)), maximum)


# ----------------------------------------------------------------------
# Check algorithm
# ----------------------------------------------------------------------


class WorktreeChangeChecker:
    """Answers "does this working tree need a status refresh?" with plumbing commands.

    Any step that cannot give a definitive answer short-circuits to
    INDETERMINATE; the watcher retries those with backoff.
    """

    def __init__(self, gateway: GitGateway):
        self._gateway = gateway

    def check(self, root: str) -> CheckOutcome:
        try:
            return self._check(root)
        except DiffwatchError as e:
            logger.debug(f"Transient error while checking {root}: {e}")
            return CheckOutcome.INDETERMINATE

    def _check(self, root: str) -> CheckOutcome:
        inside = self._gateway.run(["rev-parse", "--is-inside-work-tree"], root, silent=True).strip()
        if inside != "true":
            return CheckOutcome.INDETERMINATE

        # Another git operation holds the index; do not race it
        git_dir_raw = self._gateway.run(["rev-parse", "--git-dir"], root, silent=True).strip()
        git_dir = Path(git_dir_raw) if os.path.isabs(git_dir_raw) else Path(root) / git_dir_raw
        if (git_dir / "index.lock").exists():
            logger.debug(f"index.lock present in {git_dir}, deferring check")
            return CheckOutcome.INDETERMINATE

        self._gateway.run(["update-index", "-q", "--refresh", "--ignore-submodules"], root, silent=True)

        for args in (
            ["diff-files", "--quiet", "--ignore-submodules"],
            ["diff-index", "--cached", "--quiet", "HEAD", "--ignore-submodules"],
        ):
            code = self._gateway.returncode(args, root)
            if code == 1:
                return CheckOutcome.CHANGED
            if code != 0:
                logger.debug(f"git {args[0]} exited {code} in {root}")
                return CheckOutcome.INDETERMINATE

        untracked = self._gateway.run(["ls-files", "--others", "--exclude-standard"], root, silent=True)
        if untracked.strip():
            return CheckOutcome.CHANGED
        return CheckOutcome.UNCHANGED


# ----------------------------------------------------------------------
# watchdog plumbing
# ----------------------------------------------------------------------


def _is_network_path(path: str) -> bool:
    """Detect if path is on a network filesystem (UNC, /mnt/, /net/)."""
    if path.startswith('\\\\'):
        return True
    if path.startswith('/mnt/') or path.startswith('/net/'):
        return True
    return False


class _WorktreeEventHandler(FileSystemEventHandler):
    """Forwards file events as root-relative paths."""

    def __init__(self, root: str, on_event: Callable[[str], None]):
        super().__init__()
        self._root = root
        self._on_event = on_event

    def _forward(self, path: Any) -> None:
        path = os.fsdecode(path)
        try:
            relative = os.path.relpath(path, self._root)
        except ValueError:
            # Different drive on Windows
            relative = path
        self._on_event(relative.replace(os.sep, "/"))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path)
        dest = getattr(event, 'dest_path', None)
        if dest:
            self._forward(dest)


class ObserverHandle:
    """WatchHandle wrapping a started watchdog observer."""

    def __init__(self, observer: Any, root: str):
        self._observer = observer
        self._root = root
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the observer thread. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        try:
            self._observer.stop()
            self._observer.join(timeout=2.0)
        except Exception as e:
            logger.error(f"Error stopping observer for {self._root}: {e}")


def start_observer(root: str, on_event: Callable[[str], None], force_polling: bool = False) -> ObserverHandle:
    """Start a recursive watchdog observer on ``root``.

    Selection logic:
        1. force_polling or network path -> PollingObserver
        2. Native Observer, falling back to PollingObserver when inotify is exhausted
    """
    handler = _WorktreeEventHandler(root, on_event)

    if force_polling or _is_network_path(root):
        logger.warning(f"Using PollingObserver for {root}")
        observer = PollingObserver(timeout=2)
        observer.schedule(handler, root, recursive=True)
        observer.start()
        return ObserverHandle(observer, root)

    observer = Observer()
    try:
        observer.schedule(handler, root, recursive=True)
        observer.start()
    except OSError as e:
        if 'inotify' in str(e).lower() or getattr(e, 'errno', None) == 28:
            logger.warning(f"inotify limit reached, falling back to PollingObserver: {e}")
            observer = PollingObserver(timeout=2)
            observer.schedule(handler, root, recursive=True)
            observer.start()
        else:
            raise
    return ObserverHandle(observer, root)


# ----------------------------------------------------------------------
# Session registry and state machine
# ----------------------------------------------------------------------


@dataclass(eq=False)
class WatchSession:
    """Per-session watch state. Owned exclusively by one WorktreeWatcher."""

    session_id: str
    root_path: str
    last_activity: float
    pending_refresh: bool = False
    watch_handle: WatchHandle | None = None
    error_streak: int = 0
    checking: bool = False
    timer: TimerHandle | None = field(default=None, repr=False)
    check_task: asyncio.Task | None = field(default=None, repr=False)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class WorktreeWatcher:
    """Watches working trees and emits needs-refresh per session.

    Lifecycle:
        1. Create WorktreeWatcher inside a running event loop (or pass loop=)
        2. subscribe() a callback receiving session ids
        3. start_watching()/stop_watching() per session
        4. stop_all() on shutdown

    Lifecycle calls and handle_event() must run on the loop thread; watch
    handles may report events from any thread.
    """

    def __init__(
        self,
        gateway: GitGateway | None = None,
        *,
        settings: Settings | None = None,
        checker: WorktreeChangeChecker | None = None,
        watch_factory: WatchFactory | None = None,
        timer_factory: TimerFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        """Initialize the watcher.

        Args:
            gateway: Git gateway for checks (default: SubprocessGitGateway from settings)
            settings: Settings instance (default: get_settings())
            checker: Check implementation (default: WorktreeChangeChecker(gateway))
            watch_factory: Creates a WatchHandle for (root, on_event) (default: watchdog)
            timer_factory: Schedules (delay, callback) (default: loop.call_later)
            clock: Monotonic clock used for last_activity
            loop: Event loop (default: the running loop at first use)
        """
        self._settings = settings or get_settings()
        config = self._settings.watcher
        self._enabled = config.enabled
        self._debounce_seconds = config.debounce_seconds
        self._backoff_base = config.backoff_base_seconds
        self._backoff_max = config.backoff_max_seconds
        self._ignore_patterns = list(config.ignore_patterns)
        self._force_polling = config.force_polling

        if checker is None:
            checker = WorktreeChangeChecker(gateway or SubprocessGitGateway.from_settings(self._settings))
        self._checker = checker
        self._watch_factory = watch_factory or self._default_watch_factory
        self._timer_factory = timer_factory or self._default_timer_factory
        self._clock = clock
        self._loop = loop

        self._sessions: dict[str, WatchSession] = {}
        self._lock = threading.Lock()
        self._subscribers: list[RefreshCallback] = []
        self._check_tasks: set[asyncio.Task] = set()

    # -- injection defaults ------------------------------------------------

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _default_watch_factory(self, root: str, on_event: Callable[[str], None]) -> WatchHandle:
        return start_observer(root, on_event, force_polling=self._force_polling)

    def _default_timer_factory(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(delay, callback)

    # -- subscription --------------------------------------------------------

    def subscribe(self, callback: RefreshCallback) -> Callable[[], None]:
        """Register a needs-refresh callback.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit_needs_refresh(self, session_id: str) -> None:
        for callback in list(self._subscribers):
            try:
                callback(session_id)
            except Exception:
                logger.exception(f"needs-refresh subscriber failed for session {session_id}")

    # -- lifecycle -------------------------------------------------------------

    def start_watching(self, session_id: str, root_path: str | Path) -> bool:
        """Start watching a session's working tree, replacing any previous watch.

        Returns:
            True if the watch was started, False if disabled or the OS watch failed
        """
        if not self._enabled:
            logger.info("Worktree watcher is disabled, skipping start")
            return False

        self.stop_watching(session_id)

        root = os.path.abspath(str(root_path))
        logger.info(f"Starting watch for session {session_id} at {root}")

        loop = self._get_loop()
        session = WatchSession(session_id=session_id, root_path=root, last_activity=self._clock())

        def dispatch(path: str) -> None:
            try:
                loop.call_soon_threadsafe(self._on_event, session, path)
            except RuntimeError:
                # Loop closed during shutdown
                pass

        try:
            session.watch_handle = self._watch_factory(root, dispatch)
        except Exception as e:
            logger.error(f"Failed to start watching session {session_id}: {e}")
            return False

        with self._lock:
            self._sessions[session_id] = session
        return True

    def stop_watching(self, session_id: str) -> bool:
        """Stop watching a session: close its OS handle and cancel its timer.

        Returns:
            True if a session was removed
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._teardown(session)
        logger.info(f"Stopped watching session {session_id}")
        return True

    def stop_all(self) -> None:
        """Stop every watched session. Safe to call multiple times."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._teardown(session)
        if sessions:
            logger.info(f"Stopped watching {len(sessions)} sessions")

    def _teardown(self, session: WatchSession) -> None:
        session.cancel_timer()
        if session.watch_handle is not None:
            try:
                session.watch_handle.close()
            except Exception as e:
                logger.error(f"Error closing watch for session {session.session_id}: {e}")
            session.watch_handle = None

    def get_stats(self) -> WatcherStats:
        """Return the number of watched sessions and how many await a refresh check."""
        with self._lock:
            sessions = list(self._sessions.values())
        return WatcherStats(
            total_watched=len(sessions),
            sessions_needing_refresh=sum(1 for s in sessions if s.pending_refresh),
        )

    def get_session(self, session_id: str) -> WatchSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def is_watching(self, session_id: str) -> bool:
        return self.get_session(session_id) is not None

    async def wait_for_checks(self) -> None:
        """Wait until every in-flight check has finished."""
        while self._check_tasks:
            await asyncio.gather(*list(self._check_tasks), return_exceptions=True)

    # -- events and timers -------------------------------------------------

    def _is_current(self, session: WatchSession) -> bool:
        with self._lock:
            return self._sessions.get(session.session_id) is session

    def handle_event(self, session_id: str, path: str) -> None:
        """Feed a filesystem event for a session (loop thread only)."""
        session = self.get_session(session_id)
        if session is not None:
            self._on_event(session, path)

    def _on_event(self, session: WatchSession, path: str) -> None:
        if not self._is_current(session):
            return

        if os.path.isabs(path):
            try:
                path = os.path.relpath(path, session.root_path)
            except ValueError:
                pass
        path = path.replace("\\", "/")
        if is_ignored_path(path, self._ignore_patterns):
            return

        session.last_activity = self._clock()
        session.pending_refresh = True

        # Mid-check events are picked up when the check resolves
        if session.checking:
            return
        self._arm(session, self._debounce_seconds)

    def _arm(self, session: WatchSession, delay: float) -> None:
        session.cancel_timer()
        session.timer = self._timer_factory(delay, lambda: self._on_timer(session))

    def _on_timer(self, session: WatchSession) -> None:
        session.timer = None
        if not self._is_current(session):
            return
        if session.checking or not session.pending_refresh:
            return

        session.pending_refresh = False
        session.checking = True
        task = self._get_loop().create_task(self._run_check(session))
        session.check_task = task
        self._check_tasks.add(task)
        task.add_done_callback(self._check_tasks.discard)

    async def _run_check(self, session: WatchSession) -> None:
        try:
            outcome = await asyncio.to_thread(self._checker.check, session.root_path)
        except Exception:
            logger.exception(f"Refresh check crashed for session {session.session_id}")
            outcome = CheckOutcome.INDETERMINATE
        finally:
            session.checking = False
            session.check_task = None

        if not self._is_current(session):
            logger.debug(f"Discarding check result for stopped session {session.session_id}")
            return
        self._apply_outcome(session, outcome)

    def _apply_outcome(self, session: WatchSession, outcome: CheckOutcome) -> None:
        if outcome is CheckOutcome.INDETERMINATE:
            session.error_streak += 1
            delay = backoff_delay(session.error_streak, self._backoff_base, self._backoff_max)
            session.pending_refresh = True
            logger.warning(
                f"Refresh check for session {session.session_id} was inconclusive; "
                f"retrying in {delay:.1f}s (attempt {session.error_streak})"
            )
            self._arm(session, delay)
            return

        session.error_streak = 0
        if outcome is CheckOutcome.CHANGED:
            logger.info(f"Session {session.session_id} needs refresh")
            self._emit_needs_refresh(session.session_id)
        else:
            logger.debug(f"Session {session.session_id} no refresh needed")

        if session.pending_refresh:
            self._arm(session, self._debounce_seconds)
