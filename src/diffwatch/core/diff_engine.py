"""Diff capture and aggregation engine.

Builds DiffResult and CommitRecord values by orchestrating git through a
GitGateway and structuring its output with the unified diff parser.

Failure policy:
- Status queries (has_changes, current revision) degrade to a safe
  negative/empty answer when git fails.
- Explicit artifact fetches (a commit's diff, a history list, a capture of a
  path that is not a repository) raise a descriptive DiffwatchError.
- Pure text transforms (parse_stat_summary, combine_diff_results) never raise.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from loguru import logger

from ..config import Settings, get_settings
from ..models.diff import ChangeStats, CommitRecord, DiffResult
from .diff_parser import parse_unified_diff, sum_file_changes
from .errors import DiffwatchError, GitCommandError, NotARepositoryError, VcsCommandError
from .git_gateway import GitGateway, SubprocessGitGateway

# Hash of the empty tree; diff base for repositories without commits
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

_RECORD_SEP = "\x1e"
_FIELD_SEP = "\x1f"
_HISTORY_FORMAT = "--format=%x1e%H%x1f%s%x1f%aI%x1f%an"
_MESSAGE_FORMAT = "--format=%H%x00%B%x00"

_FILES_RE = re.compile(r"(\d+) files? changed")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+) deletions?\(-\)")

_NEEDS_QUOTING = re.compile(r'["\\\x00-\x1f\x7f]')


def parse_stat_summary(raw_stat_output: str) -> ChangeStats:
    """Parse the summary line of ``git diff --stat`` output.

    Example: "3 files changed, 45 insertions(+), 12 deletions(-)" -> (3, 45, 12).
    Missing groups default to 0; empty or unexpected input yields zeros.
    """
    lines = [line for line in (raw_stat_output or "").splitlines() if line.strip()]
    if not lines:
        return ChangeStats()
    summary = lines[-1]

    files = _FILES_RE.search(summary)
    insertions = _INSERTIONS_RE.search(summary)
    deletions = _DELETIONS_RE.search(summary)
    return ChangeStats(
        files_changed=int(files.group(1)) if files else 0,
        additions=int(insertions.group(1)) if insertions else 0,
        deletions=int(deletions.group(1)) if deletions else 0,
    )


def parse_numstat_lines(lines: Iterable[str]) -> ChangeStats:
    """Sum ``--numstat`` lines ("added<TAB>deleted<TAB>path").

    Binary files report "-" columns; they count as changed files with zero lines.
    """
    additions = 0
    deletions = 0
    files = 0
    for line in lines:
        parts = line.strip().split(None, 2)
        if len(parts) < 3:
            continue
        added, deleted = parts[0], parts[1]
        try:
            added_count = 0 if added == "-" else int(added)
            deleted_count = 0 if deleted == "-" else int(deleted)
        except ValueError:
            continue
        additions += added_count
        deletions += deleted_count
        files += 1
    return ChangeStats(additions=additions, deletions=deletions, files_changed=files)


def combine_diff_results(results: Sequence[DiffResult]) -> DiffResult:
    """Merge several diffs into one.

    Raw text is joined with blank lines, additions/deletions are summed and
    files_changed counts the union of changed paths (duplicates counted once).
    The before revision comes from the first result, the after revision from
    the last.
    """
    if not results:
        return DiffResult()

    changed_files = list(dict.fromkeys(path for result in results for path in result.changed_files))
    stats = ChangeStats(
        additions=sum(result.stats.additions for result in results),
        deletions=sum(result.stats.deletions for result in results),
        files_changed=len(changed_files),
    )
    return DiffResult(
        raw_text="\n\n".join(result.raw_text for result in results),
        stats=stats,
        changed_files=changed_files,
        before_revision=results[0].before_revision,
        after_revision=results[-1].after_revision,
    )


def quote_diff_path(path: str) -> str:
    """Quote a path the way git does in headers when it has special characters."""
    if not _NEEDS_QUOTING.search(path):
        return path
    escaped = (
        path.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\t", "\\t")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    escaped = re.sub(r"[\x00-\x1f\x7f]", lambda m: f"\\{ord(m.group()):03o}", escaped)
    return f'"{escaped}"'


def _split_names(output: str) -> list[str]:
    """Split NUL-terminated `-z` name output; paths come back unquoted."""
    return [name.strip("\n") for name in output.split("\0") if name.strip()]


class DiffEngine:
    """Builds diffs and commit histories for git working trees."""

    def __init__(
        self,
        gateway: GitGateway | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            gateway: Git command gateway (default: SubprocessGitGateway from settings)
            settings: Settings instance (default: get_settings())
        """
        self._settings = settings or get_settings()
        self._gateway = gateway or SubprocessGitGateway.from_settings(self._settings)
        self._max_file_bytes = self._settings.diff.max_file_bytes
        self._max_buffer_bytes = self._settings.git.max_buffer_bytes

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def get_current_revision(self, root: str | Path) -> str:
        """Return the full hash of HEAD, or "" when it cannot be resolved."""
        try:
            return self._gateway.run(["rev-parse", "HEAD"], root, silent=True).strip()
        except DiffwatchError:
            logger.warning(f"Could not get current commit hash in {root}")
            return ""

    def has_changes(self, root: str | Path) -> bool:
        """Return True when ``git status --porcelain`` reports anything.

        Any git failure yields False.
        """
        try:
            output = self._gateway.run(["status", "--porcelain"], root, silent=True)
        except DiffwatchError as e:
            logger.warning(f"Could not check git status in {root}: {e}")
            return False
        return bool(output.strip())

    def _ensure_repository(self, root: str | Path) -> None:
        try:
            inside = self._gateway.run(["rev-parse", "--is-inside-work-tree"], root, silent=True).strip()
        except GitCommandError as e:
            raise NotARepositoryError(f"Not a git repository: {root} ({e})") from e
        if inside != "true":
            raise NotARepositoryError(f"Not inside a git working tree: {root}")

    def _list_untracked(self, root: str | Path) -> list[str]:
        try:
            output = self._gateway.run(
                ["ls-files", "--others", "--exclude-standard", "-z"], root, silent=True
            )
        except DiffwatchError as e:
            logger.warning(f"Could not get untracked files in {root}: {e}")
            return []
        return _split_names(output)

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def _synthesize_untracked(self, root: str | Path, rel_path: str) -> tuple[str, int] | None:
        """Build a new-file diff section for an untracked file.

        Returns:
            (section_text, line_count), or None when the file is unreadable
            (binary, permission denied, vanished)
        """
        file_path = Path(root) / rel_path
        try:
            data = file_path.read_bytes()
        except OSError as e:
            logger.debug(f"Could not read untracked file {rel_path}: {e}")
            return None
        if b"\0" in data:
            logger.debug(f"Skipping binary untracked file {rel_path}")
            return None
        try:
            content = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug(f"Skipping non-UTF-8 untracked file {rel_path}")
            return None

        lines = content.splitlines()
        old_name = quote_diff_path(f"a/{rel_path}")
        new_name = quote_diff_path(f"b/{rel_path}")
        parts = [
            f"diff --git {old_name} {new_name}\n",
            f"new file mode {self._settings.diff.untracked_file_mode}\n",
            "index 0000000..0000000\n",
            "--- /dev/null\n",
            f"+++ {new_name}\n",
        ]
        if lines:
            parts.append(f"@@ -0,0 +1,{len(lines)} @@\n")
            parts.extend(f"+{line}\n" for line in lines)
        return "".join(parts), len(lines)

    def capture_working_tree_diff(self, root: str | Path) -> DiffResult:
        """Capture tracked and untracked changes of a working tree against HEAD.

        Untracked files appear as synthesized new-file sections; unreadable ones
        are still listed in changed_files but contribute no lines.

        Raises:
            NotARepositoryError: If root is not inside a git working tree
        """
        self._ensure_repository(root)
        logger.debug(f"Capturing working tree diff in {root}")

        before = self.get_current_revision(root)
        base = before or EMPTY_TREE

        try:
            tracked_diff = self._gateway.run(
                ["diff", base], root, max_buffer_bytes=self._max_buffer_bytes
            )
        except DiffwatchError as e:
            logger.warning(f"Could not get git diff in {root}: {e}")
            tracked_diff = ""

        try:
            tracked_files = _split_names(self._gateway.run(["diff", "--name-only", "-z", base], root, silent=True))
        except DiffwatchError as e:
            logger.warning(f"Could not get changed files in {root}: {e}")
            tracked_files = [f.path for f in parse_unified_diff(tracked_diff, self._max_file_bytes)]

        parsed = parse_unified_diff(tracked_diff, self._max_file_bytes)
        additions, deletions = sum_file_changes(parsed)

        untracked = self._list_untracked(root)
        sections: list[str] = []
        for rel_path in untracked:
            synthesized = self._synthesize_untracked(root, rel_path)
            if synthesized is None:
                continue
            section, line_count = synthesized
            sections.append(section)
            additions += line_count

        raw_text = tracked_diff
        if sections:
            untracked_text = "".join(sections)
            raw_text = f"{tracked_diff}\n{untracked_text}" if tracked_diff else untracked_text

        changed_files = list(dict.fromkeys([*tracked_files, *untracked]))
        stats = ChangeStats(additions=additions, deletions=deletions, files_changed=len(changed_files))
        logger.debug(f"Captured diff: {stats.files_changed} files, +{stats.additions} -{stats.deletions}")

        return DiffResult(
            raw_text=raw_text,
            stats=stats,
            changed_files=changed_files,
            before_revision=before or None,
            after_revision=None,
        )

    # ------------------------------------------------------------------
    # Revision ranges
    # ------------------------------------------------------------------

    def capture_revision_range_diff(
        self,
        root: str | Path,
        from_revision: str,
        to_revision: str | None = None,
    ) -> DiffResult:
        """Capture the diff between two revisions (``from..to``, to defaults to HEAD).

        Text, file list and stats come from three independent git calls and are
        not atomic with respect to each other.

        Raises:
            NotARepositoryError: If root is not inside a git working tree
            VcsCommandError: If neither the diff text nor the file list could be read
        """
        self._ensure_repository(root)
        to = to_revision or "HEAD"
        spec = f"{from_revision}..{to}"
        logger.debug(f"Capturing git diff in {root} from {from_revision} to {to}")

        failures: list[str] = []
        try:
            raw_text = self._gateway.run(["diff", spec], root, max_buffer_bytes=self._max_buffer_bytes)
        except DiffwatchError as e:
            logger.warning(f"Could not get git commit diff in {root}: {e}")
            failures.append(str(e))
            raw_text = ""

        try:
            changed_files = _split_names(self._gateway.run(["diff", "--name-only", "-z", spec], root, silent=True))
        except DiffwatchError as e:
            logger.warning(f"Could not get changed files between commits in {root}: {e}")
            failures.append(str(e))
            changed_files = []

        if len(failures) == 2:
            raise VcsCommandError(f"Could not diff {spec} in {root}: {failures[0]}")

        try:
            stats = parse_stat_summary(self._gateway.run(["diff", "--stat", spec], root, silent=True))
        except DiffwatchError as e:
            logger.warning(f"Could not get commit diff stats in {root}: {e}")
            additions, deletions = sum_file_changes(parse_unified_diff(raw_text, self._max_file_bytes))
            stats = ChangeStats(additions=additions, deletions=deletions, files_changed=len(changed_files))

        after = to_revision if to_revision else (self.get_current_revision(root) or "HEAD")
        return DiffResult(
            raw_text=raw_text,
            stats=stats,
            changed_files=changed_files,
            before_revision=from_revision,
            after_revision=after,
        )

    def capture_branch_diff(self, root: str | Path, base_branch: str) -> DiffResult:
        """Capture everything the current branch adds on top of ``origin/<base_branch>``.

        Uses a three-dot range (merge-base to HEAD). Falls back to the working
        tree diff when the remote branch cannot be compared.
        """
        spec = f"origin/{base_branch}...HEAD"
        try:
            raw_text = self._gateway.run(["diff", spec], root, max_buffer_bytes=self._max_buffer_bytes)
            changed_files = _split_names(self._gateway.run(["diff", "--name-only", "-z", spec], root, silent=True))
            stats = parse_stat_summary(self._gateway.run(["diff", "--stat", spec], root, silent=True))
        except DiffwatchError as e:
            logger.warning(f"Could not get branch diff against {base_branch} in {root}: {e}")
            return self.capture_working_tree_diff(root)

        return DiffResult(
            raw_text=raw_text,
            stats=stats,
            changed_files=changed_files,
            before_revision=f"origin/{base_branch}",
            after_revision="HEAD",
        )

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def get_revision_diff(self, root: str | Path, revision_id: str) -> DiffResult:
        """Return the patch introduced by one commit.

        Merge commits are diffed against each parent (``-m``) so they never
        come back empty.

        Raises:
            VcsCommandError: If the commit's patch cannot be retrieved
        """
        try:
            raw_text = self._gateway.run(
                ["show", "--format=", "--patch", "-m", revision_id],
                root,
                max_buffer_bytes=self._max_buffer_bytes,
            )
        except DiffwatchError as e:
            logger.error(f"Failed to get commit diff for {revision_id}: {e}")
            raise VcsCommandError(f"Failed to get diff for commit {revision_id}: {e}") from e

        parsed = parse_unified_diff(raw_text, self._max_file_bytes)
        try:
            changed_files = list(dict.fromkeys(_split_names(self._gateway.run(
                ["show", "--name-only", "-z", "--format=", "-m", revision_id], root, silent=True
            ))))
        except DiffwatchError as e:
            logger.warning(f"Could not list files of commit {revision_id}: {e}")
            changed_files = list(dict.fromkeys(f.path for f in parsed))

        additions, deletions = sum_file_changes(parsed)
        return DiffResult(
            raw_text=raw_text,
            stats=ChangeStats(additions=additions, deletions=deletions, files_changed=len(changed_files)),
            changed_files=changed_files,
            before_revision=f"{revision_id}~1",
            after_revision=revision_id,
        )

    def get_commit_history(
        self,
        root: str | Path,
        limit: int | None = None,
        exclude_revision: str | None = None,
    ) -> list[CommitRecord]:
        """Return commits reachable from HEAD but not from ``exclude_revision``, newest first.

        Args:
            root: Working tree path
            limit: Maximum number of commits (default from settings)
            exclude_revision: Revision whose ancestors are excluded (default from settings)

        Raises:
            VcsCommandError: When git reports a fatal error (e.g. unknown revision)
        """
        limit = limit if limit is not None else self._settings.diff.history_limit
        exclude = exclude_revision or self._settings.diff.exclude_revision
        selection = ["-n", str(limit), "HEAD", "--not", exclude, "--"]

        try:
            log_output = self._gateway.run(
                ["log", _HISTORY_FORMAT, "--numstat", *selection],
                root,
                max_buffer_bytes=self._max_buffer_bytes,
            )
        except GitCommandError as e:
            if e.is_fatal:
                logger.error(f"Git command failed while reading history; does {exclude} exist? {e}")
                raise VcsCommandError(f"Git error: {e}") from e
            logger.error(f"Failed to get commit history in {root}: {e}")
            return []

        commits = self._parse_history(log_output)
        if commits:
            commits = self._splice_full_messages(root, commits, selection)
        else:
            logger.info(f"No commits unique to HEAD relative to {exclude} in {root}")
        return commits

    def _parse_history(self, log_output: str) -> list[CommitRecord]:
        commits: list[CommitRecord] = []
        for record in log_output.split(_RECORD_SEP):
            if not record.strip():
                continue
            header, _, stat_block = record.partition("\n")
            fields = header.split(_FIELD_SEP)
            if len(fields) < 4:
                logger.warning(f"Skipping malformed history record: {header[:100]!r}")
                continue
            revision_id, subject, date_text, author = fields[0], fields[1], fields[2], fields[3]
            commits.append(CommitRecord(
                revision_id=revision_id.strip(),
                message=subject,
                authored_at=self._parse_date(date_text),
                author=author.strip(),
                stats=parse_numstat_lines(stat_block.splitlines()),
            ))
        return commits

    def _parse_date(self, date_text: str) -> datetime:
        try:
            parsed = datetime.fromisoformat(date_text.strip())
        except ValueError:
            logger.warning(f"Invalid date format in git log: {date_text!r}. Using current date as fallback.")
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _splice_full_messages(
        self,
        root: str | Path,
        commits: list[CommitRecord],
        selection: list[str],
    ) -> list[CommitRecord]:
        """Replace subjects with full messages from a NUL-delimited batch."""
        try:
            output = self._gateway.run(
                ["log", _MESSAGE_FORMAT, *selection],
                root,
                max_buffer_bytes=self._max_buffer_bytes,
                silent=True,
            )
        except DiffwatchError as e:
            logger.warning(f"Failed to load full commit messages: {e}")
            return commits

        parts = output.split("\0")
        messages: dict[str, str] = {}
        for i in range(0, len(parts) - 1, 2):
            revision_id = parts[i].strip()
            if revision_id:
                messages[revision_id] = parts[i + 1].strip()

        spliced = []
        for commit in commits:
            full = messages.get(commit.revision_id)
            spliced.append(commit.model_copy(update={"message": full}) if full else commit)
        return spliced

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def combine_diff_results(results: Sequence[DiffResult]) -> DiffResult:
        """See module-level combine_diff_results."""
        return combine_diff_results(results)

    @staticmethod
    def parse_stat_summary(raw_stat_output: str) -> ChangeStats:
        """See module-level parse_stat_summary."""
        return parse_stat_summary(raw_stat_output)
