"""Unified diff parser.

Turns ``git diff`` style text into an ordered list of FileChange records.
Parsing is best-effort: sections whose header cannot be understood are
dropped with a diagnostic, and nothing in this module raises on malformed
input.

Per-section processing:
1. Extract the old/new path pair from the ``diff --git`` header line
2. Classify the change from extended header lines (new/deleted/rename)
3. Binary sections keep zero counts and no content
4. Sections over ``max_file_bytes`` only count +/- lines (no content kept)
5. Otherwise rebuild the old/new sides of the hunks and count lines
"""

import re

from loguru import logger

from ..models.diff import ChangeKind, FileChange

DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024  # 5MB

_SECTION_START = re.compile(r"^diff --git ", re.MULTILINE)

# Tried in order, first match wins
_HEADER_PATTERNS = [
    # diff --git a/path b/path
    re.compile(r"^diff --git a/(.+?) b/(.+)$"),
    # diff --git "a/path with \"quotes\"" "b/path"
    re.compile(r'^diff --git "a/((?:[^"\\]|\\.)*)" "b/((?:[^"\\]|\\.)*)"$'),
    # one side quoted, the other not
    re.compile(r'^diff --git "?a/(.+?)"? "?b/(.+?)"?$'),
    # no a/ b/ prefixes (diff.noprefix, mnemonic prefixes stripped)
    re.compile(r"^diff --git (.+?) (.+)$"),
    # anything separated by other whitespace
    re.compile(r'^diff --git\s+(?:"?a/)?(.+?)"?\s+(?:"?b/)?(.+?)"?$'),
]

_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}


def _unescape(text: str) -> str:
    """Undo git's C-style path quoting (\\t, \\", \\\\ and \\ooo UTF-8 octets)."""
    if "\\" not in text:
        return text

    out: list[str] = []
    pending: bytearray = bytearray()
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            octal = text[i + 1:i + 4]
            if len(octal) == 3 and all(c in "01234567" for c in octal):
                pending.append(int(octal, 8) & 0xFF)
                i += 4
                continue
            if pending:
                out.append(pending.decode("utf-8", errors="replace"))
                pending.clear()
            out.append(_SIMPLE_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if pending:
            out.append(pending.decode("utf-8", errors="replace"))
            pending.clear()
        out.append(ch)
        i += 1

    if pending:
        out.append(pending.decode("utf-8", errors="replace"))
    return "".join(out)


def normalize_diff_path(path: str, quoted: bool | None = None) -> str:
    """Normalize a path captured from a diff header.

    Strips surrounding quotes, unescapes backslash escapes and converts any
    remaining backslashes to forward slashes. Git only escapes inside quoted
    paths, so escapes are undone when the path was quoted (``quoted=True``,
    or surrounded by quotes when ``quoted`` is None).
    """
    if not path:
        return ""
    normalized = path.strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in "\"'":
        normalized = normalized[1:-1]
        if quoted is None:
            quoted = True
    if quoted:
        normalized = _unescape(normalized)
    return normalized.replace("\\", "/")


def split_file_sections(raw_diff_text: str) -> list[str]:
    """Split diff text into per-file sections starting at ``diff --git`` lines.

    Text before the first header (commit preambles, warnings) is discarded.
    """
    starts = [m.start() for m in _SECTION_START.finditer(raw_diff_text)]
    sections = []
    for idx, start in enumerate(starts):
        end = starts[idx + 1] if idx + 1 < len(starts) else len(raw_diff_text)
        sections.append(raw_diff_text[start:end])
    return sections


def parse_file_header(section: str) -> tuple[str, str] | None:
    """Extract (old_path, new_path) from a section's header line.

    Returns:
        Normalized path pair, or None when no pattern matches
    """
    header = section.split("\n", 1)[0].rstrip("\r")

    # Unquoted identical paths may contain spaces: "a/x y b/x y"
    rest = header[len("diff --git "):]
    if header.startswith("diff --git a/") and (len(rest) - 5) % 2 == 0:
        half = (len(rest) - 5) // 2
        candidate = rest[2:2 + half]
        if half > 0 and rest[2 + half:] == f" b/{candidate}":
            path = normalize_diff_path(candidate, quoted=False)
            return path, path

    for pattern in _HEADER_PATTERNS:
        match = pattern.match(header)
        if match:
            return (
                normalize_diff_path(match.group(1), _was_quoted(header, match, 1)),
                normalize_diff_path(match.group(2), _was_quoted(header, match, 2)),
            )
    return None


def _was_quoted(header: str, match: re.Match, group: int) -> bool:
    prefix = header[:match.start(group)]
    return prefix.endswith(('"a/', '"b/', '"'))


def _classify(header_lines: list[str]) -> ChangeKind:
    has_rename_from = False
    has_rename_to = False
    for line in header_lines:
        if line.startswith("new file mode"):
            return ChangeKind.ADDED
        if line.startswith("deleted file mode"):
            return ChangeKind.DELETED
        if line.startswith("rename from"):
            has_rename_from = True
        elif line.startswith("rename to"):
            has_rename_to = True
    if has_rename_from and has_rename_to:
        return ChangeKind.RENAMED
    return ChangeKind.MODIFIED


def _is_binary(header_lines: list[str]) -> bool:
    for line in header_lines:
        stripped = line.rstrip("\r")
        if stripped == "GIT binary patch":
            return True
        if stripped.startswith("Binary files ") and stripped.endswith(" differ"):
            return True
    return False


def _parse_section(section: str, max_file_bytes: int, diagnostics: list[str] | None) -> FileChange | None:
    paths = parse_file_header(section)
    if paths is None:
        _diagnose(diagnostics, f"Could not parse file names from diff section: {section[:100]!r}")
        return None

    old_path, new_path = paths
    path = new_path or old_path
    if not path:
        _diagnose(diagnostics, f"Both old and new paths are empty in diff section: {section[:100]!r}")
        return None

    lines = section.split("\n")
    # Trailing newline and blank separators between sections are not hunk lines
    while lines and lines[-1].strip("\r") == "":
        lines.pop()
    hunk_start = next((i for i, line in enumerate(lines) if line.startswith("@@")), None)
    header_lines = lines if hunk_start is None else lines[:hunk_start]

    change_kind = _classify(header_lines)
    approx_size = len(section)
    common = dict(path=path, old_path=old_path, change_kind=change_kind, approx_size_bytes=approx_size)

    if _is_binary(header_lines):
        return FileChange(is_binary=True, **common)

    if hunk_start is None:
        # Mode change or pure rename: nothing to count
        return FileChange(**common)

    additions = 0
    deletions = 0

    if approx_size > max_file_bytes:
        for line in lines[hunk_start:]:
            if line.startswith("@@"):
                continue
            if line.startswith("-"):
                deletions += 1
            elif line.startswith("+"):
                additions += 1
        logger.debug(f"Diff section for {path} exceeds {max_file_bytes} bytes, content skipped")
        return FileChange(additions=additions, deletions=deletions, too_large=True, **common)

    old_lines: list[str] = []
    new_lines: list[str] = []
    for line in lines[hunk_start:]:
        if line.startswith("@@"):
            continue
        if line.startswith("-"):
            old_lines.append(line[1:])
            deletions += 1
        elif line.startswith("+"):
            new_lines.append(line[1:])
            additions += 1
        elif line.startswith(" "):
            old_lines.append(line[1:])
            new_lines.append(line[1:])
        elif line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        elif line == "":
            old_lines.append("")
            new_lines.append("")

    return FileChange(
        additions=additions,
        deletions=deletions,
        old_content="" if change_kind is ChangeKind.ADDED else "\n".join(old_lines),
        new_content="" if change_kind is ChangeKind.DELETED else "\n".join(new_lines),
        **common,
    )


def _diagnose(diagnostics: list[str] | None, message: str) -> None:
    logger.warning(message)
    if diagnostics is not None:
        diagnostics.append(message)


def parse_unified_diff(
    raw_diff_text: str,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    diagnostics: list[str] | None = None,
) -> list[FileChange]:
    """Parse unified diff text into FileChange records, in input order.

    Args:
        raw_diff_text: Output of ``git diff``/``git show`` (may be empty)
        max_file_bytes: Sections longer than this are counted but not materialized
        diagnostics: Optional list that receives one message per dropped section,
            letting callers tell "no changes" apart from "nothing parseable"

    Returns:
        List of FileChange, possibly empty. Never raises on malformed input.
    """
    if not raw_diff_text or not raw_diff_text.strip():
        return []

    sections = split_file_sections(raw_diff_text)
    if not sections:
        _diagnose(diagnostics, "No file sections found in diff text")
        return []

    files: list[FileChange] = []
    for section in sections:
        try:
            parsed = _parse_section(section, max_file_bytes, diagnostics)
        except ValueError as e:
            # Model invariant violations surface as pydantic ValidationError (a ValueError)
            _diagnose(diagnostics, f"Skipping inconsistent diff section: {e}")
            continue
        if parsed is not None:
            files.append(parsed)

    logger.debug(f"Parsed {len(files)} of {len(sections)} diff sections")
    return files


def sum_file_changes(files: list[FileChange]) -> tuple[int, int]:
    """Return (additions, deletions) summed over parsed files."""
    return sum(f.additions for f in files), sum(f.deletions for f in files)
