"""Unified diff extraction and safety checks for agent-produced patches.

The diff-generating agent returns free-form model output. Before anything
touches the working tree the payload is located, checked against hard policy
boundaries (lockfiles, CI workflows, binary patches, malformed hunks) and
sized. A single violation rejects the whole diff; nothing is partially applied.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Iterable, Iterator, List, Mapping, Tuple

from ..errors import AutofixError

LOCKFILE_NAMES: frozenset[str] = frozenset({"package-lock.json", "pnpm-lock.yaml", "yarn.lock"})
WORKFLOW_PREFIX = PurePosixPath(".github/workflows")

_DIFF_HEADER_PREFIX = "diff --git "
_FILE_HEADER_PREFIXES = ("--- ", "+++ ", "rename from ", "rename to ", "copy from ", "copy to ")
_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}
_OCTAL_ESCAPE = re.compile(r"[0-3][0-7]{2}")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_FENCED_BLOCK = re.compile(r"^```[^\n`]*\n(.*?)^```[ \t]*$", re.MULTILINE | re.DOTALL)
_DIFF_MARKERS = (
    re.compile(r"^diff --git ", re.MULTILINE),
    re.compile(r"^--- a/", re.MULTILINE),
)
_BINARY_MARKERS = (
    re.compile(r"^GIT binary patch", re.MULTILINE),
    re.compile(r"^Binary files .* differ$", re.MULTILINE),
)


class PatchError(AutofixError):
    """Raised when a patch cannot be extracted, validated or applied."""


class NoDiffFound(PatchError):
    """Raised when model output does not contain a unified diff."""


class DiffRejected(PatchError):
    """Raised when a diff violates a safety policy."""

    def __init__(self, reason: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(reason, details=details)
        self.reason = reason


class PatchApplyError(PatchError):
    """Raised when ``git apply`` refuses a validated diff."""


@dataclass(slots=True, frozen=True)
class DiffVerdict:
    """Non-raising result of :func:`check_diff`."""

    ok: bool
    reason: str | None = None
    paths: Tuple[str, ...] = ()
    changed_lines: int = 0


def _first_marker_index(text: str) -> int | None:
    positions = [match.start() for marker in _DIFF_MARKERS if (match := marker.search(text))]
    return min(positions) if positions else None


def extract_diff(model_output: str) -> str:
    """Return the unified diff embedded in ``model_output``.

    Fenced code blocks are preferred and their body is returned verbatim.
    Otherwise everything from the first ``diff --git`` (or ``--- a/``) marker
    onwards is treated as the diff.
    """

    text = model_output or ""
    for match in _FENCED_BLOCK.finditer(text):
        body = match.group(1)
        if _first_marker_index(body) is not None:
            return body

    index = _first_marker_index(text)
    if index is None:
        raise NoDiffFound("Model output does not contain a unified diff (no 'diff --git' or '--- a/' marker).")
    diff = text[index:].rstrip()
    if diff.endswith("```"):
        diff = diff[:-3].rstrip()
    return f"{diff}\n"


def _walk_diff(diff: str) -> Iterator[Tuple[str, bool]]:
    """Yield each line with a flag telling whether it belongs to a hunk body."""
    old_remaining = 0
    new_remaining = 0
    for line in diff.splitlines():
        if old_remaining > 0 or new_remaining > 0:
            prefix = line[:1]
            if prefix == "+":
                new_remaining -= 1
            elif prefix == "-":
                old_remaining -= 1
            elif prefix != "\\":
                old_remaining -= 1
                new_remaining -= 1
            yield line, True
            continue

        match = _HUNK_HEADER.match(line)
        if match:
            old_remaining = int(match.group("old_count") or 1)
            new_remaining = int(match.group("new_count") or 1)
        yield line, False


def _unquote_c_style(text: str) -> Tuple[str, str]:
    """Decode the git C-quoted string opening ``text``; return it and the rest."""
    decoded = bytearray()
    index = 1
    while index < len(text):
        char = text[index]
        if char == '"':
            return decoded.decode("utf-8", errors="replace"), text[index + 1 :]
        if char != "\\":
            decoded.extend(char.encode("utf-8"))
            index += 1
            continue
        escape = text[index + 1 : index + 2]
        if escape and escape in _C_ESCAPES:
            decoded.append(_C_ESCAPES[escape])
            index += 2
        elif _OCTAL_ESCAPE.fullmatch(text[index + 1 : index + 4]):
            decoded.append(int(text[index + 1 : index + 4], 8))
            index += 4
        else:
            raise DiffRejected(f"Malformed quoted path in diff header: {text}")
    raise DiffRejected(f"Unterminated quoted path in diff header: {text}")


def _git_header_operands(rest: str) -> List[str]:
    """Split the two operands of a ``diff --git`` line, quoted or not."""
    if rest.startswith('"'):
        first, remainder = _unquote_c_style(rest)
        remainder = remainder.lstrip(" ")
        second = _unquote_c_style(remainder)[0] if remainder.startswith('"') else remainder
        return [first, second]
    quoted_at = rest.find(' "')
    if quoted_at != -1:
        return [rest[:quoted_at], _unquote_c_style(rest[quoted_at + 1 :])[0]]
    # Unquoted names may contain spaces; both sides name the same file unless renamed.
    middle = len(rest) // 2
    if len(rest) % 2 == 1 and rest[middle] == " " and rest[2:middle] == rest[middle + 3 :]:
        return [rest[:middle], rest[middle + 1 :]]
    head, separator, tail = rest.partition(" b/")
    return [head, f"b/{tail}"] if separator else rest.split(" ")


def _file_header_operand(rest: str) -> str:
    if rest.startswith('"'):
        return _unquote_c_style(rest)[0]
    return rest.split("\t", 1)[0].rstrip()


def _normalise_diff_path(entry: str) -> PurePosixPath | None:
    """Translate diff header operands into repository-relative paths."""
    if entry == "/dev/null":
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    entry = entry.strip()
    if not entry:
        return None
    return PurePosixPath(entry)


def _extract_paths(diff: str) -> set[PurePosixPath]:
    """Collect every path named by file headers outside hunk bodies.

    Covers ``diff --git``, ``---``/``+++`` and rename/copy lines, decoding
    git's C-style quoting so quoted names are checked like plain ones.
    """
    paths: set[PurePosixPath] = set()
    for line, in_hunk in _walk_diff(diff):
        if in_hunk:
            continue
        if line.startswith(_DIFF_HEADER_PREFIX):
            operands = _git_header_operands(line[len(_DIFF_HEADER_PREFIX) :])
        else:
            prefix = next((item for item in _FILE_HEADER_PREFIXES if line.startswith(item)), None)
            if prefix is None:
                continue
            operands = [_file_header_operand(line[len(prefix) :])]
        for operand in operands:
            candidate = _normalise_diff_path(operand)
            if candidate is not None:
                paths.add(candidate)
    return paths


def _is_forbidden(path: PurePosixPath) -> bool:
    if path.name in LOCKFILE_NAMES:
        return True
    return path == WORKFLOW_PREFIX or WORKFLOW_PREFIX in path.parents


def _validate_paths(paths: Iterable[PurePosixPath]) -> None:
    """Enforce path safety rules for diff entries."""
    for path in sorted(paths, key=str):
        if _is_forbidden(path):
            raise DiffRejected(
                f"Diff touches a forbidden file ({path.as_posix()}); lockfiles and .github/workflows are off limits.",
                details={"path": path.as_posix()},
            )
        if path.is_absolute():
            raise DiffRejected(f"Absolute paths are not permitted in patches: {path}")
        if ".." in path.parts:
            raise DiffRejected(f"Path escaping detected in patch: {path}")
        if path.parts and path.parts[0] == ".git":
            raise DiffRejected("Patches may not target the .git directory.")


def _validate_hunks(diff: str) -> int:
    """Reject malformed ``@@`` headers and return the number of hunks."""
    hunks = 0
    for line in diff.splitlines():
        if not line.startswith("@@"):
            continue
        if not _HUNK_HEADER.match(line):
            raise DiffRejected(f"Malformed hunk header: {line.strip()}")
        hunks += 1
    return hunks


def validate_diff(diff: str) -> None:
    """Raise :class:`DiffRejected` when ``diff`` is unsafe or malformed."""

    if not diff or not diff.strip():
        raise DiffRejected("Diff is empty.")
    if any(marker.search(diff) for marker in _BINARY_MARKERS):
        raise DiffRejected("Binary patches are not supported.")

    paths = _extract_paths(diff)
    if not paths:
        raise DiffRejected("Diff does not name any files.")
    _validate_paths(paths)

    if _validate_hunks(diff) == 0:
        raise DiffRejected("Diff does not contain a valid hunk header (@@ -a,b +c,d @@).")


def count_changed_lines(diff: str) -> int:
    """Count added and removed body lines, ignoring file headers."""

    return sum(1 for line, in_hunk in _walk_diff(diff) if in_hunk and line.startswith(("+", "-")))


def touched_paths(diff: str) -> Tuple[str, ...]:
    """Sorted paths named by ``diff``; empty when the headers cannot be decoded."""
    try:
        paths = _extract_paths(diff)
    except DiffRejected:
        return ()
    return tuple(sorted(path.as_posix() for path in paths))


def check_diff(diff: str, *, max_changed_lines: int | None = None) -> DiffVerdict:
    """Validate ``diff`` and optionally enforce a changed-line ceiling."""

    try:
        validate_diff(diff)
    except DiffRejected as error:
        return DiffVerdict(ok=False, reason=error.reason, paths=touched_paths(diff or ""))

    changed = count_changed_lines(diff)
    paths = touched_paths(diff)
    if max_changed_lines is not None and changed > max_changed_lines:
        return DiffVerdict(
            ok=False,
            reason=f"Generated diff is too large: {changed} changed lines (max {max_changed_lines}).",
            paths=paths,
            changed_lines=changed,
        )
    return DiffVerdict(ok=True, paths=paths, changed_lines=changed)


__all__ = [
    "DiffRejected",
    "DiffVerdict",
    "LOCKFILE_NAMES",
    "NoDiffFound",
    "PatchApplyError",
    "PatchError",
    "check_diff",
    "count_changed_lines",
    "extract_diff",
    "touched_paths",
    "validate_diff",
]
