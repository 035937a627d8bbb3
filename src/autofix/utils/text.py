"""Text helpers for embedding process output in prompts and comments."""

from __future__ import annotations

from pathlib import Path

TRUNCATION_MARKER = "[TRUNCATED: {count} chars]"


def truncate(text: str | None, max_chars: int) -> str:
    """Clip ``text`` to ``max_chars`` and append an explicit truncation marker."""
    value = text or ""
    if max_chars < 0 or len(value) <= max_chars:
        return value
    dropped = len(value) - max_chars
    return f"{value[:max_chars]}\n{TRUNCATION_MARKER.format(count=dropped)}"


def combine_output(stdout: str | None, stderr: str | None) -> str:
    """Join stdout and stderr the way failure output is reported."""
    return "\n".join(part.rstrip("\n") for part in (stdout or "", stderr or "") if part.strip()).strip()


def safe_repo_relative_path(repo_root: Path | str, candidate: str) -> Path:
    """Resolve ``candidate`` inside ``repo_root`` or raise ``ValueError``."""
    root = Path(repo_root).resolve()
    normalised = candidate.strip().replace("\\", "/")
    if not normalised:
        raise ValueError("Empty paths are not allowed.")
    if Path(normalised).is_absolute():
        raise ValueError(f"Absolute paths are not allowed: {candidate}")
    if ".." in Path(normalised).parts:
        raise ValueError(f"Path traversal is not allowed: {candidate}")

    resolved = (root / normalised).resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError(f"Path escapes repository: {candidate}")
    return resolved


__all__ = [
    "TRUNCATION_MARKER",
    "combine_output",
    "safe_repo_relative_path",
    "truncate",
]
