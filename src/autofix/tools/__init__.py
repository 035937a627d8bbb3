"""Git, diff and shell-command tooling used by the repair engine."""

from .commands import CommandResult, CommandStatus, TestCommand
from .diff_guard import (
    DiffRejected,
    DiffVerdict,
    NoDiffFound,
    PatchApplyError,
    PatchError,
    check_diff,
    count_changed_lines,
    extract_diff,
    touched_paths,
    validate_diff,
)
from .vcs import GitError, GitIdentity, GitRepository, GitWorkspace

__all__ = [
    "CommandResult",
    "CommandStatus",
    "DiffRejected",
    "DiffVerdict",
    "GitError",
    "GitIdentity",
    "GitRepository",
    "GitWorkspace",
    "NoDiffFound",
    "PatchApplyError",
    "PatchError",
    "TestCommand",
    "check_diff",
    "count_changed_lines",
    "extract_diff",
    "touched_paths",
    "validate_diff",
]
