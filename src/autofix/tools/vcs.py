"""Git helpers and the per-run workspace manager.

:class:`GitRepository` is a thin wrapper around ``git`` commands.
:class:`GitWorkspace` owns the branch lifecycle of a single autofix run: it
checks out the base branch, creates the working branch, resets the tree
between attempts, applies generated diffs and performs the final
commit/push. Nothing else in the package runs git.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence, Set

from ..errors import AutofixError
from .diff_guard import PatchApplyError

LOGGER = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 300.0


class GitError(AutofixError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, timeout: float = DEFAULT_GIT_TIMEOUT) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitError(f"git {' '.join(args)} timed out after {self.timeout:.0f}s") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def list_tracked_paths(self) -> List[str]:
        """Return every tracked path relative to the repository root."""

        result = self._run_git(["ls-files", "-z"], check=True)
        return [entry for entry in result.stdout.split("\0") if entry]

    # -------------------------------------------------------------- branches
    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def fetch(self, remote: str, ref: str) -> None:
        self._run_git(["fetch", remote, ref], check=True)

    def checkout(self, ref: str, *, create: bool = False) -> None:
        args: List[str] = ["checkout"]
        if create:
            args.append("-b")
        args.append(ref)
        self._run_git(args, check=True)

    def pull_ff_only(self, remote: str, branch: str) -> None:
        self._run_git(["pull", "--ff-only", remote, branch], check=True)

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    # ----------------------------------------------------------- tree cleanup
    def reset_hard(self, ref: str = "HEAD") -> None:
        self._run_git(["reset", "--hard", ref], check=True)

    def clean_untracked(self) -> None:
        self._run_git(["clean", "-fd"], check=True)

    # ----------------------------------------------------------- diff helpers
    def diff(self, *args: str) -> str:
        """Return ``git diff`` output for ``args``."""

        result = self._run_git(["diff", *args], check=True)
        return result.stdout

    def apply_patch(self, patch: str) -> None:
        """Apply ``patch`` with ``git apply`` after a dry-run check.

        The patch is written to a temporary file that is always removed. A
        failing check leaves the tree untouched.
        """

        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", suffix=".diff", prefix="autofix-", delete=False
        ) as handle:
            handle.write(patch if patch.endswith("\n") else f"{patch}\n")
            temp_path = Path(handle.name)
        try:
            check = self._run_git(["apply", "--check", "--whitespace=fix", str(temp_path)], check=False)
            if check.returncode != 0:
                message = check.stderr.strip() or check.stdout.strip() or "unknown error"
                raise PatchApplyError(f"git apply --check failed: {message}", details={"stderr": check.stderr})
            applied = self._run_git(["apply", "--whitespace=fix", str(temp_path)], check=False)
            if applied.returncode != 0:
                message = applied.stderr.strip() or applied.stdout.strip() or "unknown error"
                raise PatchApplyError(f"git apply failed: {message}", details={"stderr": applied.stderr})
        finally:
            temp_path.unlink(missing_ok=True)

    # -------------------------------------------------------------- remotes
    def push(self, remote: str, branch: str, *, set_upstream: bool = False) -> None:
        """Push ``branch`` to ``remote``."""

        args: List[str] = ["push"]
        if set_upstream:
            args.append("--set-upstream")
        args.extend([remote, branch])
        self._run_git(args, check=True)

    def configure_identity(self, name: str, email: str) -> None:
        self._run_git(["config", "user.name", name], check=True)
        self._run_git(["config", "user.email", email], check=True)

    def commit_all(self, message: str) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA, or ``None`` when there was nothing to
        commit.
        """

        self._run_git(["add", "--all"], check=True)

        commit = self._run_git(["commit", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        rev = self._run_git(["rev-parse", "HEAD"], check=True)
        return rev.stdout.strip()


@dataclass(slots=True, frozen=True)
class GitIdentity:
    """Author identity configured right before the fix commit."""

    name: str = "github-actions[bot]"
    email: str = "41898282+github-actions[bot]@users.noreply.github.com"


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class GitWorkspace:
    """Branch lifecycle for a single autofix run."""

    def __init__(
        self,
        repo: GitRepository,
        *,
        remote: str = "origin",
        branch_prefix: str = "autofix",
        identity: GitIdentity | None = None,
        clock: Callable[[], int] = _epoch_millis,
    ) -> None:
        self.repo = repo
        self.remote = remote
        self.branch_prefix = branch_prefix.strip("/") or "autofix"
        self.identity = identity or GitIdentity()
        self._clock = clock
        self.branch: str | None = None
        self.base_branch: str | None = None

    @property
    def root(self) -> Path:
        return self.repo.root

    def branch_name_for(self, issue_number: int) -> str:
        """Derive a working branch name that does not collide with local branches."""

        candidate = f"{self.branch_prefix}/issue-{issue_number}-{self._clock()}"
        name = candidate
        suffix = 1
        while self.repo.branch_exists(name):
            suffix += 1
            name = f"{candidate}-{suffix}"
        return name

    def prepare(self, base_branch: str, issue_number: int) -> str:
        """Check out ``base_branch`` fresh from the remote and branch off it."""

        LOGGER.info("Checking out base branch %s and creating working branch", base_branch)
        self.repo.fetch(self.remote, base_branch)
        self.repo.checkout(base_branch)
        self.repo.pull_ff_only(self.remote, base_branch)

        branch = self.branch_name_for(issue_number)
        self.repo.checkout(branch, create=True)
        self.base_branch = base_branch
        self.branch = branch
        LOGGER.info("Working branch %s created from %s", branch, base_branch)
        return branch

    def reset(self) -> None:
        """Discard tracked modifications and remove untracked files."""

        self.repo.reset_hard()
        self.repo.clean_untracked()

    def has_changes(self) -> bool:
        return self.repo.has_changes(include_untracked=True)

    def changed_paths(self) -> List[str]:
        return [path.as_posix() for path in self.repo.working_tree_changes()]

    def stage(self) -> None:
        """Record the current tree in the index as the change set to commit."""

        self.repo.git("add", "--all")

    def drop_unstaged(self) -> None:
        """Discard anything written since :meth:`stage`, keeping staged changes."""

        self.repo.git("checkout", "--", ".")
        self.repo.clean_untracked()

    def apply_diff(self, diff: str) -> None:
        self.repo.apply_patch(diff)

    def diff_summary(self) -> str:
        """Summarise pending changes including new files."""

        self.repo.git("add", "--all")
        return self.repo.diff("--cached", "--stat").strip()

    def finalize(self, issue_number: int) -> str:
        """Commit every change with a deterministic message and push the branch."""

        if self.branch is None:
            raise GitError("Working branch has not been prepared.")
        self.repo.configure_identity(self.identity.name, self.identity.email)
        sha = self.repo.commit_all(f"Fix: issue #{issue_number}")
        if sha is None:
            raise GitError("Nothing to commit for the working branch.")
        LOGGER.info("Pushing branch %s", self.branch)
        self.repo.push(self.remote, self.branch, set_upstream=True)
        return sha


__all__ = ["GitError", "GitIdentity", "GitRepository", "GitWorkspace"]
