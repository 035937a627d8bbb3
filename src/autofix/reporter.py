"""Turn a terminal engine outcome into issue comments and a pull request."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from .github import PullRequest
from .issue_context import IssueContext
from .orchestrator import AgentFailed, Fixed, NoChangesMade, PatchRejected, RepairOutcome, TestsFailed
from .utils.text import truncate

LOGGER = logging.getLogger(__name__)

PR_TITLE_LIMIT = 240
ERROR_MESSAGE_LIMIT = 6_000


class ReportTarget(Protocol):
    def create_comment(self, owner: str, repo: str, number: int, body: str) -> int: ...

    def create_pull_request(
        self, owner: str, repo: str, *, title: str, head: str, base: str, body: str
    ) -> PullRequest: ...


def _fenced(text: str) -> str:
    return f"```\n{text.strip()}\n```"


def write_action_output(path: Path | None, name: str, value: str) -> None:
    """Append ``name=value`` to a GitHub Actions output file when one is set."""
    if path is None:
        return
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{name}={value}\n")


def render_outcome_comment(outcome: RepairOutcome) -> str:
    """Explanatory comment for outcomes that do not open a pull request."""
    if isinstance(outcome, NoChangesMade):
        return (
            f"I attempted to generate a fix {outcome.attempts} time(s), but no attempt produced "
            "any file changes. No PR was created."
        )
    if isinstance(outcome, AgentFailed):
        return (
            f"The repair agent failed on its last attempt ({outcome.attempts} attempt(s) in total). "
            "No PR was created.\n\nLast agent output:\n" + _fenced(outcome.last_output)
        )
    if isinstance(outcome, TestsFailed):
        return (
            f"I generated a fix, but the tests still failed after {outcome.attempts} attempt(s). "
            "PR not opened.\n\nTest output:\n" + _fenced(outcome.last_output)
        )
    if isinstance(outcome, PatchRejected):
        return (
            f"I generated a patch, but it was rejected before it could be applied "
            f"({outcome.attempts} attempt(s)). No PR was created.\n\nReason:\n" + _fenced(outcome.reason)
        )
    raise TypeError(f"Unsupported outcome for a comment: {outcome!r}")


class Reporter:
    """Post the single visible result of a run on the issue."""

    def __init__(self, target: ReportTarget, owner: str, repo: str, *, output_path: Path | None = None) -> None:
        self.target = target
        self.owner = owner
        self.repo = repo
        self.output_path = output_path

    def report(self, outcome: RepairOutcome, context: IssueContext) -> Optional[str]:
        """Open a PR for a fix or explain the failure; returns the PR URL if any."""
        if isinstance(outcome, Fixed):
            return self._open_pull_request(outcome, context)
        self.target.create_comment(self.owner, self.repo, context.number, render_outcome_comment(outcome))
        return None

    def _open_pull_request(self, outcome: Fixed, context: IssueContext) -> str:
        body = f"Automated fix for issue #{context.number}.\n\nCloses #{context.number}."
        if outcome.diff_summary.strip():
            body += "\n\nChanges:\n" + _fenced(outcome.diff_summary)
        pull = self.target.create_pull_request(
            self.owner,
            self.repo,
            title=f"Fix: {context.title}"[:PR_TITLE_LIMIT],
            head=outcome.branch_name,
            base=context.target_branch,
            body=body,
        )
        LOGGER.info("Opened %s", pull.html_url)
        write_action_output(self.output_path, "pr-url", pull.html_url)
        self.target.create_comment(
            self.owner, self.repo, context.number, f"I opened a PR for this issue: {pull.html_url}"
        )
        return pull.html_url

    def report_error(self, number: int, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        body = (
            "I couldn't complete the automated fix due to an unexpected error.\n\n"
            + _fenced(truncate(message, ERROR_MESSAGE_LIMIT))
            + "\n"
        )
        self.target.create_comment(self.owner, self.repo, number, body)


__all__ = ["Reporter", "ReportTarget", "render_outcome_comment", "write_action_output"]
