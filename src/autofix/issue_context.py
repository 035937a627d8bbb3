"""Resolve a bug-report issue into the structured context an agent needs.

Bug reports are written with GitHub issue forms, so fields arrive as markdown
sections: a heading carrying the field label followed by the value. Optional
fields left blank are rendered as ``_No response_``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse

from .errors import ConfigError
from .github import GitHubAPIError, GitHubIssue
from .utils.text import truncate

if TYPE_CHECKING:
    from .config import RunConfig

LOGGER = logging.getLogger(__name__)

EMPTY_FIELD_PLACEHOLDER = "_No response_"
PROMPT_BODY_LIMIT = 180_000

USER_STORY_LABELS = ("User story issue (reference)", "User story issue")
TEST_CASE_LABELS = ("Test case issue (reference)", "Test case issue")
TEST_SPECIFIC_LABELS = ("Test command (specific test for this bug)", "Test command (specific)")
TEST_SUITE_LABELS = ("Test command (full suite for regression)", "Test command (full suite)")
BASE_BRANCH_LABELS = ("Base branch", "Target branch")

_HEADING = re.compile(r"^ {0,3}(#{1,6})[ \t]+(?P<text>.*?)[ \t#]*$")
_FENCE = re.compile(r"^ {0,3}(```|~~~)")
_SHORTHAND = re.compile(r"^#(?P<number>\d+)$")
_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_REF_KINDS = {"issues", "pull"}


@dataclass(slots=True, frozen=True)
class GitHubIssueRef:
    owner: str
    repo: str
    number: int
    url: str


@dataclass(slots=True, frozen=True)
class IssueContext:
    """Read-only snapshot of the bug report, built once per run."""

    number: int
    title: str
    body: str
    resolved_body: str
    target_branch: str
    test_command_specific: Optional[str] = None
    test_command_suite: Optional[str] = None
    referenced_issues: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def prompt_body(self) -> str:
        """Resolved body plus referenced issues, clipped for prompt use."""
        parts = [self.resolved_body, *self.referenced_issues]
        return truncate("\n\n".join(part for part in parts if part), PROMPT_BODY_LIMIT)


class IssueSource(Protocol):
    def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue: ...

    def get_default_branch(self, owner: str, repo: str) -> str: ...


# ---------------------------------------------------------------------- parsing


def _heading_text(line: str) -> Optional[str]:
    match = _HEADING.match(line.rstrip("\r\n"))
    if match is None:
        return None
    return match.group("text").strip()


def _iter_lines(body: str) -> Iterable[Tuple[str, Optional[str]]]:
    """Yield ``(line, heading)`` pairs; headings inside code fences are ignored."""
    in_fence = False
    for line in body.splitlines(keepends=True):
        if _FENCE.match(line):
            in_fence = not in_fence
            yield line, None
            continue
        yield line, None if in_fence else _heading_text(line)


def _label_matches(heading: str, labels: Sequence[str]) -> bool:
    lowered = heading.casefold()
    return any(lowered == label.strip().casefold() for label in labels)


def extract_field(body: str | None, label: str) -> Optional[str]:
    """Return the value under the heading ``label`` or ``None`` when absent or empty."""

    if not body:
        return None
    collecting = False
    collected: List[str] = []
    for line, heading in _iter_lines(body):
        if heading is not None:
            if collecting:
                break
            collecting = _label_matches(heading, (label,))
            continue
        if collecting:
            collected.append(line.rstrip("\r\n"))

    value = "\n".join(collected).strip("\n").strip()
    if not value or value == EMPTY_FIELD_PLACEHOLDER:
        return None
    return value


def extract_first_field(body: str | None, labels: Sequence[str]) -> Optional[str]:
    for label in labels:
        value = extract_field(body, label)
        if value is not None:
            return value
    return None


def parse_issue_ref(
    value: str | None,
    default_owner: str | None = None,
    default_repo: str | None = None,
) -> Optional[GitHubIssueRef]:
    """Parse ``#N`` or a github.com issue/PR URL; anything else yields ``None``."""

    text = (value or "").strip()
    if not text:
        return None

    shorthand = _SHORTHAND.match(text)
    if shorthand is not None:
        number = int(shorthand.group("number"))
        if number <= 0 or not default_owner or not default_repo:
            return None
        return GitHubIssueRef(
            owner=default_owner,
            repo=default_repo,
            number=number,
            url=f"https://github.com/{default_owner}/{default_repo}/issues/{number}",
        )

    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"} or (parsed.hostname or "").lower() != "github.com":
        return None
    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) != 4:
        return None
    owner, repo, kind, raw_number = segments
    if kind not in _REF_KINDS or not _NAME.match(owner) or not _NAME.match(repo) or not raw_number.isdigit():
        return None
    number = int(raw_number)
    if number <= 0:
        return None
    return GitHubIssueRef(
        owner=owner,
        repo=repo,
        number=number,
        url=f"https://github.com/{owner}/{repo}/{kind}/{number}",
    )


def strip_sections(body: str | None, labels: Sequence[str]) -> str:
    """Remove every section whose heading matches one of ``labels``."""

    if not body:
        return ""
    kept: List[str] = []
    skipping = False
    for line, heading in _iter_lines(body):
        if heading is not None:
            skipping = _label_matches(heading, labels)
        if not skipping:
            kept.append(line)
    return "".join(kept).rstrip()


def _strip_branch_prefixes(branch: str) -> str:
    for prefix in ("refs/heads/", "origin/"):
        if branch.startswith(prefix):
            branch = branch[len(prefix) :]
    return branch


def resolve_base_branch(
    issue_branch: str | None,
    explicit_input: str | None,
    repo_default: str | None,
) -> str:
    """Pick the base branch: explicit input, then the issue field, then the default."""

    for candidate in (explicit_input, issue_branch, repo_default):
        text = (candidate or "").strip()
        if text:
            resolved = _strip_branch_prefixes(text)
            if resolved:
                return resolved
    raise ConfigError("Unable to resolve a base branch: none was given and the repository reported no default.")


# ---------------------------------------------------------------------- assembly


def _fetch_reference(client: IssueSource, ref: GitHubIssueRef, heading: str) -> Optional[str]:
    try:
        issue = client.get_issue(ref.owner, ref.repo, ref.number)
    except GitHubAPIError as error:
        LOGGER.warning("Failed to fetch referenced %s (%s). Continuing without it. %s", heading.lower(), ref.url, error)
        return None
    return f"REFERENCED {heading.upper()}\nURL: {ref.url}\nTitle: {issue.title}\n\nBody:\n{issue.body}\n"


def build_issue_context(
    client: IssueSource,
    owner: str,
    repo: str,
    number: int,
    config: "RunConfig",
    *,
    issue: GitHubIssue | None = None,
) -> IssueContext:
    """Fetch the issue and everything it references into an :class:`IssueContext`.

    Test commands written in the issue win over configured fallbacks. The
    user-story section is dropped from the prompt body once the referenced
    story has been fetched, since its full text is appended separately.
    """

    issue = issue or client.get_issue(owner, repo, number)
    body = issue.body

    user_story_ref = parse_issue_ref(extract_first_field(body, USER_STORY_LABELS), owner, repo)
    test_case_ref = parse_issue_ref(extract_first_field(body, TEST_CASE_LABELS), owner, repo)

    referenced: List[str] = []
    resolved_body = body.rstrip()
    if user_story_ref is not None:
        block = _fetch_reference(client, user_story_ref, "User story issue")
        if block is not None:
            referenced.append(block)
            resolved_body = strip_sections(body, USER_STORY_LABELS)
    if test_case_ref is not None:
        block = _fetch_reference(client, test_case_ref, "Test case issue")
        if block is not None:
            referenced.append(block)

    test_specific = extract_first_field(body, TEST_SPECIFIC_LABELS) or config.test_specific
    test_suite = extract_first_field(body, TEST_SUITE_LABELS) or config.test_suite

    issue_branch = extract_first_field(body, BASE_BRANCH_LABELS)
    repo_default = None
    if not (config.base_branch or issue_branch):
        repo_default = client.get_default_branch(owner, repo)
    target_branch = resolve_base_branch(issue_branch, config.base_branch, repo_default)

    LOGGER.info(
        "Resolved issue #%d: base=%s specific=%s suite=%s references=%d",
        number,
        target_branch,
        bool(test_specific),
        bool(test_suite),
        len(referenced),
    )
    return IssueContext(
        number=number,
        title=issue.title,
        body=body,
        resolved_body=resolved_body,
        target_branch=target_branch,
        test_command_specific=test_specific,
        test_command_suite=test_suite,
        referenced_issues=tuple(referenced),
        labels=issue.labels,
    )


__all__ = [
    "EMPTY_FIELD_PLACEHOLDER",
    "GitHubIssueRef",
    "IssueContext",
    "IssueSource",
    "build_issue_context",
    "extract_field",
    "extract_first_field",
    "parse_issue_ref",
    "resolve_base_branch",
    "strip_sections",
]
