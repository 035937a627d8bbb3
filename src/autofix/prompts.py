"""Prompt templates shared by the repair engine and the agents."""

from __future__ import annotations

from typing import List

from .feedback import RepairFeedback
from .issue_context import IssueContext
from .tools.diff_guard import LOCKFILE_NAMES, WORKFLOW_PREFIX

_LOCKFILES = ", ".join(sorted(LOCKFILE_NAMES))

BUG_REPORT_BRIEF = (
    "The bug report contains: "
    "(1) a reference to a USER STORY issue describing the requirement, "
    "(2) a reference to a TEST CASE issue describing preconditions, steps, and expected result, "
    "(3) a BUG DESCRIPTION explaining expected vs actual behavior. "
    "If automated tests exist, the TEST FAILURE OUTPUT shows the actual test errors."
)

FILE_SELECTION_INSTRUCTIONS = (
    "You are an assistant that helps fix bugs in a repository based on a GitHub bug report issue. "
    f"{BUG_REPORT_BRIEF} "
    "Given the issue and repository file list, choose up to 8 files that are most relevant to inspect for fixing the bug. "
    'Return ONLY valid JSON of the form: {"files":["path1","path2"]}.'
)

DIFF_INSTRUCTIONS = (
    "You are an expert software engineer fixing a bug based on a GitHub bug report. "
    f"{BUG_REPORT_BRIEF} "
    "Your task: generate a minimal fix so the actual behavior matches the expected behavior from the test case. "
    "Return ONLY a unified diff that can be applied with `git apply`. "
    "Do not include explanations or extra text. "
    f"Do not modify lockfiles ({_LOCKFILES}) or {WORKFLOW_PREFIX.as_posix()}/*."
)


def render_restrictions(*, owns_test_loop: bool) -> str:
    """Rules appended to every agent prompt."""
    rules = [
        "Make the smallest change that fixes the bug.",
        f"Do NOT modify lockfiles ({_LOCKFILES}) or anything under {WORKFLOW_PREFIX.as_posix()}/.",
        "Do NOT commit, push, or create branches; the changes are committed for you.",
    ]
    if not owns_test_loop:
        rules.append("Do NOT run any tests; verification happens after you finish.")
    return "RESTRICTIONS:\n" + "\n".join(f"- {rule}" for rule in rules)


def build_agent_prompt(
    context: IssueContext,
    feedback: RepairFeedback,
    *,
    owns_test_loop: bool = False,
) -> str:
    """Assemble the full prompt for one attempt."""
    sections: List[str] = [
        f"Fix the bug reported in GitHub issue #{context.number}.",
        f"Issue title:\n{context.title}",
        f"Issue body:\n{context.prompt_body}",
    ]
    if feedback.pre_fix_output:
        sections.append(f"TEST FAILURE OUTPUT (before any fix):\n```\n{feedback.pre_fix_output.strip()}\n```")
    retry_text = feedback.render()
    if retry_text:
        sections.append(retry_text)
    sections.append(render_restrictions(owns_test_loop=owns_test_loop))
    return "\n\n".join(sections) + "\n"


def render_file_selection_input(prompt: str, file_list: str) -> str:
    return f"{prompt.rstrip()}\n\nRepository file list (git ls-files):\n{file_list}"


def render_diff_input(prompt: str, file_context: str) -> str:
    return f"{prompt.rstrip()}\n\nRepository context (selected file contents):\n{file_context}"


__all__ = [
    "DIFF_INSTRUCTIONS",
    "FILE_SELECTION_INSTRUCTIONS",
    "build_agent_prompt",
    "render_diff_input",
    "render_file_selection_input",
    "render_restrictions",
]
