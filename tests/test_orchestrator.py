from __future__ import annotations

import json
import logging

import pytest

from autofix.credentials import Credentials
from autofix.feedback import FailureKind
from autofix.issue_context import IssueContext
from autofix.orchestrator import (
    AgentFailed,
    EngineSettings,
    Fixed,
    NoChangesMade,
    PatchRejected,
    RepairEngine,
    TEST_OUTPUT_LIMIT,
    TestsFailed,
)
from autofix.tools.diff_guard import PatchApplyError
from autofix.tools.vcs import GitIdentity, GitRepository, GitWorkspace

from conftest import BUGGY_CALC, FIXED_CALC, SandboxRepo, python_command
from fakes import ScriptedAgent, crash, emit, ok, write_file

CALC_DIFF = (
    "diff --git a/calc.py b/calc.py\n"
    "--- a/calc.py\n"
    "+++ b/calc.py\n"
    "@@ -1,5 +1,5 @@\n"
    " def add(a, b):\n"
    "-    return a - b\n"
    "+    return a + b\n"
    " \n"
    " \n"
    " def sub(a, b):\n"
)


def _context(specific: str | None = None, suite: str | None = None) -> IssueContext:
    return IssueContext(
        number=7,
        title="Calculator adds wrong",
        body="add(2, 3) returns -1",
        resolved_body="### Bug description\nadd(2, 3) returns -1",
        target_branch="main",
        test_command_specific=specific,
        test_command_suite=suite,
    )


def _engine(repo: SandboxRepo, agent: ScriptedAgent, **settings: object) -> RepairEngine:
    workspace = GitWorkspace(
        GitRepository(repo.root),
        identity=GitIdentity(name="Autofix Bot", email="bot@example.com"),
        clock=lambda: 1,
    )
    values = {"model": "test-model", "retry_max": 3, "test_timeout": 60.0}
    values.update(settings)
    return RepairEngine(agent, workspace, EngineSettings(**values), Credentials(openai_api_key="sk"))  # type: ignore[arg-type]


SPECIFIC = python_command("check_specific.py")
SUITE = python_command("check_suite.py")


def test_fix_on_first_attempt_is_committed_and_pushed(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)])

    outcome = _engine(sandbox_repo, agent).run(_context(specific=SPECIFIC))

    assert isinstance(outcome, Fixed)
    assert outcome.attempts == 1
    assert outcome.branch_name == "autofix/issue-7-1"
    assert "calc.py" in outcome.diff_summary
    assert sandbox_repo.commits_since("main", outcome.branch_name) == 1
    assert outcome.branch_name in sandbox_repo.origin_branches()
    assert "FAIL: add(2, 3) == -1, expected 5" in agent.prompts[0]
    assert "TEST FAILURE OUTPUT (before any fix)" in agent.prompts[0]


def test_agent_that_never_edits_exhausts_retries(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([emit("I looked at calc.py and everything seems fine.")])

    outcome = _engine(sandbox_repo, agent, retry_max=2).run(_context(specific=SPECIFIC))

    assert outcome == NoChangesMade(attempts=2)
    assert len(agent.calls) == 2
    assert "PREVIOUS ATTEMPT FAILED (no-changes)" in agent.prompts[1]
    assert "everything seems fine" in agent.prompts[1]
    assert sandbox_repo.origin_branches() == ["main"]
    assert sandbox_repo.read("calc.py") == BUGGY_CALC


def test_suite_failure_feeds_into_next_attempt(sandbox_repo: SandboxRepo) -> None:
    breaks_sub = FIXED_CALC.replace("def sub(a, b):\n    return a - b", "def sub(a, b):\n    return b - a")
    agent = ScriptedAgent([write_file("calc.py", breaks_sub), write_file("calc.py", FIXED_CALC)])

    outcome = _engine(sandbox_repo, agent).run(_context(specific=SPECIFIC, suite=SUITE))

    assert isinstance(outcome, Fixed)
    assert outcome.attempts == 2
    assert "FAIL: sub(5, 3) == -2" in agent.prompts[1]
    assert "retry attempt #2" in agent.prompts[1]
    assert "PREVIOUS ATTEMPT FAILED (tests-failed)" in agent.prompts[1]
    assert sandbox_repo.commits_since("main", outcome.branch_name) == 1
    assert sandbox_repo.read("calc.py") == FIXED_CALC


def test_tests_keep_failing_until_attempts_run_out(sandbox_repo: SandboxRepo) -> None:
    broken = BUGGY_CALC.replace("return a - b", "return a * b", 1)
    agent = ScriptedAgent([write_file("calc.py", broken)])

    outcome = _engine(sandbox_repo, agent, retry_max=2).run(_context(suite=SUITE))

    assert isinstance(outcome, TestsFailed)
    assert outcome.attempts == 2
    assert "FAIL: add(2, 3) == 6" in outcome.last_output
    assert sandbox_repo.read("calc.py") == BUGGY_CALC
    assert sandbox_repo.origin_branches() == ["main"]


def test_agent_crash_becomes_agent_failed(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([crash("Traceback: provider unavailable", exit_code=2)])

    outcome = _engine(sandbox_repo, agent, retry_max=2).run(_context())

    assert isinstance(outcome, AgentFailed)
    assert "exited with code 2" in outcome.last_output
    assert "provider unavailable" in outcome.last_output
    assert "PREVIOUS ATTEMPT FAILED (agent-failed)" in agent.prompts[1]


def test_agent_edits_are_discarded_between_attempts(sandbox_repo: SandboxRepo) -> None:
    seen = []

    def inspect_then_scribble(params):
        seen.append((params.repo_root / "scratch.txt").exists())
        (params.repo_root / "scratch.txt").write_text("notes", encoding="utf-8")
        return ok()

    agent = ScriptedAgent([inspect_then_scribble])

    outcome = _engine(sandbox_repo, agent, retry_max=3).run(_context(suite=SUITE))

    assert isinstance(outcome, TestsFailed)
    assert seen == [False, False, False]
    assert not (sandbox_repo.root / "scratch.txt").exists()


def test_diff_agent_output_is_extracted_and_applied(sandbox_repo: SandboxRepo) -> None:
    output = f"Here is the patch:\n\n```diff\n{CALC_DIFF}```\n"
    agent = ScriptedAgent([emit(output)], edits_working_tree=False)

    outcome = _engine(sandbox_repo, agent).run(_context(specific=SPECIFIC))

    assert isinstance(outcome, Fixed)
    assert sandbox_repo.git("show", f"{outcome.branch_name}:calc.py") == FIXED_CALC


def test_diff_touching_lockfile_is_rejected(sandbox_repo: SandboxRepo) -> None:
    lockfile_diff = (
        "diff --git a/package-lock.json b/package-lock.json\n"
        "--- a/package-lock.json\n"
        "+++ b/package-lock.json\n"
        "@@ -0,0 +1 @@\n"
        "+{}\n"
    )
    agent = ScriptedAgent([emit(CALC_DIFF + lockfile_diff)], edits_working_tree=False)

    outcome = _engine(sandbox_repo, agent, retry_max=2).run(_context(specific=SPECIFIC))

    assert isinstance(outcome, PatchRejected)
    assert "forbidden" in outcome.reason
    assert "PREVIOUS ATTEMPT FAILED (patch-rejected)" in agent.prompts[1]
    assert sandbox_repo.read("calc.py") == BUGGY_CALC


def test_oversized_diff_is_rejected_without_applying(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([emit(CALC_DIFF)], edits_working_tree=False)

    outcome = _engine(sandbox_repo, agent, retry_max=1, max_diff_lines=1).run(_context(specific=SPECIFIC))

    assert isinstance(outcome, PatchRejected)
    assert "too large" in outcome.reason
    assert sandbox_repo.read("calc.py") == BUGGY_CALC


def test_output_without_diff_is_rejected(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([emit("I am not sure how to fix this.")], edits_working_tree=False)

    outcome = _engine(sandbox_repo, agent, retry_max=1).run(_context())

    assert isinstance(outcome, PatchRejected)


def test_internal_test_loop_gets_chained_command_and_skips_verification(sandbox_repo: SandboxRepo) -> None:
    # "false" as the suite: a re-run after the agent loop would fail the attempt.
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)], supports_test_loop=True)

    outcome = _engine(sandbox_repo, agent, internal_test_loop=True).run(_context(specific=SPECIFIC, suite="false"))

    assert isinstance(outcome, Fixed)
    assert agent.calls[0].test_command == f"{SPECIFIC} && false"
    assert "Do NOT run any tests" not in agent.prompts[0]


def test_internal_test_loop_with_only_specific_still_verifies(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([write_file("calc.py", "def add(a, b):\n    return 0\n")], supports_test_loop=True)

    outcome = _engine(sandbox_repo, agent, internal_test_loop=True, retry_max=1).run(_context(specific=SPECIFIC))

    assert isinstance(outcome, TestsFailed)
    assert agent.calls[0].test_command == SPECIFIC


def test_internal_test_loop_ignored_for_agents_without_support(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)])

    outcome = _engine(sandbox_repo, agent, internal_test_loop=True).run(_context(specific=SPECIFIC, suite=SUITE))

    assert isinstance(outcome, Fixed)
    assert agent.calls[0].test_command is None
    assert "Do NOT run any tests" in agent.prompts[0]


def test_change_without_test_commands_is_accepted_unverified(
    sandbox_repo: SandboxRepo, caplog: pytest.LogCaptureFixture
) -> None:
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)])

    with caplog.at_level(logging.WARNING):
        outcome = _engine(sandbox_repo, agent).run(_context())

    assert isinstance(outcome, Fixed)
    assert "without verification" in caplog.text
    assert "TEST FAILURE OUTPUT" not in agent.prompts[0]


def test_passing_pre_test_adds_no_failure_output(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)])

    _engine(sandbox_repo, agent).run(_context(specific=python_command("-c \"print('fine')\"")))

    assert "TEST FAILURE OUTPUT" not in agent.prompts[0]


def test_attempt_events_are_logged_as_json(sandbox_repo: SandboxRepo, caplog: pytest.LogCaptureFixture) -> None:
    agent = ScriptedAgent([emit("nothing"), write_file("calc.py", FIXED_CALC)])

    with caplog.at_level(logging.INFO, logger="autofix.telemetry"):
        _engine(sandbox_repo, agent).run(_context(specific=SPECIFIC))

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "autofix.telemetry"]
    assert [event["event"] for event in events] == [
        "attempt_started",
        "attempt_failed",
        "attempt_started",
        "attempt_succeeded",
    ]
    assert events[1]["kind"] == FailureKind.NO_CHANGES.value
    assert events[2]["retry"] == "no-changes"


WRITES_REPORT = python_command("-c \"open('report.xml', 'w').write('<ok/>')\"")


def test_files_written_by_pre_test_are_not_agent_changes(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([emit("I changed nothing")])

    outcome = _engine(sandbox_repo, agent, retry_max=1).run(_context(specific=WRITES_REPORT))

    assert outcome == NoChangesMade(attempts=1)
    assert sandbox_repo.origin_branches() == ["main"]
    assert not (sandbox_repo.root / "report.xml").exists()


def test_files_written_during_verification_stay_out_of_the_commit(sandbox_repo: SandboxRepo) -> None:
    agent = ScriptedAgent([write_file("calc.py", FIXED_CALC)])

    outcome = _engine(sandbox_repo, agent).run(_context(suite=WRITES_REPORT))

    assert isinstance(outcome, Fixed)
    assert "report.xml" not in outcome.diff_summary
    committed = sandbox_repo.git("show", "--name-only", "--format=", outcome.branch_name).split()
    assert committed == ["calc.py"]


class _StubbornWorkspace(GitWorkspace):
    def apply_diff(self, diff: str) -> None:
        raise PatchApplyError("git apply --check failed: " + "error: patch does not apply\n" * 1000)


def test_apply_failure_reason_is_truncated(sandbox_repo: SandboxRepo) -> None:
    workspace = _StubbornWorkspace(
        GitRepository(sandbox_repo.root),
        identity=GitIdentity(name="Autofix Bot", email="bot@example.com"),
        clock=lambda: 1,
    )
    agent = ScriptedAgent([emit(CALC_DIFF)], edits_working_tree=False)
    engine = RepairEngine(
        agent, workspace, EngineSettings(model="test-model", retry_max=1), Credentials(openai_api_key="sk")
    )

    outcome = engine.run(_context())

    assert isinstance(outcome, PatchRejected)
    assert outcome.reason.startswith("git apply --check failed")
    assert "[TRUNCATED:" in outcome.reason
    assert len(outcome.reason) < TEST_OUTPUT_LIMIT + 100
