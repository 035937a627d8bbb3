"""Attempt/retry engine that drives a repair agent to a verified fix."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Tuple, Union

from .agents.base import DEFAULT_AGENT_TIMEOUT, AgentParams, AgentResult, RepairAgent
from .credentials import Credentials
from .feedback import FailureKind, RepairFeedback
from .issue_context import IssueContext
from .prompts import build_agent_prompt
from .tools.commands import DEFAULT_TEST_TIMEOUT, TestCommand
from .tools.diff_guard import PatchError, check_diff, extract_diff
from .tools.vcs import GitWorkspace
from .utils.text import combine_output, truncate

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("autofix.telemetry")

PRE_FIX_OUTPUT_LIMIT = 15_000
TEST_OUTPUT_LIMIT = 8_000
AGENT_OUTPUT_LIMIT = 8_000

TestStatus = Literal["not-run", "passed", "failed"]


@dataclass(slots=True, frozen=True)
class TestOutcome:
    __test__ = False

    status: TestStatus = "not-run"
    output: str = ""
    command: Optional[str] = None


@dataclass(slots=True)
class RepairAttempt:
    """One iteration of the loop; discarded once its feedback is recorded."""

    attempt_index: int
    prompt: str
    agent_result: Optional[AgentResult] = None
    working_tree_changed: bool = False
    test_outcome: TestOutcome = field(default_factory=TestOutcome)
    failure: Optional[FailureKind] = None
    failure_output: str = ""

    def fail(self, kind: FailureKind, output: str) -> "RepairAttempt":
        self.failure = kind
        self.failure_output = output
        return self


# ---------------------------------------------------------------------- outcomes


@dataclass(slots=True, frozen=True)
class Fixed:
    branch_name: str
    diff_summary: str
    commit_sha: str
    attempts: int = 1


@dataclass(slots=True, frozen=True)
class NoChangesMade:
    attempts: int


@dataclass(slots=True, frozen=True)
class AgentFailed:
    last_output: str
    attempts: int = 1


@dataclass(slots=True, frozen=True)
class TestsFailed:
    __test__ = False

    last_output: str
    attempts: int = 1


@dataclass(slots=True, frozen=True)
class PatchRejected:
    reason: str
    attempts: int = 1


RepairOutcome = Union[Fixed, NoChangesMade, AgentFailed, TestsFailed, PatchRejected]


@dataclass(slots=True, frozen=True)
class EngineSettings:
    """Knobs for one engine run; derived from :class:`~autofix.config.RunConfig`."""

    model: str
    retry_max: int = 3
    max_diff_lines: int = 800
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT
    test_timeout: float = DEFAULT_TEST_TIMEOUT
    internal_test_loop: bool = False
    working_directory: Optional[Path] = None


# ---------------------------------------------------------------------- telemetry


def _serialise_event_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_event(event: str, **fields: Any) -> None:
    """Log one structured telemetry event as compact JSON."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


# ---------------------------------------------------------------------- engine


class RepairEngine:
    """Run PreTest -> AgentRun -> ChangeCheck -> Verify until success or retries run out.

    The engine never runs git itself; branch state and the working tree are
    owned by the :class:`GitWorkspace`. Attempt-local failures become
    :class:`RepairFeedback` for the next prompt and never escape as
    exceptions; running out of attempts yields a terminal outcome.
    """

    def __init__(
        self,
        agent: RepairAgent,
        workspace: GitWorkspace,
        settings: EngineSettings,
        credentials: Credentials,
    ) -> None:
        self.agent = agent
        self.workspace = workspace
        self.settings = settings
        self.credentials = credentials

    # ------------------------------------------------------------------ commands

    def _test_command(self, name: str, command: str | None) -> Optional[TestCommand]:
        if not command or not command.strip():
            return None
        return TestCommand(name=name, command=command.strip(), timeout=self.settings.test_timeout)

    def verification_command(self, context: IssueContext) -> Optional[TestCommand]:
        """The full suite wins; the specific test is the fallback."""
        return self._test_command("suite", context.test_command_suite) or self._test_command(
            "specific", context.test_command_specific
        )

    def agent_test_command(self, context: IssueContext) -> Tuple[Optional[str], bool]:
        """Command handed to an agent that runs its own test loop.

        Returns the command and whether it covers the full suite. When both
        commands exist they are chained so the agent must satisfy both.
        """
        if not (self.settings.internal_test_loop and self.agent.supports_test_loop):
            return None, False
        specific = (context.test_command_specific or "").strip()
        suite = (context.test_command_suite or "").strip()
        if specific and suite:
            return f"{specific} && {suite}", True
        if suite:
            return suite, True
        if specific:
            return specific, False
        return None, False

    # ------------------------------------------------------------------ states

    def run_pre_test(self, context: IssueContext) -> Optional[str]:
        """Run the reproduction test once and return its failing output, if any."""
        command = self._test_command("specific", context.test_command_specific)
        if command is None:
            LOGGER.info("No specific test command provided; skipping pre-fix test.")
            return None
        result = command.run(self.workspace.root)
        if result.passed:
            LOGGER.info("Specific test passed before the fix; no failure output to include.")
            return None
        LOGGER.info("Specific test failed before the fix (%s); including its output in the prompt.", result.short_message())
        return result.failure_output(PRE_FIX_OUTPUT_LIMIT)

    def _apply_generated_diff(self, model_output: str) -> Optional[str]:
        """Extract, validate, size-check and apply a diff; return a rejection reason."""
        try:
            diff = extract_diff(model_output)
        except PatchError as error:
            return str(error)
        verdict = check_diff(diff, max_changed_lines=self.settings.max_diff_lines)
        if not verdict.ok:
            return verdict.reason or "Diff rejected."
        try:
            self.workspace.apply_diff(diff)
        except PatchError as error:
            return truncate(str(error), TEST_OUTPUT_LIMIT)
        LOGGER.info("Applied diff touching %s (%d changed lines)", ", ".join(verdict.paths), verdict.changed_lines)
        return None

    def run_attempt(self, context: IssueContext, feedback: RepairFeedback) -> RepairAttempt:
        """Execute one attempt and classify its result."""
        test_command, covers_suite = self.agent_test_command(context)
        prompt = build_agent_prompt(context, feedback, owns_test_loop=test_command is not None)
        attempt = RepairAttempt(attempt_index=feedback.attempt_index, prompt=prompt)

        _emit_event(
            "attempt_started",
            issue=context.number,
            attempt=attempt.attempt_index,
            agent=self.agent.describe(),
            retry=feedback.kind.value if feedback.kind else None,
        )
        result = self.agent.run(
            AgentParams(
                prompt=prompt,
                repo_root=self.workspace.root,
                model=self.settings.model,
                credentials=self.credentials,
                working_directory=self.settings.working_directory,
                test_command=test_command,
                timeout=self.settings.agent_timeout,
            )
        )
        attempt.agent_result = result
        agent_output = truncate(combine_output(result.stdout, result.stderr), AGENT_OUTPUT_LIMIT)

        if not result.ok:
            detail = "timed out" if result.timed_out else f"exited with code {result.exit_code}"
            return attempt.fail(FailureKind.AGENT_FAILED, f"Agent {detail}.\n{agent_output}".strip())

        if not self.agent.edits_working_tree:
            reason = self._apply_generated_diff(result.stdout)
            if reason is not None:
                _emit_event("patch_rejected", issue=context.number, attempt=attempt.attempt_index, reason=reason)
                self.workspace.reset()
                return attempt.fail(FailureKind.PATCH_REJECTED, reason)

        attempt.working_tree_changed = self.workspace.has_changes()
        if not attempt.working_tree_changed:
            return attempt.fail(FailureKind.NO_CHANGES, agent_output)
        LOGGER.info("Attempt %d changed: %s", attempt.attempt_index + 1, ", ".join(self.workspace.changed_paths()))
        self.workspace.stage()

        if test_command is not None and covers_suite:
            LOGGER.info("Agent ran the full suite in its own test loop; skipping re-verification.")
            attempt.test_outcome = TestOutcome(status="passed", command=test_command)
            return attempt

        verification = self.verification_command(context)
        if verification is None:
            LOGGER.warning("No test commands configured; accepting the change without verification.")
            return attempt

        outcome = verification.run(self.workspace.root)
        output = outcome.failure_output(TEST_OUTPUT_LIMIT)
        if not outcome.passed:
            attempt.test_outcome = TestOutcome(status="failed", output=output, command=verification.command)
            return attempt.fail(FailureKind.TESTS_FAILED, output)
        attempt.test_outcome = TestOutcome(status="passed", output=output, command=verification.command)
        return attempt

    # ------------------------------------------------------------------ loop

    def run(self, context: IssueContext) -> RepairOutcome:
        """Prepare the branch, then loop attempts until one is verified."""
        self.workspace.prepare(context.target_branch, context.number)
        feedback = RepairFeedback(pre_fix_output=self.run_pre_test(context))
        retry_max = max(1, self.settings.retry_max)

        for index in range(retry_max):
            # Every attempt, the first included, starts from the base tree.
            self.workspace.reset()
            LOGGER.info("Attempt %d/%d for issue #%d", index + 1, retry_max, context.number)
            attempt = self.run_attempt(context, feedback)

            if attempt.failure is None:
                self.workspace.drop_unstaged()
                diff_summary = self.workspace.diff_summary()
                sha = self.workspace.finalize(context.number)
                branch = self.workspace.branch or ""
                _emit_event(
                    "attempt_succeeded",
                    issue=context.number,
                    attempt=attempt.attempt_index,
                    branch=branch,
                    commit=sha,
                    verified=attempt.test_outcome.status,
                )
                return Fixed(branch_name=branch, diff_summary=diff_summary, commit_sha=sha, attempts=index + 1)

            LOGGER.warning("Attempt %d failed: %s", index + 1, attempt.failure.value)
            _emit_event(
                "attempt_failed",
                issue=context.number,
                attempt=attempt.attempt_index,
                kind=attempt.failure.value,
                output_chars=len(attempt.failure_output),
            )
            feedback = feedback.advance(attempt.failure, attempt.failure_output)

        self.workspace.reset()
        return self._terminal_outcome(feedback, retry_max)

    @staticmethod
    def _terminal_outcome(feedback: RepairFeedback, attempts: int) -> RepairOutcome:
        kind = feedback.kind
        if kind is FailureKind.NO_CHANGES:
            return NoChangesMade(attempts=attempts)
        if kind is FailureKind.TESTS_FAILED:
            return TestsFailed(last_output=feedback.output, attempts=attempts)
        if kind is FailureKind.PATCH_REJECTED:
            return PatchRejected(reason=feedback.output, attempts=attempts)
        return AgentFailed(last_output=feedback.output, attempts=attempts)


__all__ = [
    "AgentFailed",
    "EngineSettings",
    "Fixed",
    "NoChangesMade",
    "PatchRejected",
    "RepairAttempt",
    "RepairEngine",
    "RepairOutcome",
    "TestOutcome",
    "TestsFailed",
]
