"""Top-level autofix run: preconditions, context, engine, report."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal, Optional

from .agents import RepairAgent, get_agent
from .config import RunConfig
from .errors import BaseBranchNotFoundError, ConfigError, MissingCredentialsError
from .github import GitHubAPIError, GitHubClient
from .issue_context import build_issue_context
from .orchestrator import EngineSettings, Fixed, RepairEngine, RepairOutcome
from .reporter import Reporter
from .tools.vcs import GitIdentity, GitRepository, GitWorkspace

LOGGER = logging.getLogger(__name__)

RunStatus = Literal["skipped", "fixed", "not-fixed"]


@dataclass(slots=True, frozen=True)
class RunResult:
    status: RunStatus
    outcome: Optional[RepairOutcome] = None
    pr_url: Optional[str] = None
    message: str = ""


def build_workspace(config: RunConfig) -> GitWorkspace:
    identity = GitIdentity()
    if config.git_user_name:
        identity = replace(identity, name=config.git_user_name)
    if config.git_user_email:
        identity = replace(identity, email=config.git_user_email)
    repo = GitRepository(config.repo_root, timeout=config.git_timeout)
    return GitWorkspace(repo, remote=config.remote, branch_prefix=config.branch_prefix, identity=identity)


def engine_settings(config: RunConfig, agent: RepairAgent) -> EngineSettings:
    return EngineSettings(
        model=config.model or agent.default_model,
        retry_max=config.retry_max,
        max_diff_lines=config.max_diff_lines,
        agent_timeout=config.agent_timeout,
        test_timeout=config.test_timeout,
        internal_test_loop=config.internal_test_loop,
        working_directory=config.working_directory,
    )


def run_autofix(
    config: RunConfig,
    *,
    client: GitHubClient | None = None,
    agent: RepairAgent | None = None,
    workspace: GitWorkspace | None = None,
    output_path: Path | None = None,
) -> RunResult:
    """Run the full pipeline for ``config.issue_number``.

    Precondition failures (configuration, credentials) raise before any API
    call. Once the issue has been fetched, every unexpected error is reported
    as an issue comment and then re-raised.
    """

    owner, repo = config.owner_and_name()
    number = config.issue_number
    if number is None:
        raise ConfigError("No issue number given. Pass --issue N or set AUTOFIX_ISSUE.")

    agent = agent or get_agent(config.agent_kind)
    agent.require_credentials(config.credentials)
    if client is None:
        if not config.credentials.github_token:
            raise MissingCredentialsError("GITHUB_TOKEN is required to read the issue and open a pull request.")
        client = GitHubClient(config.credentials.github_token)

    issue = client.get_issue(owner, repo, number)
    if config.required_label and config.required_label not in issue.labels:
        message = f"Issue #{number} does not have label '{config.required_label}'. Skipping."
        LOGGER.info(message)
        return RunResult(status="skipped", message=message)

    reporter = Reporter(client, owner, repo, output_path=output_path)
    try:
        context = build_issue_context(client, owner, repo, number, config, issue=issue)
        if not client.branch_exists(owner, repo, context.target_branch):
            raise BaseBranchNotFoundError(context.target_branch, f"{owner}/{repo}")

        if config.skip_install:
            LOGGER.info("Skipping %s installation", agent.describe())
        else:
            agent.install(config.agent_version)

        engine = RepairEngine(
            agent,
            workspace or build_workspace(config),
            engine_settings(config, agent),
            config.credentials,
        )
        outcome = engine.run(context)
        pr_url = reporter.report(outcome, context)
    except Exception as error:
        LOGGER.error("Autofix run for issue #%d failed: %s", number, error)
        try:
            reporter.report_error(number, error)
        except GitHubAPIError as comment_error:
            LOGGER.error("Failed to post the error comment: %s", comment_error)
        raise

    status: RunStatus = "fixed" if isinstance(outcome, Fixed) else "not-fixed"
    return RunResult(status=status, outcome=outcome, pr_url=pr_url, message=type(outcome).__name__)


__all__ = ["RunResult", "build_workspace", "engine_settings", "run_autofix"]
