"""Command line entry point for issue autofix runs."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .agents.base import AgentKind
from .config import RunConfig, load_config
from .errors import AutofixError
from .github import GitHubClient
from .issue_context import build_issue_context
from .runner import run_autofix
from .tools.diff_guard import NoDiffFound, check_diff, extract_diff

APP_HELP = "Turn labelled GitHub bug reports into verified pull requests."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: Optional[Path], overrides: Dict[str, Any]) -> RunConfig:
    try:
        return load_config(config, overrides=overrides)
    except AutofixError as error:
        raise typer.BadParameter(str(error)) from error


@app.command()
def run(
    issue: Optional[int] = typer.Option(None, "--issue", "-i", help="Issue number to fix."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository as owner/name."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to autofix.yaml."),
    agent: Optional[str] = typer.Option(
        None, "--agent", "-a", help=f"Agent to use ({', '.join(kind.value for kind in AgentKind)})."
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model identifier passed to the agent."),
    base_branch: Optional[str] = typer.Option(None, "--base-branch", help="Branch to build the fix from."),
    retry_max: Optional[str] = typer.Option(None, "--retry-max", help="Maximum number of repair attempts."),
    max_diff_lines: Optional[str] = typer.Option(None, "--max-diff-lines", help="Largest diff accepted from the agent."),
    test_specific: Optional[str] = typer.Option(None, "--test-specific", help="Fallback reproduction test command."),
    test_suite: Optional[str] = typer.Option(None, "--test-suite", help="Fallback full-suite test command."),
    internal_test_loop: Optional[bool] = typer.Option(
        None,
        "--internal-test-loop/--no-internal-test-loop",
        help="Let agents that support it run the tests inside their own loop.",
    ),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Local checkout of the repository."),
    working_directory: Optional[Path] = typer.Option(
        None, "--working-directory", help="Subdirectory the agent should work in."
    ),
    skip_install: bool = typer.Option(False, "--skip-install", help="Do not install the agent tooling."),
) -> None:
    """Attempt to fix an issue and open a pull request."""
    run_config = _load(
        config,
        {
            "issue_number": issue,
            "repository": repo,
            "agent_kind": agent,
            "model": model,
            "base_branch": base_branch,
            "retry_max": retry_max,
            "max_diff_lines": max_diff_lines,
            "test_specific": test_specific,
            "test_suite": test_suite,
            "internal_test_loop": internal_test_loop,
            "repo_root": repo_root,
            "working_directory": working_directory,
            "skip_install": skip_install or None,
        },
    )
    output_value = os.environ.get("GITHUB_OUTPUT", "").strip()
    output_path = Path(output_value) if output_value else None

    typer.echo(
        f"Running {run_config.agent_kind.value} on {run_config.repository}#{run_config.issue_number} "
        f"(retry max {run_config.retry_max})."
    )
    try:
        result = run_autofix(run_config, output_path=output_path)
    except AutofixError as error:
        typer.echo(f"Autofix failed: {error}", err=True)
        raise typer.Exit(code=1) from error

    if result.status == "skipped":
        typer.echo(result.message)
        return
    if result.pr_url:
        typer.echo(f"Pull request: {result.pr_url}")
        return
    typer.echo(f"No fix produced: {result.message}", err=True)
    raise typer.Exit(code=1)


@app.command("check-diff")
def check_diff_command(
    path: Path = typer.Argument(..., help="File holding model output or a raw diff."),
    max_diff_lines: int = typer.Option(800, "--max-diff-lines", help="Largest diff accepted."),
) -> None:
    """Run the diff safety checks against saved agent output."""
    if not path.exists():
        raise typer.BadParameter(f"File not found: {path}")
    text = path.read_text(encoding="utf-8", errors="replace")
    try:
        diff = extract_diff(text)
    except NoDiffFound as error:
        typer.echo(f"Rejected: {error}")
        raise typer.Exit(code=1) from error

    verdict = check_diff(diff, max_changed_lines=max_diff_lines)
    if verdict.paths:
        typer.echo("Paths:")
        for entry in verdict.paths:
            typer.echo(f"- {entry}")
    typer.echo(f"Changed lines: {verdict.changed_lines}")
    if not verdict.ok:
        typer.echo(f"Rejected: {verdict.reason}")
        raise typer.Exit(code=1)
    typer.echo("Diff accepted.")


@app.command()
def resolve(
    issue: int = typer.Option(..., "--issue", "-i", help="Issue number to resolve."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository as owner/name."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to autofix.yaml."),
    base_branch: Optional[str] = typer.Option(None, "--base-branch", help="Branch to build the fix from."),
) -> None:
    """Print the context an agent would receive for an issue."""
    run_config = _load(config, {"issue_number": issue, "repository": repo, "base_branch": base_branch})
    try:
        owner, name = run_config.owner_and_name()
        client = GitHubClient(run_config.credentials.github_token)
        context = build_issue_context(client, owner, name, issue, run_config)
    except AutofixError as error:
        typer.echo(f"Failed to resolve issue: {error}", err=True)
        raise typer.Exit(code=1) from error

    typer.echo(f"Issue #{context.number}: {context.title}")
    typer.echo(f"Base branch: {context.target_branch}")
    typer.echo(f"Specific test: {context.test_command_specific or '-'}")
    typer.echo(f"Full suite: {context.test_command_suite or '-'}")
    typer.echo(f"Referenced issues: {len(context.referenced_issues)}")
    typer.echo("")
    typer.echo(context.prompt_body)


if __name__ == "__main__":
    app()
