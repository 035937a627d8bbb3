"""Error taxonomy shared across the autofix pipeline.

Precondition errors are raised before any subprocess or API side effect and
carry an actionable message. Attempt-local failures (agent crash, rejected
patch, failing tests) never surface as exceptions from the engine; they are
folded into retry feedback instead.
"""

from __future__ import annotations

from typing import Any, Mapping


class AutofixError(RuntimeError):
    """Base error for the autofix pipeline."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PreconditionError(AutofixError):
    """Raised when the run cannot start safely."""


class ConfigError(PreconditionError):
    """Raised for invalid or incomplete configuration."""


class MissingCredentialsError(PreconditionError):
    """Raised when an agent or client lacks the credentials it needs."""


class UnknownAgentError(PreconditionError):
    """Raised when an agent tag does not name a supported variant."""


class AgentInstallError(AutofixError):
    """Raised when an agent's tooling cannot be installed."""


class BaseBranchNotFoundError(PreconditionError):
    """Raised when the resolved base branch does not exist on the remote."""

    def __init__(self, branch: str, repository: str) -> None:
        super().__init__(
            f"Base branch '{branch}' does not exist in {repository}. "
            "Set the 'Base branch' field on the issue or pass --base-branch with an existing branch.",
            details={"branch": branch, "repository": repository},
        )
        self.branch = branch


__all__ = [
    "AgentInstallError",
    "AutofixError",
    "BaseBranchNotFoundError",
    "ConfigError",
    "MissingCredentialsError",
    "PreconditionError",
    "UnknownAgentError",
]
