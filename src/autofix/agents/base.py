"""Uniform contract for pluggable repair agents."""

from __future__ import annotations

import enum
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Sequence

from ..credentials import Credentials
from ..errors import UnknownAgentError

LOGGER = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT = 600.0
TIMEOUT_EXIT_CODE = 124


class AgentKind(str, enum.Enum):
    """Tags naming the supported agent variants."""

    AIDER = "aider"
    OPENAI_DIFF = "openai-diff"

    @classmethod
    def parse(cls, value: "str | AgentKind") -> "AgentKind":
        if isinstance(value, AgentKind):
            return value
        for member in cls:
            if member.value == value:
                return member
        supported = ", ".join(member.value for member in cls)
        raise UnknownAgentError(
            f"Unknown agent type: {value!r} (supported: {supported})",
            details={"agent": value},
        )


@dataclass(slots=True, frozen=True)
class AgentParams:
    """Everything an agent needs for one invocation."""

    prompt: str
    repo_root: Path
    model: str
    credentials: Credentials = field(default_factory=Credentials)
    working_directory: Path | None = None
    test_command: str | None = None
    timeout: float = DEFAULT_AGENT_TIMEOUT

    @property
    def cwd(self) -> Path:
        return self.working_directory or self.repo_root


@dataclass(slots=True, frozen=True)
class AgentResult:
    """Captured output of an agent run."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class RepairAgent(ABC):
    """Base class for agents that attempt to fix a bug from a prompt.

    ``edits_working_tree`` distinguishes agents that modify files in place
    from agents that only emit a unified diff for the caller to apply.
    ``supports_test_loop`` marks agents that can run a test command inside
    their own repair loop.
    """

    kind: AgentKind
    default_model: str
    edits_working_tree: bool = True
    supports_test_loop: bool = False

    @abstractmethod
    def require_credentials(self, credentials: Credentials) -> None:
        """Raise :class:`MissingCredentialsError` when required keys are absent."""

    @abstractmethod
    def install(self, version: str | None = None) -> None:
        """Install the agent's tooling (optionally pinned to ``version``)."""

    @abstractmethod
    def run(self, params: AgentParams) -> AgentResult:
        """Run the agent once."""

    def describe(self) -> str:
        return self.kind.value


def subprocess_env(extra: Mapping[str, str], base: Mapping[str, str] | None = None) -> Dict[str, str]:
    """Build a child-process environment without touching ``os.environ``."""
    env: Dict[str, str] = dict(os.environ if base is None else base)
    env.update({str(key): str(value) for key, value in extra.items()})
    return env


def run_agent_process(
    command: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    timeout: float,
) -> AgentResult:
    """Run an agent CLI with a wall-clock bound; timeouts become failed results."""
    try:
        process = subprocess.run(  # noqa: S603  # arguments are built by the agent, not a shell
            list(command),
            cwd=cwd,
            env=dict(env),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        stdout = error.stdout.decode("utf-8", errors="replace") if isinstance(error.stdout, bytes) else (error.stdout or "")
        LOGGER.warning("%s timed out after %.0fs", command[0], timeout)
        return AgentResult(
            stdout=stdout,
            stderr=f"{command[0]} timed out after {timeout:.0f}s",
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
        )
    except FileNotFoundError as error:
        return AgentResult(stdout="", stderr=f"Executable not available: {command[0]} ({error})", exit_code=127)
    return AgentResult(stdout=process.stdout or "", stderr=process.stderr or "", exit_code=process.returncode)


__all__ = [
    "AgentKind",
    "AgentParams",
    "AgentResult",
    "DEFAULT_AGENT_TIMEOUT",
    "RepairAgent",
    "TIMEOUT_EXIT_CODE",
    "run_agent_process",
    "subprocess_env",
]
