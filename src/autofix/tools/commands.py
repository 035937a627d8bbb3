"""Shell test-command execution for reproduction and regression checks.

Test commands come from the bug report (or configuration) as shell strings,
e.g. ``npm test -- login.spec.ts`` or ``pytest tests/test_cart.py && ruff .``,
so they are executed through the shell with a hard wall-clock timeout.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping

from ..utils.text import combine_output, truncate

LOGGER = logging.getLogger(__name__)

CommandStatus = Literal["passed", "failed", "timeout"]

DEFAULT_TEST_TIMEOUT = 1800.0


@dataclass(slots=True, frozen=True)
class TestCommand:
    """Named shell command used to verify a repair."""

    __test__ = False

    name: str
    command: str
    timeout: float = DEFAULT_TEST_TIMEOUT

    def run(self, cwd: Path, *, env: Mapping[str, str] | None = None) -> "CommandResult":
        LOGGER.info("Running %s test command: %s", self.name, self.command)
        try:
            process = subprocess.run(  # noqa: S602  # command is supplied by the bug report owner
                self.command,
                shell=True,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            stdout = _decode(error.stdout)
            stderr = _decode(error.stderr)
            note = f"Command timed out after {self.timeout:.0f}s: {self.command}"
            return CommandResult(
                name=self.name,
                command=self.command,
                status="timeout",
                exit_code=None,
                stdout=stdout,
                stderr=f"{stderr}\n{note}".strip(),
            )

        status: CommandStatus = "passed" if process.returncode == 0 else "failed"
        return CommandResult(
            name=self.name,
            command=self.command,
            status=status,
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
        )


def _decode(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Result produced by :class:`TestCommand`."""

    name: str
    command: str
    status: CommandStatus
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def failure_output(self, limit: int) -> str:
        """Combined stdout/stderr clipped to ``limit`` characters."""
        return truncate(combine_output(self.stdout, self.stderr), limit)

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.name}: passed"
        if self.status == "timeout":
            return f"{self.name}: timed out"
        return f"{self.name}: failed (exit {self.exit_code})"


__all__ = ["CommandResult", "CommandStatus", "DEFAULT_TEST_TIMEOUT", "TestCommand"]
