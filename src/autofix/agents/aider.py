"""Model-directed agent backed by the ``aider`` CLI.

Aider edits the working tree in place. When handed a test command it runs
that command after each edit and keeps iterating until the command passes
(``--auto-test``), so it can own the verification step for an attempt.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List

from ..credentials import Credentials
from ..errors import AgentInstallError, MissingCredentialsError
from .base import AgentKind, AgentParams, AgentResult, RepairAgent, run_agent_process, subprocess_env

LOGGER = logging.getLogger(__name__)

DEFAULT_AIDER_MODEL = "gpt-4o"


class AiderAgent(RepairAgent):
    kind = AgentKind.AIDER
    default_model = DEFAULT_AIDER_MODEL
    edits_working_tree = True
    supports_test_loop = True

    def __init__(self, executable: str = "aider") -> None:
        self.executable = executable

    def require_credentials(self, credentials: Credentials) -> None:
        if not credentials.openai_api_key and not credentials.anthropic_api_key:
            raise MissingCredentialsError(
                "The aider agent needs OPENAI_API_KEY or ANTHROPIC_API_KEY; neither is set."
            )

    def install(self, version: str | None = None) -> None:
        package = f"aider-chat=={version}" if version else "aider-chat"
        LOGGER.info("Installing %s", package)
        process = subprocess.run(  # noqa: S603
            [sys.executable, "-m", "pip", "install", package],
            capture_output=True,
            text=True,
            check=False,
        )
        if process.returncode != 0:
            raise AgentInstallError(f"Failed to install aider: {(process.stderr or process.stdout).strip()}")
        LOGGER.info("Aider installed successfully.")

    def build_command(self, params: AgentParams, prompt_file: Path) -> List[str]:
        args = [self.executable, "--yes-always", "--no-auto-commits"]
        if params.working_directory and params.working_directory.resolve() != params.repo_root.resolve():
            args.append("--subtree-only")
        if params.test_command:
            args.extend(["--test-cmd", params.test_command, "--auto-test"])
        args.extend(["--model", params.model, "--message-file", str(prompt_file)])
        return args

    def run(self, params: AgentParams) -> AgentResult:
        self.require_credentials(params.credentials)

        handle, raw_path = tempfile.mkstemp(prefix="aider-prompt-", suffix=".txt")
        prompt_file = Path(raw_path)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(params.prompt)
            command = self.build_command(params, prompt_file)
            LOGGER.info("Running aider: %s", " ".join(command[:-2] + ["--message-file", "<prompt>"]))
            env = subprocess_env(params.credentials.provider_env())
            return run_agent_process(command, cwd=params.cwd, env=env, timeout=params.timeout)
        finally:
            prompt_file.unlink(missing_ok=True)


__all__ = ["AiderAgent", "DEFAULT_AIDER_MODEL"]
