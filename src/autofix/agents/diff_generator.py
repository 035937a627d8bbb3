"""Diff-generating agent: asks a model for a unified diff, never edits files.

The agent works in two model calls. First it shows the model the tracked file
list and asks which files (at most eight) are worth reading. Then it sends
the selected file contents and asks for a minimal unified diff. The raw model
text is returned as ``stdout``; extraction, validation and application belong
to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence

from ..credentials import Credentials
from ..errors import MissingCredentialsError
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..models.openai_client import OpenAIResponsesClient
from ..prompts import DIFF_INSTRUCTIONS, FILE_SELECTION_INSTRUCTIONS, render_diff_input, render_file_selection_input
from ..tools.vcs import GitError, GitRepository
from ..utils.text import safe_repo_relative_path, truncate
from .base import AgentKind, AgentParams, AgentResult, RepairAgent

LOGGER = logging.getLogger(__name__)

DEFAULT_DIFF_MODEL = "gpt-5.1-codex-max"
MAX_SELECTED_FILES = 8
FILE_LIST_LIMIT = 120_000
FILE_SNIPPET_LIMIT = 12_000
FILE_CONTEXT_LIMIT = 220_000

ClientFactory = Callable[[str, str, float], LLMClient]
FileLister = Callable[[Path], Sequence[str]]


@dataclass(slots=True)
class FileSelection:
    """Files the model wants to read before proposing a diff."""

    files: List[str] = field(default_factory=list)


def _default_client(api_key: str, model: str, timeout: float) -> LLMClient:
    return OpenAIResponsesClient(api_key=api_key, model=model, timeout=timeout)


def _git_file_list(repo_root: Path) -> Sequence[str]:
    return GitRepository(repo_root).list_tracked_paths()


def read_file_context(repo_root: Path, selected: Sequence[str]) -> str:
    """Concatenate the selected files, skipping unsafe or missing entries."""
    blocks: list[str] = []
    for relative in selected:
        try:
            resolved = safe_repo_relative_path(repo_root, relative)
        except ValueError as error:
            LOGGER.warning("Skipping unsafe file selection %r: %s", relative, error)
            continue
        if not resolved.is_file():
            continue
        raw = resolved.read_text(encoding="utf-8", errors="replace")
        blocks.append(f"FILE: {relative}\n-----\n{truncate(raw, FILE_SNIPPET_LIMIT)}\n-----\n")
    return truncate("\n".join(blocks), FILE_CONTEXT_LIMIT)


class DiffGeneratingAgent(RepairAgent):
    kind = AgentKind.OPENAI_DIFF
    default_model = DEFAULT_DIFF_MODEL
    edits_working_tree = False
    supports_test_loop = False

    def __init__(
        self,
        *,
        client_factory: ClientFactory = _default_client,
        file_lister: FileLister = _git_file_list,
    ) -> None:
        self._client_factory = client_factory
        self._file_lister = file_lister

    def require_credentials(self, credentials: Credentials) -> None:
        self._openai_key(credentials)

    @staticmethod
    def _openai_key(credentials: Credentials) -> str:
        if not credentials.openai_api_key:
            raise MissingCredentialsError("The openai-diff agent needs OPENAI_API_KEY; it is not set.")
        return credentials.openai_api_key

    def install(self, version: str | None = None) -> None:
        LOGGER.debug("openai-diff agent has nothing to install (version=%s)", version)

    def select_files(self, client: LLMClient, params: AgentParams, file_list: str) -> List[str]:
        request: LLMRequest[FileSelection] = LLMRequest(
            prompt=render_file_selection_input(params.prompt, file_list),
            instructions=FILE_SELECTION_INSTRUCTIONS,
            response_model=FileSelection,
            model=params.model,
        )
        selection = client.invoke(request)
        cleaned = [entry.strip() for entry in selection.files if isinstance(entry, str) and entry.strip()]
        return cleaned[:MAX_SELECTED_FILES]

    def run(self, params: AgentParams) -> AgentResult:
        api_key = self._openai_key(params.credentials)
        client = self._client_factory(api_key, params.model, params.timeout)

        try:
            file_list = truncate("\n".join(self._file_lister(params.repo_root)), FILE_LIST_LIMIT)
        except GitError as error:
            return AgentResult(stdout="", stderr=f"Unable to list repository files: {error}", exit_code=1)

        try:
            LOGGER.info("Selecting files to read...")
            selected = self.select_files(client, params, file_list)
            if not selected:
                return AgentResult(stdout="", stderr="Model did not select any files to read.", exit_code=1)
            LOGGER.info("Selected files: %s", ", ".join(selected))

            file_context = read_file_context(params.repo_root, selected)
            LOGGER.info("Generating diff...")
            output = client.generate_text(
                LLMRequest(
                    prompt=render_diff_input(params.prompt, file_context),
                    instructions=DIFF_INSTRUCTIONS,
                    model=params.model,
                )
            )
        except LLMClientError as error:
            return AgentResult(stdout="", stderr=f"Model request failed: {error}", exit_code=1)

        return AgentResult(stdout=output.strip() + "\n", stderr="", exit_code=0)


__all__ = ["DEFAULT_DIFF_MODEL", "DiffGeneratingAgent", "FileSelection", "read_file_context"]
