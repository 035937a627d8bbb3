from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import pytest

from autofix.agents import AgentKind, AgentParams, AiderAgent, DiffGeneratingAgent, get_agent
from autofix.agents.base import TIMEOUT_EXIT_CODE, run_agent_process, subprocess_env
from autofix.agents.diff_generator import read_file_context
from autofix.credentials import Credentials
from autofix.errors import MissingCredentialsError, UnknownAgentError
from autofix.models.llm_client import LLMClient, LLMRequest, LLMTransportError


def test_get_agent_maps_kinds_to_variants() -> None:
    assert isinstance(get_agent(AgentKind.AIDER), AiderAgent)
    assert isinstance(get_agent("openai-diff"), DiffGeneratingAgent)


def test_get_agent_rejects_unknown_tags() -> None:
    with pytest.raises(UnknownAgentError) as excinfo:
        get_agent("codex")
    assert "aider" in str(excinfo.value)
    assert excinfo.value.details["agent"] == "codex"


def test_variants_declare_working_tree_behaviour() -> None:
    assert AiderAgent.edits_working_tree and AiderAgent.supports_test_loop
    assert not DiffGeneratingAgent.edits_working_tree
    assert not DiffGeneratingAgent.supports_test_loop


def test_aider_requires_one_of_two_provider_keys() -> None:
    agent = AiderAgent()

    with pytest.raises(MissingCredentialsError):
        agent.require_credentials(Credentials(github_token="gh"))
    agent.require_credentials(Credentials(anthropic_api_key="sk-ant"))
    agent.require_credentials(Credentials(openai_api_key="sk-openai"))


def test_diff_agent_requires_openai_key() -> None:
    with pytest.raises(MissingCredentialsError):
        DiffGeneratingAgent().require_credentials(Credentials(anthropic_api_key="sk-ant"))


def test_missing_credentials_fail_before_any_subprocess(tmp_path: Path) -> None:
    agent = AiderAgent(executable=str(tmp_path / "never-created"))
    params = AgentParams(prompt="fix", repo_root=tmp_path, model="gpt-4o", credentials=Credentials())

    with pytest.raises(MissingCredentialsError):
        agent.run(params)


def test_aider_command_includes_subtree_and_test_loop(tmp_path: Path) -> None:
    sub = tmp_path / "web"
    sub.mkdir()
    params = AgentParams(
        prompt="fix",
        repo_root=tmp_path,
        model="gpt-4o",
        working_directory=sub,
        test_command="npm test -- calc && npm test",
    )

    command = AiderAgent().build_command(params, Path("/tmp/prompt.txt"))

    assert command[:3] == ["aider", "--yes-always", "--no-auto-commits"]
    assert "--subtree-only" in command
    assert command[command.index("--test-cmd") + 1] == "npm test -- calc && npm test"
    assert "--auto-test" in command
    assert command[-4:] == ["--model", "gpt-4o", "--message-file", "/tmp/prompt.txt"]


def test_aider_command_without_extras(tmp_path: Path) -> None:
    params = AgentParams(prompt="fix", repo_root=tmp_path, model="claude-3", working_directory=tmp_path)

    command = AiderAgent().build_command(params, Path("p.txt"))

    assert "--subtree-only" not in command
    assert "--test-cmd" not in command


def test_aider_passes_keys_through_subprocess_env_only(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    script = tmp_path / "fake_aider.py"
    script.write_text(
        "import os, sys\n"
        "args = sys.argv[1:]\n"
        "prompt = open(args[args.index('--message-file') + 1], encoding='utf-8').read()\n"
        "print(os.environ.get('OPENAI_API_KEY', 'missing'))\n"
        "print(prompt)\n",
        encoding="utf-8",
    )
    launcher = tmp_path / "aider"
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8")
    launcher.chmod(0o755)
    before = dict(os.environ)

    result = AiderAgent(executable=str(launcher)).run(
        AgentParams(
            prompt="please fix the calculator",
            repo_root=tmp_path,
            model="gpt-4o",
            credentials=Credentials(openai_api_key="sk-secret"),
        )
    )

    assert result.ok, result.stderr
    assert result.stdout.splitlines()[0] == "sk-secret"
    assert "please fix the calculator" in result.stdout
    assert dict(os.environ) == before
    assert not list(Path(tempfile.gettempdir()).glob("aider-prompt-*.txt"))


def test_run_agent_process_converts_timeout(tmp_path: Path) -> None:
    result = run_agent_process(
        [sys.executable, "-c", "import time; time.sleep(5)"],
        cwd=tmp_path,
        env=subprocess_env({}),
        timeout=0.5,
    )

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert not result.ok


def test_run_agent_process_reports_missing_executable(tmp_path: Path) -> None:
    result = run_agent_process([str(tmp_path / "missing-binary")], cwd=tmp_path, env={}, timeout=5)

    assert result.exit_code == 127


def test_subprocess_env_does_not_touch_base_mapping() -> None:
    base = {"PATH": "/usr/bin"}

    env = subprocess_env({"OPENAI_API_KEY": "sk"}, base=base)

    assert env == {"PATH": "/usr/bin", "OPENAI_API_KEY": "sk"}
    assert base == {"PATH": "/usr/bin"}


def test_credentials_repr_hides_secrets() -> None:
    credentials = Credentials(github_token="ghp_secret", openai_api_key=" sk-secret ")

    assert "secret" not in repr(credentials)
    assert credentials.openai_api_key == "sk-secret"
    assert credentials.provider_env() == {"OPENAI_API_KEY": "sk-secret"}


class _ScriptedLLM(LLMClient):
    def __init__(self, responses: List[str]) -> None:
        super().__init__(model="scripted", sleep=lambda _: None)
        self.responses = list(responses)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        response = self.responses.pop(0)
        if response == "!transport":
            raise LLMTransportError("HTTP 401: bad key", transient=False, status=401)
        return response


def _diff_agent(llm: _ScriptedLLM, files: List[str]) -> DiffGeneratingAgent:
    return DiffGeneratingAgent(client_factory=lambda key, model, timeout: llm, file_lister=lambda root: files)


def test_diff_agent_selects_files_and_returns_model_diff(tmp_path: Path) -> None:
    (tmp_path / "calc.py").write_text("def add(a, b):\n    return a - b\n", encoding="utf-8")
    diff = "diff --git a/calc.py b/calc.py\n--- a/calc.py\n+++ b/calc.py\n@@ -1,2 +1,2 @@\n"
    llm = _ScriptedLLM(['{"files": ["calc.py", "../etc/passwd", "missing.py"]}', diff])
    agent = _diff_agent(llm, ["calc.py", "README.md"])

    result = agent.run(
        AgentParams(prompt="ISSUE PROMPT", repo_root=tmp_path, model="gpt-x", credentials=Credentials(openai_api_key="k"))
    )

    assert result.ok
    assert result.stdout == diff
    assert "README.md" in llm.payloads[0]["input"]
    assert llm.payloads[0]["input"].startswith("ISSUE PROMPT")
    assert "FILE: calc.py" in llm.payloads[1]["input"]
    assert "return a - b" in llm.payloads[1]["input"]
    assert "passwd" not in llm.payloads[1]["input"].split("Repository context")[1]
    assert not list(tmp_path.glob("*.diff"))


def test_diff_agent_without_selected_files_fails_attempt(tmp_path: Path) -> None:
    agent = _diff_agent(_ScriptedLLM(['{"files": []}']), ["calc.py"])

    result = agent.run(AgentParams(prompt="p", repo_root=tmp_path, model="m", credentials=Credentials(openai_api_key="k")))

    assert result.exit_code == 1
    assert "did not select any files" in result.stderr


def test_diff_agent_maps_model_errors_to_failed_result(tmp_path: Path) -> None:
    agent = _diff_agent(_ScriptedLLM(["!transport"]), ["calc.py"])

    result = agent.run(AgentParams(prompt="p", repo_root=tmp_path, model="m", credentials=Credentials(openai_api_key="k")))

    assert result.exit_code == 1
    assert "401" in result.stderr


def test_diff_agent_checks_key_before_building_client(tmp_path: Path) -> None:
    keys: List[str] = []

    def factory(key: str, model: str, timeout: float) -> LLMClient:
        keys.append(key)
        return _ScriptedLLM(['{"files": []}'])

    agent = DiffGeneratingAgent(client_factory=factory, file_lister=lambda root: ["calc.py"])

    with pytest.raises(MissingCredentialsError):
        agent.run(AgentParams(prompt="p", repo_root=tmp_path, model="m", credentials=Credentials()))
    assert keys == []

    agent.run(AgentParams(prompt="p", repo_root=tmp_path, model="m", credentials=Credentials(openai_api_key="sk-1")))
    assert keys == ["sk-1"]


def test_read_file_context_caps_each_file(tmp_path: Path) -> None:
    (tmp_path / "big.txt").write_text("x" * 13_000, encoding="utf-8")

    context = read_file_context(tmp_path, ["big.txt"])

    assert "[TRUNCATED: 1000 chars]" in context
    assert context.startswith("FILE: big.txt\n-----\n")


def test_llm_request_payload_includes_metadata() -> None:
    payload = LLMRequest(prompt="p", metadata={"issue": 7}).to_payload("default-model")

    assert payload == {"model": "default-model", "input": "p", "temperature": 0.0, "metadata": {"issue": "7"}}
