"""Repair agent variants and the factory that selects them."""

from __future__ import annotations

from typing import Callable, Dict

from .aider import AiderAgent
from .base import (
    DEFAULT_AGENT_TIMEOUT,
    AgentKind,
    AgentParams,
    AgentResult,
    RepairAgent,
    run_agent_process,
    subprocess_env,
)
from .diff_generator import DiffGeneratingAgent

_REGISTRY: Dict[AgentKind, Callable[[], RepairAgent]] = {
    AgentKind.AIDER: AiderAgent,
    AgentKind.OPENAI_DIFF: DiffGeneratingAgent,
}


def get_agent(kind: AgentKind | str) -> RepairAgent:
    """Instantiate the agent registered for ``kind``.

    Unknown tags raise :class:`~autofix.errors.UnknownAgentError`.
    """
    return _REGISTRY[AgentKind.parse(kind)]()


__all__ = [
    "AgentKind",
    "AgentParams",
    "AgentResult",
    "AiderAgent",
    "DEFAULT_AGENT_TIMEOUT",
    "DiffGeneratingAgent",
    "RepairAgent",
    "get_agent",
    "run_agent_process",
    "subprocess_env",
]
