"""Explicit credential bundle passed by value into clients and agents."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(slots=True, frozen=True)
class Credentials:
    """API keys for the issue tracker and model providers.

    Values are never written to ``os.environ``; agents copy the keys they need
    into the environment mapping of the subprocess they spawn.
    """

    github_token: str | None = field(default=None, repr=False)
    openai_api_key: str | None = field(default=None, repr=False)
    anthropic_api_key: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "github_token", _clean(self.github_token))
        object.__setattr__(self, "openai_api_key", _clean(self.openai_api_key))
        object.__setattr__(self, "anthropic_api_key", _clean(self.anthropic_api_key))

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Credentials":
        source = os.environ if env is None else env
        return cls(
            github_token=source.get("GITHUB_TOKEN") or source.get("GH_TOKEN"),
            openai_api_key=source.get("OPENAI_API_KEY"),
            anthropic_api_key=source.get("ANTHROPIC_API_KEY"),
        )

    def merged(self, other: "Credentials") -> "Credentials":
        """Return credentials where values from ``other`` win when present."""
        return Credentials(
            github_token=other.github_token or self.github_token,
            openai_api_key=other.openai_api_key or self.openai_api_key,
            anthropic_api_key=other.anthropic_api_key or self.anthropic_api_key,
        )

    def provider_env(self) -> Dict[str, str]:
        """Model-provider variables to inject into an agent subprocess."""
        env: Dict[str, str] = {}
        if self.openai_api_key:
            env["OPENAI_API_KEY"] = self.openai_api_key
        if self.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self.anthropic_api_key
        return env

    def describe(self) -> Dict[str, bool]:
        return {
            "github_token": self.github_token is not None,
            "openai_api_key": self.openai_api_key is not None,
            "anthropic_api_key": self.anthropic_api_key is not None,
        }


__all__ = ["Credentials"]
