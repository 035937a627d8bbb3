"""Run configuration: YAML file, environment variables and CLI overrides.

Values are resolved with the precedence CLI option > environment > YAML >
built-in default. Parsing is tolerant where a sane fallback exists (an
unparseable ``retry_max`` becomes the default) and strict where a silent
fallback would be unsafe (``max_diff_lines`` must be positive).
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml

from .agents.base import DEFAULT_AGENT_TIMEOUT, AgentKind
from .credentials import Credentials
from .errors import ConfigError
from .tools.commands import DEFAULT_TEST_TIMEOUT
from .tools.vcs import DEFAULT_GIT_TIMEOUT

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "autofix.yaml"
DEFAULT_RETRY_MAX = 3
DEFAULT_MAX_DIFF_LINES = 800
DEFAULT_REQUIRED_LABEL = "autofix"
DEFAULT_BRANCH_PREFIX = "autofix"

_REPOSITORY_PATTERN = re.compile(r"^(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+)$")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Immutable settings for one autofix run."""

    repository: Optional[str] = None
    issue_number: Optional[int] = None
    repo_root: Path = field(default_factory=Path.cwd)
    working_directory: Optional[Path] = None
    required_label: str = DEFAULT_REQUIRED_LABEL
    base_branch: Optional[str] = None
    agent_kind: AgentKind = AgentKind.AIDER
    model: Optional[str] = None
    agent_version: Optional[str] = None
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT
    internal_test_loop: bool = False
    test_specific: Optional[str] = None
    test_suite: Optional[str] = None
    test_timeout: float = DEFAULT_TEST_TIMEOUT
    retry_max: int = DEFAULT_RETRY_MAX
    max_diff_lines: int = DEFAULT_MAX_DIFF_LINES
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    remote: str = "origin"
    git_user_name: Optional[str] = None
    git_user_email: Optional[str] = None
    git_timeout: float = DEFAULT_GIT_TIMEOUT
    skip_install: bool = False
    credentials: Credentials = field(default_factory=Credentials)

    def owner_and_name(self) -> Tuple[str, str]:
        """Split ``repository`` into ``(owner, name)``."""
        if not self.repository:
            raise ConfigError(
                "Repository is not set. Pass --repo owner/name, set GITHUB_REPOSITORY, "
                "or add github.repository to the config file."
            )
        match = _REPOSITORY_PATTERN.match(self.repository)
        if match is None:
            raise ConfigError(
                f"Repository must look like 'owner/name', got {self.repository!r}.",
                details={"repository": self.repository},
            )
        return match.group("owner"), match.group("name")

    def with_overrides(self, **changes: Any) -> "RunConfig":
        return replace(self, **changes)


# ---------------------------------------------------------------------- parsers


def parse_retry_max(value: Any) -> int:
    """Return a usable attempt count: invalid -> default, below one -> one."""
    if value is None or value == "":
        return DEFAULT_RETRY_MAX
    try:
        parsed = int(str(value).strip())
    except ValueError:
        LOGGER.warning("Invalid retry_max %r; using %d", value, DEFAULT_RETRY_MAX)
        return DEFAULT_RETRY_MAX
    return max(1, parsed)


def parse_max_diff_lines(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_MAX_DIFF_LINES
    try:
        parsed = int(str(value).strip())
    except ValueError as error:
        raise ConfigError(f"max_diff_lines must be an integer, got {value!r}.") from error
    if parsed <= 0:
        raise ConfigError(f"max_diff_lines must be positive, got {parsed}.")
    return parsed


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Expected a boolean value, got {value!r}.")


def _parse_timeout(default: float) -> Callable[[Any], float]:
    def parser(value: Any) -> float:
        try:
            parsed = float(str(value).strip())
        except ValueError:
            LOGGER.warning("Invalid timeout %r; using %.0fs", value, default)
            return default
        return parsed if parsed > 0 else default

    return parser


def _parse_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_issue_number(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(str(value).strip().lstrip("#"))
    except ValueError as error:
        raise ConfigError(f"Issue number must be an integer, got {value!r}.") from error
    if number <= 0:
        raise ConfigError(f"Issue number must be positive, got {number}.")
    return number


def _parse_agent_kind(value: Any) -> AgentKind:
    return AgentKind.parse(str(value).strip())


# (field, yaml section, yaml key, environment variable, parser)
_FIELDS: Tuple[Tuple[str, str, str, Optional[str], Callable[[Any], Any]], ...] = (
    ("repository", "github", "repository", "GITHUB_REPOSITORY", _parse_text),
    ("required_label", "github", "required_label", "AUTOFIX_REQUIRED_LABEL", _parse_text),
    ("base_branch", "github", "base_branch", "AUTOFIX_BASE_BRANCH", _parse_text),
    ("issue_number", "github", "issue", "AUTOFIX_ISSUE", _parse_issue_number),
    ("agent_kind", "agent", "kind", "AUTOFIX_AGENT", _parse_agent_kind),
    ("model", "agent", "model", "AUTOFIX_MODEL", _parse_text),
    ("agent_version", "agent", "version", "AUTOFIX_AGENT_VERSION", _parse_text),
    ("agent_timeout", "agent", "timeout", "AUTOFIX_AGENT_TIMEOUT", _parse_timeout(DEFAULT_AGENT_TIMEOUT)),
    ("internal_test_loop", "agent", "internal_test_loop", "AUTOFIX_INTERNAL_TEST_LOOP", _parse_bool),
    ("test_specific", "tests", "specific", "AUTOFIX_TEST_SPECIFIC", _parse_text),
    ("test_suite", "tests", "suite", "AUTOFIX_TEST_SUITE", _parse_text),
    ("test_timeout", "tests", "timeout", "AUTOFIX_TEST_TIMEOUT", _parse_timeout(DEFAULT_TEST_TIMEOUT)),
    ("retry_max", "limits", "retry_max", "AUTOFIX_RETRY_MAX", parse_retry_max),
    ("max_diff_lines", "limits", "max_diff_lines", "AUTOFIX_MAX_DIFF_LINES", parse_max_diff_lines),
    ("branch_prefix", "git", "branch_prefix", "AUTOFIX_BRANCH_PREFIX", _parse_text),
    ("remote", "git", "remote", "AUTOFIX_REMOTE", _parse_text),
    ("git_user_name", "git", "user_name", "AUTOFIX_GIT_USER_NAME", _parse_text),
    ("git_user_email", "git", "user_email", "AUTOFIX_GIT_USER_EMAIL", _parse_text),
    ("git_timeout", "git", "timeout", "AUTOFIX_GIT_TIMEOUT", _parse_timeout(DEFAULT_GIT_TIMEOUT)),
)


def load_config_file(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return section


def resolve_config(
    file_data: Mapping[str, Any] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    repo_root: Path | None = None,
) -> RunConfig:
    """Merge defaults, YAML data, environment and CLI overrides into a RunConfig.

    ``overrides`` maps RunConfig field names to CLI values; ``None`` entries
    mean "not given" and fall through to the next source.
    """
    data = file_data or {}
    environment = os.environ if env is None else env
    cli_values = {key: value for key, value in (overrides or {}).items() if value is not None}

    values: Dict[str, Any] = {}
    for name, section_name, key, env_var, parser in _FIELDS:
        section = _section(data, section_name)
        raw: Any = None
        if name in cli_values:
            raw = cli_values[name]
        elif env_var and environment.get(env_var, "").strip():
            raw = environment[env_var]
        elif key in section and section[key] is not None:
            raw = section[key]
        else:
            continue
        parsed = parser(raw)
        if parsed is not None:
            values[name] = parsed

    root = Path(cli_values.get("repo_root") or repo_root or Path.cwd()).resolve()
    values["repo_root"] = root
    working_directory = cli_values.get("working_directory")
    if working_directory is not None:
        candidate = Path(working_directory)
        values["working_directory"] = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if "skip_install" in cli_values:
        values["skip_install"] = bool(cli_values["skip_install"])

    credentials = Credentials.from_env(environment)
    cli_credentials = cli_values.get("credentials")
    if isinstance(cli_credentials, Credentials):
        credentials = credentials.merged(cli_credentials)
    values["credentials"] = credentials

    config = RunConfig(**values)
    if config.repository:
        config.owner_and_name()
    return config


def load_config(
    config_path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Load ``config_path`` (when it exists) and resolve the full RunConfig.

    An explicitly passed path must exist; the default ``autofix.yaml`` in the
    repository root is optional.
    """
    cli_values = dict(overrides or {})
    repo_root = Path(cli_values.get("repo_root") or Path.cwd()).resolve()
    file_data: Dict[str, Any] = {}
    if config_path is not None:
        file_data = load_config_file(config_path)
    else:
        default_path = repo_root / DEFAULT_CONFIG_NAME
        if default_path.exists():
            LOGGER.debug("Loading %s", default_path)
            file_data = load_config_file(default_path)
    return resolve_config(file_data, env=env, overrides=cli_values, repo_root=repo_root)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_MAX_DIFF_LINES",
    "DEFAULT_RETRY_MAX",
    "RunConfig",
    "load_config",
    "load_config_file",
    "parse_max_diff_lines",
    "parse_retry_max",
    "resolve_config",
]
