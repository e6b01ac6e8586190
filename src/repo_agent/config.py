"""Agent configuration loaded from ``config.yaml`` plus ``AGENT_*`` overrides."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .policy.guardrails import GuardrailPolicy
from .tools.verification import CommandSpec

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "guardrails": {
        "locked_path_prefixes": [],
        "denied_path_prefixes": [".env", "secrets/"],
        "max_ops": 20,
        "max_total_write_bytes": 200_000,
        "allow_unlocks": True,
        "privileged_modes": ["self_improve"],
        "privileged_denied_prefixes": [
            "src/repo_agent/policy/",
            "src/repo_agent/lifecycle.py",
            "src/repo_agent/agent.py",
            "config.yaml",
        ],
    },
    "verification": {
        "commands": {
            "tests": {"command": ["python", "-m", "pytest", "-q"], "timeout_seconds": 1200},
        },
        "run": ["tests"],
        "required_modes": ["self_improve"],
        "max_output_bytes": 1_000_000,
    },
    "git": {
        "trunk_branch": "main",
        "branch_prefix": "agent/",
        "diff_max_chars": 400_000,
        "diff_snippet_chars": 1_800,
        "author_name": "repo-agent",
        "author_email": "repo-agent@localhost",
    },
    "artifacts": {
        "dir": "agent_artifacts",
        "max_count": 200,
        "max_age_hours": 168,
    },
    "planner": {
        "kind": "stub",
        "plan_file": "",
        "max_files": 40,
        "max_chars_per_file": 4_000,
        "max_total_chars": 60_000,
    },
}


def _template_default(section: str, key: str) -> Any:
    """Default factory that returns a fresh copy of a template value."""
    return lambda: copy.deepcopy(DEFAULT_CONFIG_TEMPLATE[section][key])


class ConfigSection(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ProjectSection(ConfigSection):
    name: str = ""
    repo_root: str = "."


class GuardrailSection(ConfigSection):
    locked_path_prefixes: List[str] = Field(default_factory=_template_default("guardrails", "locked_path_prefixes"))
    denied_path_prefixes: List[str] = Field(default_factory=_template_default("guardrails", "denied_path_prefixes"))
    max_ops: int = Field(default=20, ge=0)
    max_total_write_bytes: int = Field(default=200_000, ge=0)
    allow_unlocks: bool = True
    privileged_modes: List[str] = Field(default_factory=_template_default("guardrails", "privileged_modes"))
    privileged_denied_prefixes: List[str] = Field(
        default_factory=_template_default("guardrails", "privileged_denied_prefixes")
    )

    def to_policy(self) -> GuardrailPolicy:
        return GuardrailPolicy(
            locked_path_prefixes=tuple(self.locked_path_prefixes),
            denied_path_prefixes=tuple(self.denied_path_prefixes),
            max_ops=self.max_ops,
            max_total_write_bytes=self.max_total_write_bytes,
            allow_unlocks=self.allow_unlocks,
            privileged_modes=tuple(self.privileged_modes),
            privileged_denied_prefixes=tuple(self.privileged_denied_prefixes),
        )


class CommandConfig(ConfigSection):
    """One allow-listed verification command."""

    command: List[str]
    cwd: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator("command", mode="before")
    @classmethod
    def _split_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            # Strings are tokenised, never handed to a shell.
            return CommandSpec.from_value("command", value).argv
        return value


class VerificationSection(ConfigSection):
    commands: Dict[str, CommandConfig] = Field(
        default_factory=_template_default("verification", "commands"),
        validate_default=True,
    )
    run: List[str] = Field(default_factory=_template_default("verification", "run"))
    required_modes: List[str] = Field(default_factory=_template_default("verification", "required_modes"))
    max_output_bytes: int = Field(default=1_000_000, gt=0)
    timeout_seconds: float = Field(default=20 * 60, gt=0)

    @field_validator("commands", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        expanded: Dict[str, Any] = {}
        for name, entry in value.items():
            if isinstance(entry, (str, list, tuple)):
                entry = {"command": entry}
            expanded[str(name)] = entry
        return expanded

    def allowlist(self) -> Dict[str, CommandSpec]:
        return {
            name: CommandSpec(
                name=name,
                argv=tuple(entry.command),
                cwd=entry.cwd,
                timeout_seconds=entry.timeout_seconds,
            )
            for name, entry in self.commands.items()
        }

    def requires(self, mode: str) -> bool:
        return mode in self.required_modes


class GitSection(ConfigSection):
    trunk_branch: str = "main"
    branch_prefix: str = "agent/"
    diff_max_chars: int = Field(default=400_000, gt=0)
    diff_snippet_chars: int = Field(default=1_800, ge=0)
    author_name: str = "repo-agent"
    author_email: str = "repo-agent@localhost"


class ArtifactSection(ConfigSection):
    dir: str = "agent_artifacts"
    max_count: int = Field(default=200, ge=0)
    max_age_hours: float = Field(default=168, ge=0)


class PlannerSection(ConfigSection):
    kind: str = "stub"
    plan_file: str = ""
    max_files: int = Field(default=40, ge=0)
    max_chars_per_file: int = Field(default=4_000, ge=0)
    max_total_chars: int = Field(default=60_000, ge=0)


class AgentConfig(ConfigSection):
    """Validated configuration; ``base_dir`` anchors relative paths."""

    project: ProjectSection = Field(default_factory=ProjectSection)
    guardrails: GuardrailSection = Field(default_factory=GuardrailSection)
    verification: VerificationSection = Field(default_factory=VerificationSection)
    git: GitSection = Field(default_factory=GitSection)
    artifacts: ArtifactSection = Field(default_factory=ArtifactSection)
    planner: PlannerSection = Field(default_factory=PlannerSection)
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @property
    def repo_root(self) -> Path:
        root = Path(self.project.repo_root)
        if not root.is_absolute():
            root = self.base_dir / root
        return root.resolve()

    @property
    def artifacts_dir(self) -> Path:
        path = Path(self.artifacts.dir.strip() or "agent_artifacts")
        if not path.is_absolute():
            path = self.repo_root / path
        return path.resolve()


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _as_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Layer ``AGENT_*`` environment variables over raw config ``data``.

    Unparsable integers are ignored with a warning.
    """
    guardrails = data.setdefault("guardrails", {})
    if not isinstance(guardrails, dict):
        guardrails = data["guardrails"] = {}

    locked = environ.get("AGENT_LOCKED_PATHS")
    if locked is not None:
        guardrails["locked_path_prefixes"] = _split_list(locked)
    denied = environ.get("AGENT_DENIED_PATHS")
    if denied is not None:
        guardrails["denied_path_prefixes"] = _split_list(denied)

    for env_key, field_name in (
        ("AGENT_MAX_OPS", "max_ops"),
        ("AGENT_MAX_WRITE_BYTES", "max_total_write_bytes"),
    ):
        raw = environ.get(env_key)
        if raw is None:
            continue
        parsed = _as_int(raw)
        if parsed is None:
            LOGGER.warning("Ignoring %s=%r: not an integer", env_key, raw)
            continue
        guardrails[field_name] = parsed

    artifacts_dir = environ.get("AGENT_ARTIFACTS_DIR")
    if artifacts_dir and artifacts_dir.strip():
        artifacts = data.setdefault("artifacts", {})
        if not isinstance(artifacts, dict):
            artifacts = data["artifacts"] = {}
        artifacts["dir"] = artifacts_dir.strip()
    return data


def load_config(
    config_path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AgentConfig:
    """Load configuration; a missing file yields defaults, a malformed one raises."""
    path = Path(config_path) if config_path is not None else Path.cwd() / DEFAULT_CONFIG_NAME
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse config {path}: {error}") from error
        except OSError as error:
            raise ConfigError(f"Unable to read config {path}: {error}") from error
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration must be a mapping at the top level: {path}")
        data = loaded
    else:
        LOGGER.debug("Config %s not found; using defaults", path)

    data = apply_env_overrides(copy.deepcopy(data), os.environ if environ is None else environ)
    try:
        return AgentConfig.model_validate({**data, "base_dir": path.resolve().parent})
    except ValidationError as error:
        raise ConfigError(
            f"Invalid configuration in {path}: {error.error_count()} error(s)",
            details={"errors": [item.get("msg", "") for item in error.errors()]},
        ) from error


__all__ = [
    "AgentConfig",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "apply_env_overrides",
    "copy_config_template",
    "load_config",
    "write_config",
]
