"""Orchestrator configuration.

All knobs are supplied once, at orchestrator construction time, as an
``OrchestratorConfig``. Files may be YAML or JSON:

    workspace:
      base_dir: worktrees
      port_range_start: 3000
      port_range_end: 3100
    pool:
      capacity: 3
      task_timeout_s: 300
    weights:
      visual: 0.5
      accessibility: 0.25
      performance: 0.25
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

DEFAULT_WORKER_COMMAND: tuple[str, ...] = (
    "claude",
    "code",
    "--non-interactive",
    "--output-format",
    "json",
    "--instructions",
)

DEFAULT_DEPENDENCY_MANIFESTS: tuple[str, ...] = (
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "pyproject.toml",
    "requirements.txt",
)

DEFAULT_CONFIG_FILES: tuple[str, ...] = (
    ".env",
    ".env.local",
    "tsconfig.json",
    "next.config.js",
    "vite.config.js",
    "webpack.config.js",
    "tailwind.config.js",
    "postcss.config.js",
)


class _ConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WorkspaceSettings(_ConfigBase):
    """Workspace provisioning settings."""

    base_dir: Path = Path("worktrees")
    branch_prefix: str = Field(default="ui-variation", min_length=1)
    max_workspaces: int | None = Field(default=None, ge=1)
    port_range_start: int = Field(default=3000, ge=1, le=65535)
    port_range_end: int = Field(default=3100, ge=2, le=65536)
    auto_cleanup_on_merge: bool = True
    dependency_manifests: list[str] = Field(default_factory=lambda: list(DEFAULT_DEPENDENCY_MANIFESTS))
    config_files: list[str] = Field(default_factory=lambda: list(DEFAULT_CONFIG_FILES))
    preserve_dependencies: bool = True
    dependency_dirs: list[str] = Field(default_factory=lambda: ["node_modules"])
    install_command: list[str] | None = None
    install_timeout_s: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def _check_port_range(self) -> WorkspaceSettings:
        if self.port_range_end <= self.port_range_start:
            raise ValueError("port_range_end must be greater than port_range_start")
        return self


class PoolSettings(_ConfigBase):
    """Worker pool settings."""

    capacity: int = Field(default=3, ge=1)
    task_timeout_s: float = Field(default=300.0, gt=0)
    kill_grace_s: float = Field(default=5.0, ge=0)
    worker_command: list[str] = Field(default_factory=lambda: list(DEFAULT_WORKER_COMMAND), min_length=1)
    log_tail_bytes: int = Field(default=64 * 1024, ge=1024)


class ComparisonWeights(_ConfigBase):
    """Weights for combining per-dimension similarity into one score."""

    visual: float = Field(default=0.5, ge=0)
    accessibility: float = Field(default=0.25, ge=0)
    performance: float = Field(default=0.25, ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> ComparisonWeights:
        if self.visual + self.accessibility + self.performance <= 0:
            raise ValueError("at least one comparison weight must be positive")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "visual": self.visual,
            "accessibility": self.accessibility,
            "performance": self.performance,
        }


class OrchestratorConfig(_ConfigBase):
    """Top-level configuration for one orchestration session."""

    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    weights: ComparisonWeights = Field(default_factory=ComparisonWeights)
    reports_dir: Path = Path("reports")
    cleanup_on_exit: bool = True

    def with_overrides(self, **overrides: Any) -> OrchestratorConfig:
        """Return a copy with dotted-path overrides applied, skipping None values.

        Example:
            >>> cfg.with_overrides(**{"pool.capacity": 5, "reports_dir": None})
        """
        data = self.model_dump()
        for dotted, value in overrides.items():
            if value is None:
                continue
            target = data
            *parents, leaf = dotted.split(".")
            for key in parents:
                target = target[key]
            target[leaf] = value
        return load_config_dict(data)


def load_config_dict(data: dict[str, Any]) -> OrchestratorConfig:
    """Validate a configuration mapping.

    Raises:
        ConfigError: If the mapping fails validation.
    """
    try:
        return OrchestratorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid orchestrator configuration: {exc}") from exc


def read_structured_file(path: Path | str) -> Any:
    """Read a YAML (.yaml/.yml) or JSON (.json) file.

    Raises:
        ConfigError: If the file is missing, has an unsupported extension or
            cannot be parsed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"File not found: {path}")

    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    try:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        if suffix == ".json":
            return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    raise ConfigError(f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json")


def load_config(path: Path | str | None) -> OrchestratorConfig:
    """Load an ``OrchestratorConfig`` from a file, or return defaults for None."""
    if path is None:
        return OrchestratorConfig()
    data = read_structured_file(path)
    if data is None:
        return OrchestratorConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping, got {type(data).__name__}")
    return load_config_dict(data)
