"""Configuration loading for Outline.

Reads .outline/config.yaml. Pydantic models validate the schema; a handful
of environment variables override deployment-specific values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from outline.models import validate_stage_names

logger = logging.getLogger(__name__)

DEFAULT_STAGES = ["build", "deploy", "test"]


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    owner: str = ""  # default GitHub org/user for CLI dispatches
    repo: str = ""  # default GitHub repo name
    default_branch: str = "main"


class PipelineConfig(BaseModel):
    """How a dispatched pull request is built, tested and merged."""

    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    interpreter: str = "bash"
    script_path: str = "scripts/{stage}.sh"  # relative to the clone root
    clone_url_template: str = "https://github.com/{owner}/{repo}.git"
    merge_method: Literal["merge", "squash", "rebase"] = "squash"
    stage_timeout: int = 1800  # seconds, 0 = no timeout
    git_timeout: int = 300  # seconds
    workspace_dir: str | None = None  # default: <data dir>/workspaces
    keep_workspace: bool = False  # retain clones for post-mortem debugging
    log_url_template: str | None = None  # e.g. "http://localhost:8000/runs/{run_id}/logs"

    @field_validator("stages")
    @classmethod
    def _validate_stages(cls, v: list[str]) -> list[str]:
        return validate_stage_names(v)

    @field_validator("script_path")
    @classmethod
    def _validate_script_path(cls, v: str) -> str:
        """Scripts are resolved inside the clone, so the template must stay relative."""
        p = PurePosixPath(v)
        if p.is_absolute():
            raise ValueError(f"script_path must be a relative path, got absolute: {v!r}")
        if ".." in p.parts:
            raise ValueError(f"script_path must not contain '..': {v!r}")
        if "{stage}" not in v:
            raise ValueError(f"script_path must contain a {{stage}} placeholder: {v!r}")
        return v

    @field_validator("stage_timeout", "git_timeout")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timeouts must be >= 0")
        return v

    def script_for(self, stage: str) -> str:
        return self.script_path.format(stage=stage)


class RegistryConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    path: str = ":memory:"  # SQLite database path (sqlite backend only)


class RuntimeConfig(BaseModel):
    reconciliation_interval: float = 5.0  # seconds
    max_concurrent_runs: int = 4  # pipelines executing at once; excess dispatches stay queued
    dispatch_mode: Literal["background", "sync"] = "background"
    token_file: str | None = None  # read the bearer token here when GITHUB_TOKEN is unset
    data_dir: str | None = None  # default: <repo root>/.outline-data

    @field_validator("reconciliation_interval")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("reconciliation_interval must be > 0")
        return v

    @field_validator("max_concurrent_runs")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_runs must be >= 1")
        return v


class OutlineConfig(BaseModel):
    """Top-level Outline configuration (matches .outline/config.yaml)."""

    project: ProjectConfig
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)

    def data_path(self, repo_root: Path) -> Path:
        if self.runtime.data_dir:
            return Path(self.runtime.data_dir)
        return repo_root / ".outline-data"

    def workspace_path(self, repo_root: Path) -> Path:
        if self.pipeline.workspace_dir:
            return Path(self.pipeline.workspace_dir)
        return self.data_path(repo_root) / "workspaces"


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(outline_dir: Path) -> OutlineConfig:
    """Load Outline configuration from a .outline/ directory.

    Args:
        outline_dir: Path to the .outline/ directory.

    Returns:
        Validated OutlineConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = outline_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Outline config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = OutlineConfig(**raw)
    apply_env_overrides(config)

    logger.info(
        "Loaded Outline config: project=%s stages=%s",
        config.project.name,
        ",".join(config.pipeline.stages),
    )
    return config


def apply_env_overrides(config: OutlineConfig) -> OutlineConfig:
    """Environment variable overrides for deployment."""
    workspace_dir = os.environ.get("OUTLINE_WORKSPACE_DIR")
    if workspace_dir:
        config.pipeline.workspace_dir = workspace_dir

    interval = os.environ.get("OUTLINE_RECONCILIATION_INTERVAL")
    if interval:
        config.runtime.reconciliation_interval = float(interval)

    max_runs = os.environ.get("OUTLINE_MAX_CONCURRENT_RUNS")
    if max_runs:
        config.runtime.max_concurrent_runs = max(1, int(max_runs))

    registry_path = os.environ.get("OUTLINE_REGISTRY_PATH")
    if registry_path:
        config.registry.backend = "sqlite"
        config.registry.path = registry_path

    return config
