"""Core data models for Outline."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from outline.errors import PipelineError


# ── Run Status ───────────────────────────────────────────────────────────────


class RunStatus(str, enum.Enum):
    """Run lifecycle states. Transitions only move forward."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER[self]


_STATUS_ORDER = {RunStatus.QUEUED: 0, RunStatus.RUNNING: 1, RunStatus.COMPLETED: 2}


class RunConclusion(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# ── Run Record ───────────────────────────────────────────────────────────────


class Run(BaseModel):
    """One tracked execution of the pipeline for a pull request."""

    run_id: int = Field(description="Unique run identifier assigned at dispatch")
    owner: str
    repo: str
    pr_number: int
    branch: str | None = Field(default=None, description="Head branch checked out by the run")
    status: RunStatus = RunStatus.QUEUED
    conclusion: RunConclusion | None = None
    logs: list[str] = Field(default_factory=list, description="Append-only log lines")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _conclusion_only_when_completed(self) -> "Run":
        if self.status == RunStatus.COMPLETED and self.conclusion is None:
            raise ValueError("completed runs require a conclusion")
        if self.status != RunStatus.COMPLETED and self.conclusion is not None:
            raise ValueError(f"conclusion must be empty while status is {self.status.value}")
        return self

    @property
    def subject(self) -> tuple[str, str, int]:
        """(owner, repo, pr_number) identifying the pull request."""
        return (self.owner, self.repo, self.pr_number)

    @property
    def is_terminal(self) -> bool:
        return self.status == RunStatus.COMPLETED


# ── Pull Requests ────────────────────────────────────────────────────────────


class PullRequestRef(BaseModel):
    """The parts of a GitHub pull request the pipeline needs."""

    owner: str
    repo: str
    number: int
    branch: str
    title: str = ""
    html_url: str = ""

    @classmethod
    def from_api(cls, owner: str, repo: str, data: dict) -> "PullRequestRef":
        head = data.get("head") or {}
        return cls(
            owner=owner,
            repo=repo,
            number=data["number"],
            branch=head["ref"],
            title=data.get("title") or "",
            html_url=data.get("html_url") or "",
        )


# ── Pipeline Results ─────────────────────────────────────────────────────────


def validate_stage_names(stages: list[str]) -> list[str]:
    """Reject stage names that could resolve a script outside the clone."""
    for stage in stages:
        if not stage or not stage.strip():
            raise ValueError("stage names must be non-empty")
        if "/" in stage or stage in (".", ".."):
            raise ValueError(f"stage name must not contain path separators: {stage!r}")
    return stages


class StageResult(BaseModel):
    """Outcome of one executed stage."""

    name: str
    exit_code: int
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class PipelineResult(BaseModel):
    """What the pipeline runner hands back to the dispatcher."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    logs: list[str] = Field(default_factory=list)
    error: PipelineError | None = None
    stages_run: list[StageResult] = Field(default_factory=list)
    merged: bool = False

    @property
    def conclusion(self) -> RunConclusion:
        return RunConclusion.SUCCESS if self.success else RunConclusion.FAILURE


# ── Log Ingestion ────────────────────────────────────────────────────────────


class LogSubmission(BaseModel):
    """Out-of-band log line posted by an external caller."""

    step: str = Field(min_length=1)
    message: str

    def format_line(self) -> str:
        return f"[{self.step}] {self.message}"


class DispatchRequest(BaseModel):
    owner: str
    repo: str
    pr_number: int = Field(gt=0)
    stages: list[str] | None = Field(
        default=None, description="Override the configured stage list for this dispatch"
    )

    @field_validator("stages")
    @classmethod
    def _validate_stages(cls, v: list[str] | None) -> list[str] | None:
        return validate_stage_names(v) if v is not None else v
