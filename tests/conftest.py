"""Shared fixtures: throwaway git remotes with stage scripts, and a fake GitHub."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from outline.config import PipelineConfig

_GIT_IDENTITY = [
    "-c",
    "user.name=Outline Tests",
    "-c",
    "user.email=tests@outline.invalid",
    "-c",
    "commit.gpgsign=false",
]


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(
        ["git", *_GIT_IDENTITY, *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )


def _make_remote(
    root: Path,
    owner: str,
    repo: str,
    *,
    branch: str = "feature-x",
    scripts: dict[str, str] | None = None,
) -> Path:
    """Create a bare repo at ``root/owner/repo.git``.

    ``main`` holds a README; ``branch`` adds ``scripts/<stage>.sh`` for each
    entry in ``scripts`` (stage name → script body).
    """
    work = root / "_work" / owner / repo
    work.mkdir(parents=True)
    _git(work, "init", "--quiet")
    _git(work, "symbolic-ref", "HEAD", "refs/heads/main")
    (work / "README.md").write_text(f"# {repo}\n")
    _git(work, "add", "README.md")
    _git(work, "commit", "--quiet", "-m", "initial")

    _git(work, "checkout", "--quiet", "-b", branch)
    scripts_dir = work / "scripts"
    scripts_dir.mkdir()
    for stage, body in (scripts or {}).items():
        (scripts_dir / f"{stage}.sh").write_text(body)
    _git(work, "add", "-A")
    _git(work, "commit", "--quiet", "--allow-empty", "-m", f"add stage scripts on {branch}")
    _git(work, "checkout", "--quiet", "main")

    bare = root / owner / f"{repo}.git"
    bare.parent.mkdir(parents=True, exist_ok=True)
    _git(root, "clone", "--quiet", "--bare", str(work), str(bare))
    return bare


@pytest.fixture
def remotes_root(tmp_path: Path) -> Path:
    root = tmp_path / "remotes"
    root.mkdir()
    return root


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def pipeline_config(remotes_root: Path) -> PipelineConfig:
    """Pipeline config that clones from the local bare remotes."""
    return PipelineConfig(
        stages=["build", "test"],
        clone_url_template=str(remotes_root / "{owner}" / "{repo}.git"),
        stage_timeout=30,
        git_timeout=60,
    )


def pr_payload(number: int = 7, branch: str = "feature-x") -> dict:
    return {
        "number": number,
        "title": f"PR {number}",
        "state": "open",
        "html_url": f"https://github.com/acme/widgets/pull/{number}",
        "head": {"ref": branch, "sha": "abc123"},
        "base": {"ref": "main"},
    }


@pytest.fixture
def github() -> AsyncMock:
    """Fake GitHub client: PR #7 on feature-x, merges succeed."""
    gh = AsyncMock()
    gh.get_pull_request = AsyncMock(return_value=pr_payload())
    gh.merge_pull_request = AsyncMock(return_value={"merged": True, "sha": "def456"})
    gh.list_pull_requests = AsyncMock(return_value=[pr_payload()])
    gh.get_workflow_run = AsyncMock(return_value={"status": "in_progress", "conclusion": None})
    return gh


@pytest.fixture
def make_remote(remotes_root: Path):
    """Factory: ``make_remote(owner, repo, scripts={...})`` → bare repo path."""

    def _factory(owner: str, repo: str, **kwargs) -> Path:
        return _make_remote(remotes_root, owner, repo, **kwargs)

    return _factory
