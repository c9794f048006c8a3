"""Run API — structured run state for callers and log ingestion for stage scripts.

Endpoints:
    - POST /runs - Dispatch a pull request, returns the run id
    - GET /runs - List all runs (insertion order)
    - GET /runs/{run_id} - One run
    - GET /runs/by-subject/{owner}/{repo}/{pr_number} - Latest run for a PR
    - POST /runs/{run_id}/logs - Append an out-of-band log line
    - GET /repos/{owner}/{repo}/pulls - Open pull requests for a repository
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Response

from outline.errors import DuplicateRunError, NotFoundError, RemoteApiError
from outline.models import DispatchRequest, LogSubmission, RunStatus

if TYPE_CHECKING:
    from outline.dispatch import DispatchCoordinator
    from outline.github_client import GitHubClient
    from outline.registry import RunRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])

# Module-level references (configured at startup)
_registry: "RunRegistry | None" = None
_coordinator: "DispatchCoordinator | None" = None
_github: "GitHubClient | None" = None
_dispatch_mode: str = "background"


def configure(
    registry: "RunRegistry",
    coordinator: "DispatchCoordinator | None" = None,
    github: "GitHubClient | None" = None,
    *,
    dispatch_mode: str = "background",
) -> None:
    """Wire the router to the run registry and dispatcher."""
    global _registry, _coordinator, _github, _dispatch_mode
    _registry = registry
    _coordinator = coordinator
    _github = github
    _dispatch_mode = dispatch_mode
    logger.info("Run API configured (dispatch_mode=%s)", dispatch_mode)


def _require_registry() -> "RunRegistry":
    if _registry is None:
        raise HTTPException(status_code=503, detail="Run registry not configured")
    return _registry


def _remote_error(e: RemoteApiError) -> HTTPException:
    status = 404 if e.status_code == 404 else 502
    return HTTPException(status_code=status, detail=str(e))


# ── Dispatch ─────────────────────────────────────────────────────────────────


@router.post("/runs")
async def dispatch_run(request: DispatchRequest, response: Response):
    """Start a pipeline run for a pull request."""
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Dispatcher not configured")
    try:
        if _dispatch_mode == "sync":
            run = await _coordinator.dispatch_and_wait(
                request.owner, request.repo, request.pr_number, request.stages
            )
            response.status_code = 201
            return {
                "run_id": run.run_id,
                "status": run.status.value,
                "conclusion": run.conclusion.value if run.conclusion else None,
            }
        run_id = await _coordinator.dispatch(
            request.owner, request.repo, request.pr_number, request.stages
        )
    except RemoteApiError as e:
        raise _remote_error(e)
    except DuplicateRunError as e:
        raise HTTPException(status_code=409, detail=str(e))
    response.status_code = 202
    return {"run_id": run_id, "status": RunStatus.QUEUED.value}


# ── Status Queries ───────────────────────────────────────────────────────────


@router.get("/runs")
async def list_runs():
    registry = _require_registry()
    runs = await registry.list_all()
    return {"runs": [r.model_dump(mode="json") for r in runs]}


@router.get("/runs/by-subject/{owner}/{repo}/{pr_number}")
async def find_run_by_subject(owner: str, repo: str, pr_number: int):
    registry = _require_registry()
    try:
        run = await registry.find_by_subject(owner, repo, pr_number)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return run.model_dump(mode="json")


@router.get("/runs/{run_id}")
async def get_run(run_id: int):
    registry = _require_registry()
    try:
        run = await registry.get(run_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return run.model_dump(mode="json")


# ── Log Ingestion ────────────────────────────────────────────────────────────


@router.post("/runs/{run_id}/logs")
async def submit_log(run_id: int, submission: LogSubmission):
    """Append a line posted by a stage script or other external caller."""
    registry = _require_registry()
    try:
        await registry.append_log(run_id, submission.format_line())
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True}


# ── Pull Requests ────────────────────────────────────────────────────────────


@router.get("/repos/{owner}/{repo}/pulls")
async def list_pull_requests(owner: str, repo: str):
    if _github is None:
        raise HTTPException(status_code=503, detail="GitHub session not configured")
    try:
        pulls = await _github.list_pull_requests(owner, repo)
    except RemoteApiError as e:
        raise _remote_error(e)
    return {
        "pulls": [
            {
                "number": pr.get("number"),
                "title": pr.get("title"),
                "branch": (pr.get("head") or {}).get("ref"),
                "html_url": pr.get("html_url"),
                "user": (pr.get("user") or {}).get("login"),
            }
            for pr in pulls
        ]
    }
