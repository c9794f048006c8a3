"""Reconciliation Loop — periodic background task for run state consistency.

Every ``runtime.reconciliation_interval`` seconds, each run that has not
completed is checked against GitHub's workflow-run status and the registry
is brought in line. One failed lookup is logged and skipped; it never stops
the rest of the pass, and the run is retried on the next tick.

Completed runs are never queried again. Runs whose pipeline is executing in
this process are skipped as well: the coordinator records their state
directly. With the memory backend every unfinished run is such a local run,
so the loop only has work to do when a shared SQLite registry holds runs
started by another process, such as one left unfinished by an earlier server.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from outline.models import Run, RunConclusion, RunStatus

if TYPE_CHECKING:
    from outline.github_client import GitHubClient
    from outline.registry import RunRegistry

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "queued": RunStatus.QUEUED,
    "waiting": RunStatus.QUEUED,
    "requested": RunStatus.QUEUED,
    "pending": RunStatus.QUEUED,
    "in_progress": RunStatus.RUNNING,
    "completed": RunStatus.COMPLETED,
}

_SUCCESS_CONCLUSIONS = {"success", "neutral", "skipped"}


def map_remote_status(data: dict) -> tuple[RunStatus, RunConclusion | None]:
    """Translate a GitHub workflow-run payload into (status, conclusion)."""
    remote_status = (data.get("status") or "").lower()
    status = _STATUS_MAP.get(remote_status)
    if status is None:
        raise ValueError(f"Unknown remote run status: {remote_status!r}")
    if status != RunStatus.COMPLETED:
        return status, None
    remote_conclusion = (data.get("conclusion") or "").lower()
    if remote_conclusion in _SUCCESS_CONCLUSIONS:
        return status, RunConclusion.SUCCESS
    return status, RunConclusion.FAILURE


class ReconciliationLoop:
    """Periodic background reconciliation task."""

    def __init__(
        self,
        registry: RunRegistry,
        github: GitHubClient,
        *,
        interval: float = 5.0,
        is_local: Callable[[int], bool] | None = None,
    ):
        self.registry = registry
        self.github = github
        self.interval = interval
        # Runs whose pipeline is executing in this process report their own state
        self._is_local = is_local

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reconciliation")
        logger.info("Reconciliation loop started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciliation loop stopped")

    async def _loop(self) -> None:
        """Main reconciliation loop."""
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation error")

    async def reconcile(self) -> int:
        """Run one reconciliation pass. Returns the number of runs updated."""
        active = await self.registry.list_active()
        logger.debug("Reconciliation pass starting (%d active runs)", len(active))

        updated = 0
        for run in active:
            if self._is_local and self._is_local(run.run_id):
                continue
            try:
                if await self._reconcile_run(run):
                    updated += 1
            except Exception as e:
                logger.warning(
                    "Could not reconcile run %s (%s/%s#%d): %s",
                    run.run_id,
                    run.owner,
                    run.repo,
                    run.pr_number,
                    e,
                )

        logger.debug("Reconciliation pass complete (%d updated)", updated)
        return updated

    async def _reconcile_run(self, run: Run) -> bool:
        data = await self.github.get_workflow_run(run.owner, run.repo, run.run_id)
        status, conclusion = map_remote_status(data)
        if status == run.status and conclusion == run.conclusion:
            return False
        stored = await self.registry.update_status(run.run_id, status, conclusion)
        return stored.status != run.status
