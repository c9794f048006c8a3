"""Dispatch Coordinator — turns a pull request reference into a tracked run.

``dispatch`` registers a queued run and hands the pipeline to a bounded
worker pool, returning the run id immediately; the run moves to running when
a worker slot frees up and its log fills in live. ``dispatch_and_wait`` runs
the pipeline inline and records one completed run from the result.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

from outline.errors import RemoteApiError
from outline.models import (
    PullRequestRef,
    Run,
    RunConclusion,
    RunStatus,
    validate_stage_names,
)

if TYPE_CHECKING:
    from outline.github_client import GitHubClient
    from outline.pipeline import PipelineRunner
    from outline.registry import RunRegistry

logger = logging.getLogger(__name__)


class RunIdGenerator:
    """Millisecond timestamps, bumped so every id is strictly larger than the last."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            candidate = int(time.time() * 1000)
            self._last = max(candidate, self._last + 1)
            return self._last


class DispatchCoordinator:
    """Starts pipeline runs and records them in the registry."""

    def __init__(
        self,
        registry: RunRegistry,
        github: GitHubClient,
        runner: PipelineRunner,
        *,
        default_stages: Sequence[str],
        max_concurrent_runs: int = 4,
        id_generator: RunIdGenerator | None = None,
    ):
        self.registry = registry
        self.github = github
        self.runner = runner
        self.default_stages = list(default_stages)
        self.max_concurrent_runs = max_concurrent_runs
        self._ids = id_generator or RunIdGenerator()
        self._slots = asyncio.Semaphore(max_concurrent_runs)
        self._tasks: dict[int, asyncio.Task] = {}
        self._claimed: set[int] = set()  # ids registered but not yet handed to a task

    # ── Introspection ────────────────────────────────────────────────────

    def is_running(self, run_id: int) -> bool:
        """True while this process owns the run's pipeline task."""
        return run_id in self._tasks or run_id in self._claimed

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def fetch_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequestRef:
        data = await self.github.get_pull_request(owner, repo, pr_number)
        try:
            return PullRequestRef.from_api(owner, repo, data)
        except (KeyError, TypeError) as e:
            raise RemoteApiError(
                f"Pull request {owner}/{repo}#{pr_number} response is missing {e}"
            ) from e

    def _stage_list(self, stages: Sequence[str] | None) -> list[str]:
        if not stages:
            return list(self.default_stages)
        return validate_stage_names(list(stages))

    async def dispatch(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        stages: Sequence[str] | None = None,
    ) -> int:
        """Queue a pipeline run for a pull request and return its id.

        Raises:
            RemoteApiError: The pull request could not be fetched; no run is created.
            ValueError: A stage name would resolve outside the clone.
        """
        stage_list = self._stage_list(stages)
        pr = await self.fetch_pull_request(owner, repo, pr_number)

        run = Run(
            run_id=self._ids.next(),
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            branch=pr.branch,
            status=RunStatus.QUEUED,
        )
        self._claimed.add(run.run_id)
        try:
            await self.registry.insert(run)
            await self.registry.append_log(
                run.run_id, f"Queued {owner}/{repo}#{pr_number} (branch {pr.branch})"
            )

            task = asyncio.create_task(
                self._execute(run.run_id, pr, stage_list), name=f"run-{run.run_id}"
            )
            self._tasks[run.run_id] = task
            task.add_done_callback(lambda _t, rid=run.run_id: self._tasks.pop(rid, None))
        finally:
            self._claimed.discard(run.run_id)
        return run.run_id

    async def dispatch_and_wait(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        stages: Sequence[str] | None = None,
    ) -> Run:
        """Run the pipeline inline and record the finished run."""
        stage_list = self._stage_list(stages)
        pr = await self.fetch_pull_request(owner, repo, pr_number)
        run_id = self._ids.next()

        async with self._slots:
            result = await self.runner.run(
                owner, repo, pr.branch, pr_number, stage_list, run_id=run_id
            )

        run = Run(
            run_id=run_id,
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            branch=pr.branch,
            status=RunStatus.COMPLETED,
            conclusion=result.conclusion,
            logs=result.logs,
        )
        return await self.registry.insert(run)

    async def _execute(self, run_id: int, pr: PullRequestRef, stages: list[str]) -> None:
        async def sink(line: str) -> None:
            await self.registry.append_log(run_id, line)

        conclusion = RunConclusion.FAILURE
        try:
            async with self._slots:
                await self.registry.update_status(run_id, RunStatus.RUNNING)
                result = await self.runner.run(
                    pr.owner,
                    pr.repo,
                    pr.branch,
                    pr.number,
                    stages,
                    run_id=run_id,
                    log=sink,
                )
            conclusion = result.conclusion
        except asyncio.CancelledError:
            await self._safe_log(run_id, "Pipeline cancelled")
            raise
        except Exception as e:
            logger.exception("Run %s crashed", run_id)
            await self._safe_log(run_id, f"Pipeline crashed: {e}")
        finally:
            await asyncio.shield(self._finish(run_id, conclusion))

    async def _finish(self, run_id: int, conclusion: RunConclusion) -> None:
        try:
            await self.registry.update_status(run_id, RunStatus.COMPLETED, conclusion)
        except Exception:
            logger.exception("Failed to record completion of run %s", run_id)

    async def _safe_log(self, run_id: int, line: str) -> None:
        try:
            await self.registry.append_log(run_id, line)
        except Exception:
            logger.exception("Failed to append log line to run %s", run_id)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def wait_idle(self) -> None:
        """Wait until every dispatched pipeline has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight pipelines; their runs are recorded as failed."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.warning("Cancelling %d in-flight pipeline run(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
