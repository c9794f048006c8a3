"""Pipeline Runner — clone, checkout, stages, merge.

One invocation walks a fixed state machine::

    CLONING → CHECKING_OUT → RUNNING_STAGE[0..n-1] → MERGING → DONE

Any failing step jumps straight to DONE with a failure result; later steps
never run. The runner never raises for an expected failure: the error is
returned inside the ``PipelineResult`` for the dispatcher to record.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from outline.errors import (
    CheckoutError,
    CloneError,
    MergeError,
    PipelineError,
    RemoteApiError,
    StageFailure,
)
from outline.executor import StageExecutor
from outline.models import PipelineResult, StageResult, validate_stage_names
from outline.workspace import run_workspace

if TYPE_CHECKING:
    from outline.config import PipelineConfig
    from outline.github_client import GitHubClient

logger = logging.getLogger(__name__)

LogSink = Callable[[str], Awaitable[None]]


class PipelineStep(str, enum.Enum):
    CLONING = "cloning"
    CHECKING_OUT = "checking_out"
    RUNNING_STAGE = "running_stage"
    MERGING = "merging"
    DONE = "done"


class _RunLog:
    """Accumulates a run's lines and forwards them to the live sink."""

    def __init__(self, sink: LogSink | None, secrets: Sequence[str] = ()):
        self.lines: list[str] = []
        self._sink = sink
        self._secrets = [s for s in secrets if s]

    async def write(self, line: str) -> None:
        for secret in self._secrets:
            line = line.replace(secret, "***")
        self.lines.append(line)
        if self._sink is not None:
            await self._sink(line)

    def prefixed(self, prefix: str) -> LogSink:
        async def _write(line: str) -> None:
            await self.write(f"[{prefix}] {line}")

        return _write


class PipelineRunner:
    """Executes the pipeline for one pull request."""

    def __init__(
        self,
        config: PipelineConfig,
        github: GitHubClient,
        workspace_root: Path,
        *,
        executor: StageExecutor | None = None,
        token: str | None = None,
    ):
        self.config = config
        self.github = github
        self.workspace_root = Path(workspace_root)
        self.executor = executor or StageExecutor()
        self._token = token

    def clone_url(self, owner: str, repo: str) -> str:
        url = self.config.clone_url_template.format(owner=owner, repo=repo)
        if self._token and url.startswith("https://"):
            url = url.replace("https://", f"https://x-access-token:{self._token}@", 1)
        return url

    def _stage_env(self, run_id: int, stage: str) -> dict[str, str]:
        env = {"OUTLINE_RUN_ID": str(run_id), "OUTLINE_STAGE": stage}
        if self.config.log_url_template:
            env["OUTLINE_LOG_URL"] = self.config.log_url_template.format(run_id=run_id)
        return env

    async def run(
        self,
        owner: str,
        repo: str,
        branch: str,
        pr_number: int,
        stages: Sequence[str],
        *,
        run_id: int,
        log: LogSink | None = None,
    ) -> PipelineResult:
        """Run the full pipeline and report the outcome.

        Args:
            stages: Stage names, executed strictly in this order.
            run_id: Identifies the working directory and is exported to stages.
            log: Awaited with every log line in production order.

        Raises:
            ValueError: A stage name would resolve a script outside the clone.
        """
        validate_stage_names(list(stages))
        run_log = _RunLog(log, secrets=[self._token] if self._token else [])
        stages_run: list[StageResult] = []
        merged = False
        error: PipelineError | None = None
        step = PipelineStep.CLONING

        logger.info(
            "Run %s: starting pipeline for %s/%s#%d (branch=%s, stages=%s)",
            run_id,
            owner,
            repo,
            pr_number,
            branch,
            ",".join(stages),
        )

        async with run_workspace(
            self.workspace_root, repo, run_id, keep=self.config.keep_workspace
        ) as workdir:
            try:
                await run_log.write(f"Cloning {owner}/{repo}")
                await self._clone(owner, repo, workdir, run_log, run_id)

                step = PipelineStep.CHECKING_OUT
                await run_log.write(f"Checking out {branch}")
                await self._checkout(branch, workdir, run_log, run_id)

                step = PipelineStep.RUNNING_STAGE
                for stage in stages:
                    result = await self._run_stage(stage, workdir, run_log, run_id)
                    stages_run.append(result)
                    if not result.succeeded:
                        reason = (
                            "timed out"
                            if result.timed_out
                            else f"exited with code {result.exit_code}"
                        )
                        raise StageFailure(
                            f"Stage {stage} {reason}",
                            stage=stage,
                            exit_code=result.exit_code,
                            timed_out=result.timed_out,
                            run_id=run_id,
                        )

                step = PipelineStep.MERGING
                await self._merge(owner, repo, pr_number, run_log, run_id)
                merged = True
            except PipelineError as e:
                error = e
                logger.warning("Run %s: %s failed: %s", run_id, step.value, e)

            step = PipelineStep.DONE
            if error is None:
                await run_log.write("Pipeline finished: success")
            else:
                await run_log.write(f"Pipeline finished: failure ({error})")

        logger.info(
            "Run %s: pipeline %s", run_id, "succeeded" if error is None else "failed"
        )
        return PipelineResult(
            success=error is None,
            logs=run_log.lines,
            error=error,
            stages_run=stages_run,
            merged=merged,
        )

    # ── Steps ────────────────────────────────────────────────────────────

    async def _clone(
        self, owner: str, repo: str, workdir: Path, run_log: _RunLog, run_id: int
    ) -> None:
        result = await self.executor.execute(
            ["git", "clone", "--quiet", self.clone_url(owner, repo), "."],
            workdir,
            on_line=run_log.prefixed("clone"),
            timeout=self.config.git_timeout or None,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
        if not result.succeeded:
            raise CloneError(
                f"git clone of {owner}/{repo} failed (exit {result.exit_code})",
                run_id=run_id,
                exit_code=result.exit_code,
            )

    async def _checkout(self, branch: str, workdir: Path, run_log: _RunLog, run_id: int) -> None:
        result = await self.executor.execute(
            ["git", "checkout", "--quiet", branch],
            workdir,
            on_line=run_log.prefixed("checkout"),
            timeout=self.config.git_timeout or None,
        )
        if not result.succeeded:
            raise CheckoutError(
                f"git checkout {branch} failed (exit {result.exit_code})",
                run_id=run_id,
                exit_code=result.exit_code,
            )

    async def _run_stage(
        self, stage: str, workdir: Path, run_log: _RunLog, run_id: int
    ) -> StageResult:
        script = self.config.script_for(stage)
        await run_log.write(f"Running stage {stage}")
        started = time.monotonic()
        result = await self.executor.execute(
            [self.config.interpreter, script],
            workdir,
            on_line=run_log.prefixed(stage),
            timeout=self.config.stage_timeout or None,
            env=self._stage_env(run_id, stage),
        )
        return StageResult(
            name=stage,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    async def _merge(
        self, owner: str, repo: str, pr_number: int, run_log: _RunLog, run_id: int
    ) -> None:
        await run_log.write(f"Merging PR #{pr_number} ({self.config.merge_method})")
        try:
            await self.github.merge_pull_request(
                owner, repo, pr_number, merge_method=self.config.merge_method
            )
        except RemoteApiError as e:
            raise MergeError(f"Merge of PR #{pr_number} failed: {e}", run_id=run_id, cause=e) from e
        await run_log.write(f"Merged PR #{pr_number}")
