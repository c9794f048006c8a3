"""Stage Executor — runs one external command and streams its output.

stdout and stderr are drained by independent reader tasks. Lines keep their
arrival order within a stream; the interleaving between the two streams is
whatever the scheduler observes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

LineSink = Callable[[str], Awaitable[None]]

# Exit code reported when the command could not be launched at all
LAUNCH_FAILURE_EXIT_CODE = 127

# Exit code reported for a command killed on timeout
TIMEOUT_EXIT_CODE = 124

# Max bytes per line before asyncio's StreamReader gives up
_STREAM_LIMIT = 1024 * 1024

# Grace period for the process group to exit and the readers to drain after a kill
_DRAIN_TIMEOUT = 5.0


@dataclass
class ExecutionResult:
    exit_code: int
    lines: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class StageExecutor:
    """Launches child processes and collects their output line by line."""

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        scrub_env: Sequence[str] = ("GITHUB_TOKEN",),
    ):
        self._base_env = dict(env) if env is not None else None
        self._scrub_env = tuple(scrub_env)

    def _build_env(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = dict(self._base_env if self._base_env is not None else os.environ)
        for name in self._scrub_env:
            env.pop(name, None)
        if extra:
            env.update(extra)
        return env

    async def execute(
        self,
        command: Sequence[str],
        cwd: Path,
        *,
        on_line: LineSink | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        """Run ``command`` in ``cwd`` to completion.

        Args:
            command: argv, e.g. ``["bash", "scripts/build.sh"]``.
            cwd: Working directory; must already exist.
            on_line: Awaited with every output line as it arrives.
            timeout: Seconds before the process is killed (None = wait forever).
            env: Extra environment variables for the child.

        A non-zero exit is reported in the result, never raised.
        """
        cwd = Path(cwd)
        if not cwd.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {cwd}")

        result = ExecutionResult(exit_code=0)

        async def emit(line: str) -> None:
            result.lines.append(line)
            if on_line is not None:
                await on_line(line)

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(env),
                limit=_STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("Failed to launch %s: %s", command[0] if command else "?", e)
            result.exit_code = LAUNCH_FAILURE_EXIT_CODE
            await emit(f"failed to launch {' '.join(command)}: {e}")
            return result

        readers = [
            asyncio.create_task(self._pump(proc.stdout, emit), name="stage-stdout"),
            asyncio.create_task(self._pump(proc.stderr, emit), name="stage-stderr"),
        ]

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill_group(proc)
            result.timed_out = True
            logger.warning("Command timed out after %ss: %s", timeout, " ".join(command))
        except asyncio.CancelledError:
            await _kill_group(proc)
            for task in readers:
                task.cancel()
            raise

        # A child that left the process group can still hold the pipes open
        done, pending = await asyncio.wait(
            readers, timeout=_DRAIN_TIMEOUT if result.timed_out else None
        )
        for task in pending:
            task.cancel()
        for task in done:
            task.result()

        if result.timed_out:
            result.exit_code = TIMEOUT_EXIT_CODE
            await emit(f"timed out after {timeout:g}s; process killed")
        else:
            result.exit_code = proc.returncode if proc.returncode is not None else 0
        return result

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, emit: LineSink) -> None:
        if stream is None:
            return
        split = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                # Overlong line: emit the buffered part and keep reading the rest
                chunk = await stream.readexactly(e.consumed)
                await emit(chunk.decode(errors="replace").rstrip("\r"))
                split = True
                continue
            if not raw:
                break
            if split and raw in (b"\n", b"\r\n"):
                split = False
                continue
            split = False
            await emit(raw.decode(errors="replace").rstrip("\r\n"))


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's whole process group and wait (bounded) for it to exit."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=_DRAIN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit %ss after SIGKILL", proc.pid, _DRAIN_TIMEOUT)
