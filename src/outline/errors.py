"""Error taxonomy for Outline.

Pipeline errors describe why a run failed; they are carried inside a
``PipelineResult`` rather than raised past the runner. Dispatch and lookup
errors are raised to the caller of the specific operation.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """A fatal step failure inside a pipeline run."""

    step = "pipeline"

    def __init__(self, message: str, *, run_id: int | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class CloneError(PipelineError):
    """``git clone`` failed before any stage ran."""

    step = "clone"

    def __init__(self, message: str, *, run_id: int | None = None, exit_code: int | None = None):
        super().__init__(message, run_id=run_id)
        self.exit_code = exit_code


class CheckoutError(PipelineError):
    """``git checkout`` of the PR branch failed."""

    step = "checkout"

    def __init__(self, message: str, *, run_id: int | None = None, exit_code: int | None = None):
        super().__init__(message, run_id=run_id)
        self.exit_code = exit_code


class StageFailure(PipelineError):
    """A stage exited non-zero or timed out."""

    step = "stage"

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        exit_code: int,
        timed_out: bool = False,
        run_id: int | None = None,
    ) -> None:
        super().__init__(message, run_id=run_id)
        self.stage = stage
        self.exit_code = exit_code
        self.timed_out = timed_out


class MergeError(PipelineError):
    """All stages passed but the remote merge was rejected."""

    step = "merge"

    def __init__(
        self,
        message: str,
        *,
        run_id: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, run_id=run_id)
        self.cause = cause


class DispatchError(RuntimeError):
    """A dispatch request could not be started."""


class RemoteApiError(DispatchError):
    """A call to the remote repository API failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.path = path


class NotFoundError(RuntimeError, LookupError):
    """No run matches the requested id or subject."""


class DuplicateRunError(RuntimeError, ValueError):
    """A run with the same id is already registered."""
