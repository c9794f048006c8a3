"""Tests for Outline data models."""

import pytest
from pydantic import ValidationError

from outline.errors import StageFailure
from outline.models import (
    DispatchRequest,
    LogSubmission,
    PipelineResult,
    PullRequestRef,
    Run,
    RunConclusion,
    RunStatus,
    StageResult,
    validate_stage_names,
)


class TestRun:
    def test_defaults(self):
        run = Run(run_id=1, owner="acme", repo="widgets", pr_number=7)
        assert run.status == RunStatus.QUEUED
        assert run.conclusion is None
        assert run.logs == []
        assert run.subject == ("acme", "widgets", 7)
        assert not run.is_terminal

    def test_completed_requires_conclusion(self):
        with pytest.raises(ValidationError):
            Run(run_id=1, owner="acme", repo="widgets", pr_number=7, status=RunStatus.COMPLETED)

    def test_conclusion_only_when_completed(self):
        with pytest.raises(ValidationError):
            Run(
                run_id=1,
                owner="acme",
                repo="widgets",
                pr_number=7,
                status=RunStatus.RUNNING,
                conclusion=RunConclusion.SUCCESS,
            )

    def test_completed_is_terminal(self):
        run = Run(
            run_id=1,
            owner="acme",
            repo="widgets",
            pr_number=7,
            status=RunStatus.COMPLETED,
            conclusion=RunConclusion.FAILURE,
        )
        assert run.is_terminal

    def test_json_dump(self):
        run = Run(run_id=1, owner="acme", repo="widgets", pr_number=7, logs=["a"])
        data = run.model_dump(mode="json")
        assert data["status"] == "queued"
        assert data["conclusion"] is None
        assert data["logs"] == ["a"]

    def test_status_rank_is_forward_order(self):
        assert RunStatus.QUEUED.rank < RunStatus.RUNNING.rank < RunStatus.COMPLETED.rank


class TestPullRequestRef:
    def test_from_api(self):
        pr = PullRequestRef.from_api(
            "acme",
            "widgets",
            {"number": 7, "title": "Add widgets", "head": {"ref": "feature-x"}, "html_url": "u"},
        )
        assert pr.branch == "feature-x"
        assert pr.number == 7
        assert pr.title == "Add widgets"

    def test_from_api_missing_head(self):
        with pytest.raises(KeyError):
            PullRequestRef.from_api("acme", "widgets", {"number": 7})


class TestPipelineResult:
    def test_conclusion(self):
        assert PipelineResult(success=True).conclusion == RunConclusion.SUCCESS
        assert PipelineResult(success=False).conclusion == RunConclusion.FAILURE

    def test_carries_error(self):
        error = StageFailure("Stage test exited with code 1", stage="test", exit_code=1)
        result = PipelineResult(success=False, error=error)
        assert result.error is error
        assert result.error.step == "stage"

    def test_stage_result_succeeded(self):
        assert StageResult(name="build", exit_code=0).succeeded
        assert not StageResult(name="build", exit_code=1).succeeded
        assert not StageResult(name="build", exit_code=0, timed_out=True).succeeded


class TestRequests:
    def test_log_submission_format(self):
        assert LogSubmission(step="deploy", message="rolled out").format_line() == (
            "[deploy] rolled out"
        )

    def test_log_submission_requires_step(self):
        with pytest.raises(ValidationError):
            LogSubmission(step="", message="x")

    def test_dispatch_request_positive_pr(self):
        with pytest.raises(ValidationError):
            DispatchRequest(owner="acme", repo="widgets", pr_number=0)

    def test_dispatch_request_stages_optional(self):
        req = DispatchRequest(owner="acme", repo="widgets", pr_number=7)
        assert req.stages is None

    @pytest.mark.parametrize("stage", ["..", ".", "a/b", "../../evil", "", "  "])
    def test_dispatch_request_rejects_unsafe_stage(self, stage):
        with pytest.raises(ValidationError):
            DispatchRequest(owner="acme", repo="widgets", pr_number=7, stages=["build", stage])

    def test_dispatch_request_accepts_plain_stages(self):
        req = DispatchRequest(owner="acme", repo="widgets", pr_number=7, stages=["build", "e2e-1"])
        assert req.stages == ["build", "e2e-1"]


class TestStageNames:
    def test_valid(self):
        assert validate_stage_names(["build", "test"]) == ["build", "test"]

    @pytest.mark.parametrize("stage", ["..", ".", "a/b", ""])
    def test_invalid(self, stage):
        with pytest.raises(ValueError):
            validate_stage_names([stage])
