"""Tests for the run API router."""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from outline import api
from outline.api import configure, router
from outline.errors import RemoteApiError
from outline.models import Run, RunConclusion, RunStatus
from outline.registry import MemoryRunRegistry


@pytest.fixture
def app():
    """Create a test FastAPI app with the run router."""
    test_app = FastAPI()
    test_app.include_router(router)
    return test_app


@pytest.fixture
def registry():
    return MemoryRunRegistry()


@pytest.fixture
def coordinator():
    coord = AsyncMock()
    coord.dispatch = AsyncMock(return_value=1700000000000)
    return coord


@pytest.fixture
def github():
    gh = AsyncMock()
    gh.list_pull_requests = AsyncMock(return_value=[
        {
            "number": 7,
            "title": "Add widgets",
            "head": {"ref": "feature-x"},
            "html_url": "https://github.com/acme/widgets/pull/7",
            "user": {"login": "alice"},
        }
    ])
    return gh


@pytest.fixture
def client(app, registry, coordinator, github):
    """Configure the router and return a started test client."""
    configure(registry, coordinator, github)
    with TestClient(app) as test_client:
        yield test_client


def _seed(client: TestClient, registry: MemoryRunRegistry, *runs: Run) -> None:
    """Insert runs on the client's event loop."""
    for run in runs:
        client.portal.call(registry.insert, run)


def _run(run_id: int, pr_number: int = 7, **kwargs) -> Run:
    return Run(run_id=run_id, owner="acme", repo="widgets", pr_number=pr_number, **kwargs)


# ── Dispatch ─────────────────────────────────────────────────────────────────


class TestDispatch:
    def test_background_dispatch_returns_202(self, client, coordinator):
        response = client.post("/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 7})

        assert response.status_code == 202
        assert response.json() == {"run_id": 1700000000000, "status": "queued"}
        coordinator.dispatch.assert_awaited_once_with("acme", "widgets", 7, None)

    def test_stage_override_forwarded(self, client, coordinator):
        client.post(
            "/runs",
            json={"owner": "acme", "repo": "widgets", "pr_number": 7, "stages": ["build"]},
        )
        coordinator.dispatch.assert_awaited_once_with("acme", "widgets", 7, ["build"])

    def test_sync_dispatch_returns_201(self, app, registry, coordinator, github):
        coordinator.dispatch_and_wait = AsyncMock(
            return_value=_run(5, status=RunStatus.COMPLETED, conclusion=RunConclusion.FAILURE)
        )
        configure(registry, coordinator, github, dispatch_mode="sync")
        with TestClient(app) as client:
            response = client.post(
                "/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 7}
            )

        assert response.status_code == 201
        assert response.json() == {"run_id": 5, "status": "completed", "conclusion": "failure"}

    def test_pr_not_found(self, client, coordinator):
        coordinator.dispatch = AsyncMock(
            side_effect=RemoteApiError("GET pulls/7 returned 404", status_code=404)
        )
        response = client.post("/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 7})
        assert response.status_code == 404

    def test_remote_failure_is_502(self, client, coordinator):
        coordinator.dispatch = AsyncMock(side_effect=RemoteApiError("connection refused"))
        response = client.post("/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 7})
        assert response.status_code == 502

    def test_invalid_request(self, client):
        response = client.post("/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 0})
        assert response.status_code == 422

    @pytest.mark.parametrize("stage", ["..", "a/b", "", "../../evil"])
    def test_unsafe_stage_rejected(self, client, coordinator, stage):
        response = client.post(
            "/runs",
            json={"owner": "acme", "repo": "widgets", "pr_number": 7, "stages": [stage]},
        )

        assert response.status_code == 422
        coordinator.dispatch.assert_not_awaited()

    def test_unconfigured_dispatcher(self, app, registry, monkeypatch):
        monkeypatch.setattr(api, "_coordinator", None)
        monkeypatch.setattr(api, "_registry", registry)
        client = TestClient(app)
        response = client.post("/runs", json={"owner": "acme", "repo": "widgets", "pr_number": 7})
        assert response.status_code == 503


# ── Status Queries ───────────────────────────────────────────────────────────


class TestQueries:
    def test_list_runs_in_insertion_order(self, client, registry):
        _seed(client, registry, _run(30), _run(10), _run(20))

        response = client.get("/runs")

        assert response.status_code == 200
        assert [r["run_id"] for r in response.json()["runs"]] == [30, 10, 20]

    def test_get_run(self, client, registry):
        _seed(client, registry, _run(10, branch="feature-x", logs=["Queued"]))

        response = client.get("/runs/10")

        assert response.status_code == 200
        data = response.json()
        assert data["branch"] == "feature-x"
        assert data["status"] == "queued"
        assert data["conclusion"] is None
        assert data["logs"] == ["Queued"]

    def test_get_missing_run(self, client):
        assert client.get("/runs/404").status_code == 404

    def test_find_by_subject(self, client, registry):
        _seed(client, registry, _run(10), _run(30), _run(20), _run(99, pr_number=8))

        response = client.get("/runs/by-subject/acme/widgets/7")

        assert response.status_code == 200
        assert response.json()["run_id"] == 30

    def test_find_by_subject_missing(self, client):
        assert client.get("/runs/by-subject/acme/widgets/7").status_code == 404

    def test_unconfigured_registry(self, app, monkeypatch):
        monkeypatch.setattr(api, "_registry", None)
        client = TestClient(app)
        assert client.get("/runs").status_code == 503


# ── Log Ingestion ────────────────────────────────────────────────────────────


class TestLogIngestion:
    def test_append_line(self, client, registry):
        _seed(client, registry, _run(10))

        response = client.post("/runs/10/logs", json={"step": "deploy", "message": "rolled out"})

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        run = client.portal.call(registry.get, 10)
        assert run.logs == ["[deploy] rolled out"]

    def test_append_to_completed_run(self, client, registry):
        _seed(
            client,
            registry,
            _run(10, status=RunStatus.COMPLETED, conclusion=RunConclusion.SUCCESS),
        )

        response = client.post("/runs/10/logs", json={"step": "notify", "message": "done"})

        assert response.status_code == 200
        run = client.portal.call(registry.get, 10)
        assert run.logs == ["[notify] done"]
        assert run.status == RunStatus.COMPLETED

    def test_unknown_run(self, client):
        response = client.post("/runs/404/logs", json={"step": "deploy", "message": "x"})
        assert response.status_code == 404

    def test_empty_step_rejected(self, client, registry):
        _seed(client, registry, _run(10))
        response = client.post("/runs/10/logs", json={"step": "", "message": "x"})
        assert response.status_code == 422


# ── Pull Requests ────────────────────────────────────────────────────────────


class TestPullRequests:
    def test_list_pulls(self, client, github):
        response = client.get("/repos/acme/widgets/pulls")

        assert response.status_code == 200
        assert response.json() == {
            "pulls": [
                {
                    "number": 7,
                    "title": "Add widgets",
                    "branch": "feature-x",
                    "html_url": "https://github.com/acme/widgets/pull/7",
                    "user": "alice",
                }
            ]
        }
        github.list_pull_requests.assert_awaited_once_with("acme", "widgets")

    def test_remote_failure(self, client, github):
        github.list_pull_requests = AsyncMock(
            side_effect=RemoteApiError("GET pulls returned 500", status_code=500)
        )
        assert client.get("/repos/acme/widgets/pulls").status_code == 502
