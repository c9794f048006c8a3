"""Tests for the throwaway test-PR helper, against respx-mocked GitHub."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest
import respx

from outline.errors import RemoteApiError
from outline.github_client import GitHubClient
from outline.testpr import create_test_pr

API = "https://api.github.com/repos/acme/widgets"
NOW = datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc)
STAMP = "2024-03-05 02.07.09 PM UTC"


@pytest.fixture
async def github():
    client = GitHubClient("ghs_fake_token")
    await client.start()
    yield client
    await client.close()


def _mock_branch():
    respx.get(f"{API}/git/ref/heads/main").mock(
        return_value=httpx.Response(200, json={"object": {"sha": "base-sha"}})
    )
    return respx.post(f"{API}/git/refs").mock(return_value=httpx.Response(201, json={}))


def _mock_pr():
    return respx.post(f"{API}/pulls").mock(
        return_value=httpx.Response(
            201, json={"number": 12, "html_url": "https://github.com/acme/widgets/pull/12"}
        )
    )


class TestCreateTestPr:
    @respx.mock
    async def test_appends_to_existing_file(self, github):
        refs = _mock_branch()
        pulls = _mock_pr()
        respx.get(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(200, json={
                "type": "file",
                "sha": "old-sha",
                "content": base64.b64encode(b"earlier line").decode(),
            })
        )
        put = respx.put(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(200, json={})
        )

        pr = await create_test_pr(github, "acme", "widgets", branch="outline-test-1", now=NOW)

        assert pr["number"] == 12
        assert json.loads(refs.calls[0].request.content) == {
            "ref": "refs/heads/outline-test-1",
            "sha": "base-sha",
        }
        payload = json.loads(put.calls[0].request.content)
        assert base64.b64decode(payload["content"]).decode() == (
            f"earlier line\n{STAMP} - Outline test"
        )
        assert payload["sha"] == "old-sha"
        assert payload["branch"] == "outline-test-1"
        assert payload["message"] == f"Outline test update at {STAMP}"

        pr_payload = json.loads(pulls.calls[0].request.content)
        assert pr_payload == {
            "title": f"Outline Test PR - {STAMP}",
            "body": "Automated test PR for Outline pipeline",
            "head": "outline-test-1",
            "base": "main",
        }

    @respx.mock
    async def test_creates_missing_file(self, github):
        _mock_branch()
        _mock_pr()
        respx.get(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )
        put = respx.put(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(201, json={})
        )

        await create_test_pr(github, "acme", "widgets", branch="outline-test-2", now=NOW)

        payload = json.loads(put.calls[0].request.content)
        assert base64.b64decode(payload["content"]).decode() == f"{STAMP} - Outline test"
        assert "sha" not in payload

    @respx.mock
    async def test_directory_path_rejected(self, github):
        _mock_branch()
        respx.get(f"{API}/contents/docs").mock(
            return_value=httpx.Response(200, json=[{"type": "file", "name": "a.md"}])
        )

        with pytest.raises(RemoteApiError):
            await create_test_pr(github, "acme", "widgets", file_path="docs", now=NOW)

    @respx.mock
    async def test_server_error_propagates(self, github):
        _mock_branch()
        respx.get(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(500, json={"message": "boom"})
        )

        with pytest.raises(RemoteApiError) as exc_info:
            await create_test_pr(github, "acme", "widgets", now=NOW)
        assert exc_info.value.status_code == 500

    @respx.mock
    async def test_default_branch_name(self, github):
        refs = _mock_branch()
        _mock_pr()
        respx.get(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )
        respx.put(f"{API}/contents/outline-test.txt").mock(
            return_value=httpx.Response(201, json={})
        )

        await create_test_pr(github, "acme", "widgets", now=NOW)

        ref = json.loads(refs.calls[0].request.content)["ref"]
        assert ref.startswith("refs/heads/outline-test-")
