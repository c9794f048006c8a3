"""Open a throwaway pull request to exercise the pipeline end to end.

Creates ``outline-test-<ms>`` from the base branch, appends a timestamped
line to a tracking file on it, and opens a PR against the base branch.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from outline.errors import RemoteApiError

if TYPE_CHECKING:
    from outline.github_client import GitHubClient

logger = logging.getLogger(__name__)

DEFAULT_TEST_FILE = "outline-test.txt"


def _timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d %I.%M.%S %p UTC")


async def create_test_pr(
    github: GitHubClient,
    owner: str,
    repo: str,
    *,
    base: str = "main",
    file_path: str = DEFAULT_TEST_FILE,
    branch: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Create a test branch + commit + pull request. Returns the PR payload."""
    branch = branch or f"outline-test-{int(time.time() * 1000)}"
    stamp = _timestamp(now)

    ref = await github.get_ref(owner, repo, f"heads/{base}")
    base_sha = ref["object"]["sha"]
    logger.info("Base %s of %s/%s is at %s", base, owner, repo, base_sha)

    await github.create_ref(owner, repo, f"refs/heads/{branch}", base_sha)

    existing = ""
    file_sha: str | None = None
    try:
        content = await github.get_content(owner, repo, file_path, ref=base)
    except RemoteApiError as e:
        if e.status_code != 404:
            raise
        logger.info("%s does not exist on %s yet, creating it", file_path, base)
    else:
        # A directory path comes back as a list of entries
        if not isinstance(content, dict) or content.get("type", "file") != "file":
            raise RemoteApiError(f"{file_path} is not a file in {owner}/{repo}")
        if "content" not in content:
            raise RemoteApiError(f"{file_path} has no inline content in {owner}/{repo}")
        existing = base64.b64decode(content["content"]).decode()
        file_sha = content.get("sha")

    new_content = f"{existing}\n{stamp} - Outline test" if existing else f"{stamp} - Outline test"
    await github.create_or_update_file(
        owner,
        repo,
        file_path,
        content=new_content,
        message=f"Outline test update at {stamp}",
        branch=branch,
        sha=file_sha,
    )

    pr = await github.create_pull_request(
        owner,
        repo,
        title=f"Outline Test PR - {stamp}",
        body="Automated test PR for Outline pipeline",
        head=branch,
        base=base,
    )
    logger.info("PR created: %s", pr.get("html_url"))
    return pr
