"""GitHub API client for Outline.

Authenticates with a previously obtained bearer token, tracks rate limits,
and exposes the repository capabilities the pipeline consumes: pull request
lookup, squash merge, and workflow-run status. Every transport or HTTP
failure surfaces as ``RemoteApiError``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone

import httpx

from outline import __version__
from outline.errors import RemoteApiError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubClient:
    """Async GitHub API client with bearer-token authentication."""

    def __init__(self, token: str, *, base_url: str = GITHUB_API, timeout: float = 30.0):
        self.token = token
        self.base_url = base_url
        self.timeout = timeout

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._rate_limit_reserve: int = 50
        self._rate_limit_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": f"Outline/{__version__}",
                "Authorization": f"Bearer {self.token}",
            },
            timeout=self.timeout,
        )
        self._rate_limit_lock = asyncio.Lock()
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    # ── Rate Limit Tracking ──────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an authenticated API request with rate limit throttling.

        When remaining quota drops below the reserve threshold, requests
        are serialized through a lock; if quota is exhausted we sleep until
        the reset window.
        """
        if self._rate_limit_lock and self._rate_limit_remaining <= self._rate_limit_reserve:
            async with self._rate_limit_lock:
                await self._wait_for_rate_limit_reset()
                return await self._do_request(method, path, **kwargs)
        return await self._do_request(method, path, **kwargs)

    async def _do_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute a request, track rate limits, and wrap failures."""
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteApiError(
                f"{method} {path} failed: {e}", method=method, path=path
            ) from e

        self._update_rate_limit(resp)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = ""
            try:
                detail = resp.json().get("message", "")
            except ValueError:
                detail = resp.text[:200]
            raise RemoteApiError(
                f"{method} {path} returned {resp.status_code}: {detail}",
                status_code=resp.status_code,
                method=method,
                path=path,
            ) from e
        return resp

    async def _wait_for_rate_limit_reset(self) -> None:
        """Sleep until the rate limit reset window if quota is exhausted."""
        if self._rate_limit_remaining > 0:
            return
        wait = max(0, self._rate_limit_reset - time.time()) + 1  # +1s buffer
        logger.warning("Rate limit exhausted, sleeping %.1fs until reset", wait)
        await asyncio.sleep(wait)
        self._rate_limit_remaining = 100  # optimistic reset

    # ── PR Operations ────────────────────────────────────────────────────

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: str = "open",
        per_page: int = 100,
    ) -> list[dict]:
        """List pull requests for a repository.

        Args:
            state: ``"open"``, ``"closed"``, or ``"all"``.
        """
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": state, "per_page": per_page},
        )
        return resp.json()

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
        return resp.json()

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return resp.json()

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        merge_method: str = "squash",
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> dict:
        """Merge a pull request.

        Args:
            merge_method: 'merge', 'squash', or 'rebase'.
        """
        payload: dict = {"merge_method": merge_method}
        if commit_title:
            payload["commit_title"] = commit_title
        if commit_message:
            payload["commit_message"] = commit_message
        resp = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/merge",
            json=payload,
        )
        return resp.json()

    # ── Workflow Runs ────────────────────────────────────────────────────

    async def get_workflow_run(self, owner: str, repo: str, run_id: int) -> dict:
        """Get the authoritative status of a workflow run.

        Returns a dict with 'status' (queued, in_progress, completed, ...)
        and 'conclusion' (success, failure, cancelled, ... or None).
        """
        resp = await self._request("GET", f"/repos/{owner}/{repo}/actions/runs/{run_id}")
        return resp.json()

    # ── Git Data & Contents ──────────────────────────────────────────────

    async def get_ref(self, owner: str, repo: str, ref: str) -> dict:
        """Get a git reference, e.g. ``ref="heads/main"``."""
        resp = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/{ref}")
        return resp.json()

    async def create_ref(self, owner: str, repo: str, ref: str, sha: str) -> dict:
        """Create a git reference, e.g. ``ref="refs/heads/my-branch"``."""
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": ref, "sha": sha},
        )
        return resp.json()

    async def get_content(
        self, owner: str, repo: str, path: str, *, ref: str | None = None
    ) -> dict:
        params = {"ref": ref} if ref else None
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/contents/{path}", params=params
        )
        return resp.json()

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        *,
        content: str,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> dict:
        """Commit ``content`` (text) to ``path`` on ``branch``."""
        payload: dict = {
            "message": message,
            "content": base64.b64encode(content.encode()).decode(),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha
        resp = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/contents/{path}",
            json=payload,
        )
        return resp.json()
