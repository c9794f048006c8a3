"""GitHub session — the credential and API client shared by remote-facing components.

A session is created once a bearer token is available and handed to every
component that talks to GitHub. ``invalidate()`` closes the client (logout
or token expiry); any later use of the session raises ``RuntimeError``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from outline.github_client import GITHUB_API, GitHubClient

logger = logging.getLogger(__name__)


def resolve_token(token_file: str | Path | None = None) -> str | None:
    """Find a bearer token: ``GITHUB_TOKEN`` first, then the token file."""
    token = os.environ.get("GITHUB_TOKEN", "").strip()
    if token:
        return token
    if token_file:
        path = Path(token_file)
        if path.exists():
            return path.read_text().strip() or None
        logger.debug("Token file %s does not exist", path)
    return None


class GitHubSession:
    """Holds a bearer token and the client authenticated with it."""

    def __init__(self, token: str, *, base_url: str = GITHUB_API):
        if not token:
            raise ValueError("GitHub token must not be empty")
        self._token = token
        self._github = GitHubClient(token, base_url=base_url)
        self._started = False
        self._valid = True

    @classmethod
    def from_environment(cls, token_file: str | Path | None = None) -> "GitHubSession":
        token = resolve_token(token_file)
        if not token:
            raise RuntimeError(
                "GitHub token not found. Set GITHUB_TOKEN or configure runtime.token_file"
            )
        return cls(token)

    async def start(self) -> None:
        if not self._started:
            await self._github.start()
            self._started = True

    async def invalidate(self) -> None:
        """Close the client and drop the credential."""
        if self._started:
            await self._github.close()
        self._started = False
        self._valid = False
        self._token = ""
        logger.info("GitHub session invalidated")

    @property
    def is_valid(self) -> bool:
        return self._valid

    @property
    def token(self) -> str:
        if not self._valid:
            raise RuntimeError("GitHub session has been invalidated")
        return self._token

    @property
    def github(self) -> GitHubClient:
        if not self._valid:
            raise RuntimeError("GitHub session has been invalidated")
        return self._github
