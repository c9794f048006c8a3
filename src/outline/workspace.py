"""Per-run working directories.

Every pipeline run clones into its own directory under the workspace root.
``run_workspace`` removes that directory on every exit path unless the
operator asked to keep clones around for post-mortem debugging.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def workspace_name(repo: str, run_id: int) -> str:
    """Directory name for one run: repo name plus the unique run id."""
    safe_repo = _UNSAFE_CHARS.sub("-", repo).strip(".-") or "repo"
    return f"{safe_repo}-{run_id}"


async def remove_workspace(path: Path) -> None:
    """Delete a workspace directory without blocking the event loop."""
    if not path.exists():
        return
    await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
    if path.exists():
        logger.warning("Workspace %s could not be fully removed", path)
    else:
        logger.debug("Removed workspace %s", path)


@asynccontextmanager
async def run_workspace(
    root: Path,
    repo: str,
    run_id: int,
    *,
    keep: bool = False,
) -> AsyncIterator[Path]:
    """Create ``<root>/<repo>-<run_id>`` and yield it.

    The directory must not already exist: two runs never share a clone.
    """
    root.mkdir(parents=True, exist_ok=True)
    path = root / workspace_name(repo, run_id)
    path.mkdir()
    logger.debug("Created workspace %s", path)
    try:
        yield path
    finally:
        if keep:
            logger.info("Keeping workspace %s", path)
        else:
            await asyncio.shield(remove_workspace(path))
