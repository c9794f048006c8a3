"""Outline Server — FastAPI application that ties all components together.

Startup sequence:
1. Load .outline/ config
2. Open the GitHub session (bearer token from env or token file)
3. Initialize the run registry
4. Build the pipeline runner and dispatch coordinator
5. Start the reconciliation loop
6. Begin accepting requests

Shutdown:
1. Stop the reconciliation loop
2. Cancel in-flight pipelines (recorded as failed)
3. Close the registry and invalidate the session
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from outline import __version__
from outline.api import configure as configure_api
from outline.api import router as api_router
from outline.config import OutlineConfig, load_config
from outline.dispatch import DispatchCoordinator
from outline.models import RunStatus
from outline.pipeline import PipelineRunner
from outline.reconciliation import ReconciliationLoop
from outline.registry import RunRegistry, create_registry
from outline.session import GitHubSession

logger = logging.getLogger(__name__)


class OutlineServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None, config: OutlineConfig | None = None):
        self.repo_root = repo_root or Path.cwd()
        config_dir = os.environ.get("OUTLINE_CONFIG_DIR", "").strip()
        self.outline_dir = Path(config_dir) if config_dir else self.repo_root / ".outline"

        # Components (initialized in start())
        self.config: OutlineConfig | None = config
        self.session: GitHubSession | None = None
        self.registry: RunRegistry | None = None
        self.runner: PipelineRunner | None = None
        self.coordinator: DispatchCoordinator | None = None
        self.reconciliation: ReconciliationLoop | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("Outline server starting (repo=%s)", self.repo_root)

        # 1. Load config
        if self.config is None:
            self.config = load_config(self.outline_dir)

        # 2. GitHub session
        token_file = self.config.runtime.token_file
        if token_file and not Path(token_file).is_absolute():
            token_file = str(self.repo_root / token_file)
        self.session = GitHubSession.from_environment(token_file)
        await self.session.start()

        # 3. Run registry
        self.registry = create_registry(self.config.registry)
        await self.registry.initialize()

        # 4. Pipeline runner + dispatcher
        workspace_root = self.config.workspace_path(self.repo_root)
        workspace_root.mkdir(parents=True, exist_ok=True)
        logger.info("Workspace root: %s", workspace_root)

        self.runner = PipelineRunner(
            self.config.pipeline,
            self.session.github,
            workspace_root,
            token=self.session.token,
        )
        self.coordinator = DispatchCoordinator(
            self.registry,
            self.session.github,
            self.runner,
            default_stages=self.config.pipeline.stages,
            max_concurrent_runs=self.config.runtime.max_concurrent_runs,
        )

        # 5. Reconciliation loop
        self.reconciliation = ReconciliationLoop(
            self.registry,
            self.session.github,
            interval=self.config.runtime.reconciliation_interval,
            is_local=self.coordinator.is_running,
        )

        configure_api(
            self.registry,
            self.coordinator,
            self.session.github,
            dispatch_mode=self.config.runtime.dispatch_mode,
        )

        await self.reconciliation.start()
        logger.info("Outline server started successfully")

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("Outline server shutting down")

        if self.reconciliation:
            await self.reconciliation.stop()
        if self.coordinator:
            await self.coordinator.shutdown()
        if self.registry:
            await self.registry.close()
        if self.session:
            await self.session.invalidate()

        logger.info("Outline server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = OutlineServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None, config: OutlineConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = OutlineServer(repo_root, config)

    app = FastAPI(
        title="Outline",
        version=__version__,
        description="Pull-request CI/CD pipeline runner with run tracking",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with run counts."""
        counts: dict[str, int] = {}
        if _server.registry:
            counts = await _server.registry.count_by_status()
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "runs": {status.value: counts.get(status.value, 0) for status in RunStatus},
            "in_flight": _server.coordinator.in_flight if _server.coordinator else 0,
        }

    return app
