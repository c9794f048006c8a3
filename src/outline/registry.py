"""Run Registry — the single owner of canonical Run records.

``RunRegistry`` defines the store operations; ``MemoryRunRegistry`` keeps
runs in process memory and ``SqliteRunRegistry`` keeps them in an aiosqlite
database (``:memory:`` unless configured otherwise). Both serialize every
operation on one ``asyncio.Lock`` so a poller update, a stage log line and an
external log submission never interleave partial writes, and readers always
get a consistent snapshot.

Status changes only move forward (queued → running → completed). Once a run
is completed it never changes again.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import aiosqlite

from outline.errors import DuplicateRunError, NotFoundError
from outline.models import Run, RunConclusion, RunStatus

if TYPE_CHECKING:
    from outline.config import RegistryConfig

logger = logging.getLogger(__name__)


def _check_transition(run: Run, status: RunStatus, conclusion: RunConclusion | None) -> bool:
    """Return True if ``run`` should move to ``status``.

    Raises ValueError for a completion without a conclusion (or a conclusion
    on a non-completed status).
    """
    if status == RunStatus.COMPLETED and conclusion is None:
        raise ValueError("completing a run requires a conclusion")
    if status != RunStatus.COMPLETED and conclusion is not None:
        raise ValueError(f"conclusion is only valid with status=completed, got {status.value}")
    if run.is_terminal:
        logger.debug("Run %s already completed, ignoring %s", run.run_id, status.value)
        return False
    if status.rank < run.status.rank:
        logger.debug(
            "Run %s: ignoring backward transition %s → %s",
            run.run_id,
            run.status.value,
            status.value,
        )
        return False
    return True


class RunRegistry(ABC):
    """Concurrent-safe store of Run records."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Prepare the backing store."""

    async def close(self) -> None:
        """Release the backing store."""

    @abstractmethod
    async def insert(self, run: Run) -> Run:
        """Add a new run. Raises DuplicateRunError if the id is taken."""

    @abstractmethod
    async def get(self, run_id: int) -> Run:
        """Raises NotFoundError if absent."""

    @abstractmethod
    async def find_by_subject(self, owner: str, repo: str, pr_number: int) -> Run:
        """Most recent run (highest run_id) for a pull request."""

    @abstractmethod
    async def list_all(self) -> list[Run]:
        """All runs in insertion order."""

    @abstractmethod
    async def update_status(
        self, run_id: int, status: RunStatus, conclusion: RunConclusion | None = None
    ) -> Run:
        """Move a run forward; returns the run as stored afterwards."""

    @abstractmethod
    async def append_log(self, run_id: int, line: str) -> None:
        """Append one line to a run's log."""

    async def list_active(self) -> list[Run]:
        """Runs that have not completed yet."""
        return [run for run in await self.list_all() if not run.is_terminal]

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for run in await self.list_all():
            counts[run.status.value] = counts.get(run.status.value, 0) + 1
        return counts


# ── In-memory backend ────────────────────────────────────────────────────────


class MemoryRunRegistry(RunRegistry):
    """Process-local registry. Runs are lost on restart."""

    def __init__(self) -> None:
        super().__init__()
        self._runs: dict[int, Run] = {}  # insertion ordered

    def _require(self, run_id: int) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return run

    async def insert(self, run: Run) -> Run:
        async with self._lock:
            if run.run_id in self._runs:
                raise DuplicateRunError(f"Run already exists: {run.run_id}")
            stored = run.model_copy(deep=True)
            self._runs[run.run_id] = stored
        logger.info(
            "Registered run %s for %s/%s#%d (status=%s)",
            run.run_id,
            run.owner,
            run.repo,
            run.pr_number,
            run.status.value,
        )
        return stored.model_copy(deep=True)

    async def get(self, run_id: int) -> Run:
        async with self._lock:
            return self._require(run_id).model_copy(deep=True)

    async def find_by_subject(self, owner: str, repo: str, pr_number: int) -> Run:
        async with self._lock:
            matches = [r for r in self._runs.values() if r.subject == (owner, repo, pr_number)]
            if not matches:
                raise NotFoundError(f"No run for {owner}/{repo}#{pr_number}")
            return max(matches, key=lambda r: r.run_id).model_copy(deep=True)

    async def list_all(self) -> list[Run]:
        async with self._lock:
            return [run.model_copy(deep=True) for run in self._runs.values()]

    async def update_status(
        self, run_id: int, status: RunStatus, conclusion: RunConclusion | None = None
    ) -> Run:
        async with self._lock:
            run = self._require(run_id)
            if _check_transition(run, status, conclusion):
                run.status = status
                run.conclusion = conclusion
                run.updated_at = datetime.now(timezone.utc)
                logger.info(
                    "Run %s → %s%s",
                    run_id,
                    status.value,
                    f" ({conclusion.value})" if conclusion else "",
                )
            return run.model_copy(deep=True)

    async def append_log(self, run_id: int, line: str) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.logs.append(line)
            run.updated_at = datetime.now(timezone.utc)


# ── SQLite backend ───────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    run_id INTEGER PRIMARY KEY,
    seq INTEGER NOT NULL,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    pr_number INTEGER NOT NULL,
    branch TEXT,
    status TEXT NOT NULL DEFAULT 'queued',
    conclusion TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL REFERENCES runs(run_id),
    line TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_runs_subject ON runs(owner, repo, pr_number);
CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
CREATE INDEX IF NOT EXISTS idx_run_logs_run ON run_logs(run_id, id);
"""


class SqliteRunRegistry(RunRegistry):
    """aiosqlite-backed registry with the same semantics as the memory store."""

    def __init__(self, db_path: str = ":memory:"):
        super().__init__()
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Run registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized: call initialize() first")
        return self._db

    async def _load(self, row: aiosqlite.Row) -> Run:
        cursor = await self.db.execute(
            "SELECT line FROM run_logs WHERE run_id = ? ORDER BY id", (row["run_id"],)
        )
        lines = [r["line"] for r in await cursor.fetchall()]
        return Run(
            run_id=row["run_id"],
            owner=row["owner"],
            repo=row["repo"],
            pr_number=row["pr_number"],
            branch=row["branch"],
            status=RunStatus(row["status"]),
            conclusion=RunConclusion(row["conclusion"]) if row["conclusion"] else None,
            logs=lines,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def _fetch_row(self, run_id: int) -> aiosqlite.Row:
        cursor = await self.db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return row

    async def insert(self, run: Run) -> Run:
        async with self._lock:
            cursor = await self.db.execute("SELECT 1 FROM runs WHERE run_id = ?", (run.run_id,))
            if await cursor.fetchone() is not None:
                raise DuplicateRunError(f"Run already exists: {run.run_id}")

            cursor = await self.db.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM runs")
            seq = (await cursor.fetchone())[0]
            await self.db.execute(
                """INSERT INTO runs
                   (run_id, seq, owner, repo, pr_number, branch, status, conclusion,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.run_id,
                    seq,
                    run.owner,
                    run.repo,
                    run.pr_number,
                    run.branch,
                    run.status.value,
                    run.conclusion.value if run.conclusion else None,
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )
            await self.db.executemany(
                "INSERT INTO run_logs (run_id, line) VALUES (?, ?)",
                [(run.run_id, line) for line in run.logs],
            )
            await self.db.commit()
        logger.info(
            "Registered run %s for %s/%s#%d (status=%s)",
            run.run_id,
            run.owner,
            run.repo,
            run.pr_number,
            run.status.value,
        )
        return run.model_copy(deep=True)

    async def get(self, run_id: int) -> Run:
        async with self._lock:
            return await self._load(await self._fetch_row(run_id))

    async def find_by_subject(self, owner: str, repo: str, pr_number: int) -> Run:
        async with self._lock:
            cursor = await self.db.execute(
                "SELECT * FROM runs WHERE owner = ? AND repo = ? AND pr_number = ? "
                "ORDER BY run_id DESC LIMIT 1",
                (owner, repo, pr_number),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"No run for {owner}/{repo}#{pr_number}")
            return await self._load(row)

    async def list_all(self) -> list[Run]:
        async with self._lock:
            cursor = await self.db.execute("SELECT * FROM runs ORDER BY seq")
            rows = await cursor.fetchall()
            return [await self._load(row) for row in rows]

    async def list_active(self) -> list[Run]:
        async with self._lock:
            cursor = await self.db.execute(
                "SELECT * FROM runs WHERE status != ? ORDER BY seq",
                (RunStatus.COMPLETED.value,),
            )
            rows = await cursor.fetchall()
            return [await self._load(row) for row in rows]

    async def update_status(
        self, run_id: int, status: RunStatus, conclusion: RunConclusion | None = None
    ) -> Run:
        async with self._lock:
            run = await self._load(await self._fetch_row(run_id))
            if not _check_transition(run, status, conclusion):
                return run
            now = datetime.now(timezone.utc)
            await self.db.execute(
                "UPDATE runs SET status = ?, conclusion = ?, updated_at = ? WHERE run_id = ?",
                (status.value, conclusion.value if conclusion else None, now.isoformat(), run_id),
            )
            await self.db.commit()
            logger.info(
                "Run %s → %s%s",
                run_id,
                status.value,
                f" ({conclusion.value})" if conclusion else "",
            )
            return run.model_copy(
                update={"status": status, "conclusion": conclusion, "updated_at": now}
            )

    async def append_log(self, run_id: int, line: str) -> None:
        async with self._lock:
            await self._fetch_row(run_id)
            await self.db.execute(
                "INSERT INTO run_logs (run_id, line) VALUES (?, ?)", (run_id, line)
            )
            await self.db.execute(
                "UPDATE runs SET updated_at = ? WHERE run_id = ?",
                (datetime.now(timezone.utc).isoformat(), run_id),
            )
            await self.db.commit()


def create_registry(config: RegistryConfig) -> RunRegistry:
    """Build the registry backend named in the config."""
    if config.backend == "sqlite":
        return SqliteRunRegistry(config.path)
    return MemoryRunRegistry()
