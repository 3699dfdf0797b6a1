"""Append-only SQLite store for completed workflow steps.

Optional durability for the in-memory audit ledger: when AUDIT_PERSIST is
enabled the reporting job drains completed steps from the auditor and
appends them here, keyed by step start time.

Uses aiosqlite with WAL mode, like any other async SQLite access in the
engine.
"""

import json
import os
from typing import Any, Self

import aiosqlite

from autopilot.audit.auditor import WorkflowStep
from autopilot.logging import get_logger

logger = get_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS workflow_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_time REAL NOT NULL,
    step_name TEXT NOT NULL,
    success INTEGER NOT NULL,
    end_time REAL,
    record TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflow_steps_start
    ON workflow_steps(start_time);
"""


class AuditStore:
    """Async SQLite persistence of completed workflow steps.

    Usage:
        async with AuditStore("data/audit.db") as store:
            await store.append(auditor.drain_completed())
    """

    def __init__(self, db_path: str = "data/audit.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Audit store not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.commit()
        logger.info("audit_store_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("audit_store_closed", db_path=self._db_path)

    async def append(self, steps: list[WorkflowStep]) -> int:
        """Append completed steps. Returns the number of rows written."""
        if not steps:
            return 0
        rows = [
            (
                step.start_time,
                step.step_name.value,
                int(step.success),
                step.end_time,
                json.dumps(step.to_dict()),
            )
            for step in steps
        ]
        await self.db.executemany(
            "INSERT INTO workflow_steps (start_time, step_name, success, end_time, record) "
            "VALUES (?, ?, ?, ?, ?)",
            rows,
        )
        await self.db.commit()
        logger.debug("audit_steps_persisted", count=len(rows))
        return len(rows)

    async def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        """Return the most recent step records, newest first."""
        cursor = await self.db.execute(
            "SELECT record FROM workflow_steps ORDER BY start_time DESC, id DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def count(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM workflow_steps")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
