"""SQLite ledger of every per-unit failure, for manual retry."""
import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from auction_harvest.config import config
from auction_harvest.models import FailureRecord

logger = logging.getLogger(__name__)


class FailureLedger:
    """Unbounded failure history; checkpoints only keep the latest N."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or config.DATA_DIR / "failures.db")
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    phase TEXT NOT NULL,
                    key TEXT NOT NULL,
                    parent_id TEXT,
                    listing_id TEXT,
                    source TEXT,
                    error TEXT,
                    failed_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_failures_phase ON failures(phase, key)
                """
            )
            await db.commit()
        self._initialized = True
        logger.debug(f"Failure ledger initialized at {self.db_path}")

    async def record(self, phase: str, failure: FailureRecord) -> None:
        """Store one failure. Ledger problems are logged, never raised."""
        try:
            if not self._initialized:
                await self.initialize()
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO failures (phase, key, parent_id, listing_id, source, error, failed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        phase,
                        failure.key,
                        failure.parent_id,
                        failure.listing_id,
                        failure.source,
                        failure.error[:2000],
                        failure.timestamp,
                    ),
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Could not record failure for {phase}/{failure.key} in ledger: {e}")

    async def recent(self, phase: Optional[str] = None, limit: int = 100) -> list[dict]:
        """Most recent failures first."""
        if not self.db_path.exists():
            return []
        query = "SELECT phase, key, parent_id, listing_id, source, error, failed_at FROM failures"
        params: tuple = ()
        if phase:
            query += " WHERE phase = ?"
            params = (phase,)
        query += " ORDER BY id DESC LIMIT ?"
        params += (limit,)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def counts(self) -> dict[str, int]:
        """Failure count per phase."""
        if not self.db_path.exists():
            return {}
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT phase, COUNT(*) FROM failures GROUP BY phase")
            return {row[0]: row[1] for row in await cursor.fetchall()}

    async def clear(self, phase: str, key: Optional[str] = None) -> int:
        """Forget failures for a phase (or one key) after a manual retry."""
        if not self.db_path.exists():
            return 0
        async with aiosqlite.connect(self.db_path) as db:
            if key is None:
                cursor = await db.execute("DELETE FROM failures WHERE phase = ?", (phase,))
            else:
                cursor = await db.execute(
                    "DELETE FROM failures WHERE phase = ? AND key = ?", (phase, key)
                )
            await db.commit()
            return cursor.rowcount
