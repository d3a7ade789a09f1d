"""SQLite implementation of the migration store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from .models import MigrationProgress
from .repository import MigrationStore


class SQLiteMigrationStore(MigrationStore):
    """Persist migration snapshots using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                migration_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                snapshot TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Store API
    async def load(self, migration_id: str) -> MigrationProgress | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT snapshot FROM migrations WHERE migration_id = ?",
            migration_id,
        )
        if not row:
            return None
        return MigrationProgress.from_json(row["snapshot"])

    async def save(self, migration_id: str, progress: MigrationProgress) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO migrations (migration_id, state, snapshot, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(migration_id) DO UPDATE SET
                state = excluded.state,
                snapshot = excluded.snapshot,
                updated_at = excluded.updated_at
            """,
            migration_id,
            progress.state.value,
            progress.to_json(),
            progress.last_updated_at.isoformat(),
        )

    async def list(self) -> list[MigrationProgress]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT snapshot FROM migrations ORDER BY migration_id"
        )
        return [MigrationProgress.from_json(row["snapshot"]) for row in rows]

    def close(self) -> None:
        self._conn.close()
