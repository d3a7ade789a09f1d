"""In-memory implementation of the migration store."""

from __future__ import annotations

from typing import Dict

from .models import MigrationProgress
from .repository import MigrationStore


class InMemoryMigrationStore(MigrationStore):
    """Store migration snapshots in local memory.

    Useful for tests or when no database is configured. Snapshots are kept
    serialized so callers never share mutable objects with the store.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, str] = {}

    async def load(self, migration_id: str) -> MigrationProgress | None:
        raw = self._snapshots.get(migration_id)
        if raw is None:
            return None
        return MigrationProgress.from_json(raw)

    async def save(self, migration_id: str, progress: MigrationProgress) -> None:
        self._snapshots[migration_id] = progress.to_json()

    async def list(self) -> list[MigrationProgress]:
        return [MigrationProgress.from_json(raw) for raw in self._snapshots.values()]
