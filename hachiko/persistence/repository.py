"""Store abstraction for migration state persistence."""

from __future__ import annotations

from typing import Protocol

from .models import MigrationProgress


class MigrationStore(Protocol):
    """Protocol for migration state persistence backends.

    Stores hold whole snapshots keyed by migration id. They give no
    transactional guarantee: concurrent saves for one id are last-write-wins.
    """

    async def load(self, migration_id: str) -> MigrationProgress | None:
        """Return the stored snapshot or ``None`` when not found."""

    async def save(self, migration_id: str, progress: MigrationProgress) -> None:
        """Persist ``progress`` as the snapshot for ``migration_id``."""

    async def list(self) -> list[MigrationProgress]:
        """Return all stored snapshots."""
