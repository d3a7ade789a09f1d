"""Persistence layer for migration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import HachikoConfig, load_config
from ..exceptions import ConfigurationError
from .inmemory import InMemoryMigrationStore
from .models import (
    ControlState,
    MigrationProgress,
    StepProgress,
    StepState,
    TERMINAL_CONTROL_STATES,
)
from .repository import MigrationStore
from .sqlite import SQLiteMigrationStore


def get_store(
    database_url: Optional[str] = None, config: Optional[HachikoConfig] = None
) -> MigrationStore:
    """Factory function to obtain a migration store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``HACHIKO_DATABASE_URL``, or from
    loaded configuration. When no database is configured, an in-memory store
    is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("HACHIKO_DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryMigrationStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteMigrationStore(path)
    raise ConfigurationError(
        f"Unsupported database backend: {database_url}",
        {"database_url": database_url},
    )


__all__ = [
    "ControlState",
    "InMemoryMigrationStore",
    "MigrationProgress",
    "MigrationStore",
    "SQLiteMigrationStore",
    "StepProgress",
    "StepState",
    "TERMINAL_CONTROL_STATES",
    "get_store",
]
