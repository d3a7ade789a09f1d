"""Local implementations of the PR and document source interfaces."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Iterable, List, Optional

from .contracts import PRSignal
from .documents import migration_document_path
from .exceptions import SignalSourceError


class StaticPRSource:
    """Serves a fixed list of pull requests, split by closed flag."""

    def __init__(self, prs: Iterable[PRSignal]) -> None:
        self._prs = list(prs)

    async def list_open(self, repo: str) -> List[PRSignal]:
        return [pr for pr in self._prs if not pr.closed]

    async def list_closed(self, repo: str) -> List[PRSignal]:
        return [pr for pr in self._prs if pr.closed]


class JsonFilePRSource(StaticPRSource):
    """Reads a GitHub ``pulls`` listing saved as JSON (``state=all``)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            payload = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise SignalSourceError(
                f"Cannot read pull requests from {self.path}", {"path": str(self.path)}
            ) from exc
        if not isinstance(payload, list):
            raise SignalSourceError(
                "Pull request listing must be a JSON array", {"path": str(self.path)}
            )
        super().__init__(PRSignal.from_github(item) for item in payload)


class DirectoryDocumentSource:
    """Reads ``{directory}/{migration_id}.md`` from a local checkout."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def get_document(self, migration_id: str) -> Optional[str]:
        path = Path(migration_document_path(str(self.directory), migration_id))
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
