"""Evidence records and collaborator interfaces for the hachiko engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from .policy.models import PolicyContext


class PRSignal(BaseModel):
    """Read-only evidence about one pull request."""

    model_config = ConfigDict(frozen=True)

    number: int
    title: str = ""
    body: Optional[str] = None
    head_branch: str = ""
    labels: List[str] = Field(default_factory=list)
    url: str = ""
    merged: bool = False
    closed: bool = False

    @classmethod
    def from_github(cls, pr: Dict[str, Any]) -> "PRSignal":
        """Build a signal from a GitHub REST ``pulls`` payload."""
        labels = [
            label["name"] if isinstance(label, dict) else str(label)
            for label in pr.get("labels") or []
        ]
        return cls(
            number=pr["number"],
            title=pr.get("title") or "",
            body=pr.get("body"),
            head_branch=(pr.get("head") or {}).get("ref", ""),
            labels=labels,
            url=pr.get("html_url") or "",
            merged=pr.get("merged_at") is not None or bool(pr.get("merged")),
            closed=pr.get("state") == "closed",
        )


class HachikoPR(BaseModel):
    """A pull request that has been attributed to a migration."""

    model_config = ConfigDict(frozen=True)

    number: int
    title: str
    migration_id: str
    branch: str
    labels: List[str] = Field(default_factory=list)
    url: str = ""
    merged: bool = False
    closed: bool = False
    step_number: Optional[int] = None


class PRSignalSource(Protocol):
    """Lists pull requests for a repository. Paging is the source's concern."""

    async def list_open(self, repo: str) -> List[PRSignal]:
        """Return open pull requests."""

    async def list_closed(self, repo: str) -> List[PRSignal]:
        """Return closed pull requests, merged or not."""


class DocumentSource(Protocol):
    """Fetches migration documents."""

    async def get_document(self, migration_id: str) -> Optional[str]:
        """Return the document text or ``None`` when it does not exist."""


class AgentResult(BaseModel):
    """Outcome reported by an agent once its task reaches a terminal status."""

    success: bool
    modified_files: List[str] = Field(default_factory=list)
    created_files: List[str] = Field(default_factory=list)
    deleted_files: List[str] = Field(default_factory=list)
    output: str = ""
    error: Optional[str] = None


class AgentStatus(BaseModel):
    """Snapshot returned while polling an agent task."""

    task_id: str
    status: str = "running"  # running, succeeded, failed
    result: Optional[AgentResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {"succeeded", "failed"}


class AgentDispatcher(Protocol):
    """Starts agent tasks and reports on their progress."""

    name: str

    async def submit(self, context: PolicyContext, prompt: str) -> str:
        """Start a task for an already authorized ``context``; return its id."""

    async def poll(self, task_id: str) -> AgentStatus:
        """Return the current status of ``task_id``."""
