"""Data models for persisted migration state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ControlState(str, Enum):
    """Explicit control-plane state of a migration."""

    DRAFT = "draft"
    PLAN_APPROVED = "plan-approved"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting-review"
    PAUSED = "paused"
    FAILED = "failed"
    DONE = "done"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CONTROL_STATES


TERMINAL_CONTROL_STATES = frozenset(
    {ControlState.DONE, ControlState.CANCELLED, ControlState.SKIPPED}
)


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepProgress(BaseModel):
    """Progress record for one migration step."""

    step_id: str
    state: StepState = StepState.PENDING
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pull_request: Optional[int] = None
    agent: Optional[str] = None


class MigrationProgress(BaseModel):
    """Canonical persisted aggregate for one migration."""

    plan_id: str
    state: ControlState = ControlState.DRAFT
    issue_number: Optional[int] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    current_step: Optional[str] = None
    steps: Dict[str, StepProgress] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "MigrationProgress":
        return cls.model_validate_json(data)
