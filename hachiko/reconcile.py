"""Infer migration progress from pull request activity and checklists."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .contracts import DocumentSource, HachikoPR, PRSignal, PRSignalSource
from .signals import filter_migration_prs, is_cleanup_pr
from .utils.retry import with_retry

logger = logging.getLogger(__name__)

# Only top-level items count; nested checklists are sub-tasks of their parent.
_TASK_RE = re.compile(r"^- \[([ xX])\] (.*)$", re.MULTILINE)


class InferredMigrationState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ChecklistTask(BaseModel):
    completed: bool
    text: str


class TaskCompletionInfo(BaseModel):
    """Checklist totals parsed from a migration document."""

    total_tasks: int = 0
    completed_tasks: int = 0
    all_tasks_complete: bool = False
    tasks: List[ChecklistTask] = Field(default_factory=list)


class MigrationStateInfo(BaseModel):
    """State of a migration as reconstructed from external signals."""

    migration_id: str
    state: InferredMigrationState
    open_prs: List[HachikoPR] = Field(default_factory=list)
    closed_prs: List[HachikoPR] = Field(default_factory=list)
    current_step: int = 1
    total_tasks: int = 0
    completed_tasks: int = 0
    all_tasks_complete: bool = False
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def get_task_completion_info(document: str) -> TaskCompletionInfo:
    """Count ``- [ ]`` / ``- [x]`` items at the top level of ``document``."""
    tasks = [
        ChecklistTask(completed=mark != " ", text=text.strip())
        for mark, text in _TASK_RE.findall(document)
    ]
    completed = sum(1 for task in tasks if task.completed)
    return TaskCompletionInfo(
        total_tasks=len(tasks),
        completed_tasks=completed,
        all_tasks_complete=bool(tasks) and completed == len(tasks),
        tasks=tasks,
    )


def infer_state(
    open_prs: List[HachikoPR],
    closed_prs: List[HachikoPR],
    tasks: Optional[TaskCompletionInfo] = None,
) -> InferredMigrationState:
    """Apply the inference rules; the first match wins."""
    if tasks is not None and tasks.all_tasks_complete:
        return InferredMigrationState.COMPLETED
    if open_prs:
        return InferredMigrationState.ACTIVE
    if closed_prs:
        return InferredMigrationState.PAUSED
    return InferredMigrationState.PENDING


def _step_numbers(prs: Iterable[HachikoPR]) -> List[int]:
    return [pr.step_number for pr in prs if pr.step_number is not None]


def calculate_current_step(open_prs: List[HachikoPR], closed_prs: List[HachikoPR]) -> int:
    """Return the step number that should run next.

    Open pull requests pin the lowest step being worked on. Otherwise the
    highest merged step is the floor on completed work, so the next step
    follows it; counting merged pull requests instead would undercount when
    a later step was merged after an earlier one failed. With only failed
    attempts, the most recent one is retried.
    """
    if open_prs:
        open_steps = _step_numbers(open_prs)
        current = min(open_steps) if open_steps else 1
        logger.debug(f"Current step {current} from open PRs {open_steps}")
        return current

    merged_steps = _step_numbers(pr for pr in closed_prs if pr.merged)
    if merged_steps:
        logger.debug(f"Next step after merged steps {merged_steps}")
        return max(merged_steps) + 1

    failed = [pr for pr in closed_prs if not pr.merged]
    if failed:
        most_recent = max(failed, key=lambda pr: pr.number)
        if most_recent.step_number is not None:
            logger.debug(
                f"Retrying step {most_recent.step_number} from PR #{most_recent.number}"
            )
            return most_recent.step_number

    return 1


def build_state_info(
    migration_id: str,
    open_prs: List[HachikoPR],
    closed_prs: List[HachikoPR],
    document: Optional[str] = None,
) -> MigrationStateInfo:
    """Combine attributed pull requests and an optional document into a state."""
    tasks = get_task_completion_info(document) if document else TaskCompletionInfo()
    state = infer_state(open_prs, closed_prs, tasks)
    current_step = calculate_current_step(open_prs, closed_prs)
    info = MigrationStateInfo(
        migration_id=migration_id,
        state=state,
        open_prs=open_prs,
        closed_prs=closed_prs,
        current_step=current_step,
        total_tasks=tasks.total_tasks,
        completed_tasks=tasks.completed_tasks,
        all_tasks_complete=tasks.all_tasks_complete,
    )
    merged = sum(1 for pr in closed_prs if pr.merged)
    logger.info(
        f"Inferred migration {migration_id} as {state.value}: "
        f"open={len(open_prs)} merged={merged} "
        f"closed_unmerged={len(closed_prs) - merged} "
        f"tasks={tasks.completed_tasks}/{tasks.total_tasks} step={current_step}"
    )
    return info


class StateReconciler:
    """Reconstructs migration state from a PR source and a document source.

    PR listings are retried with exponential backoff; once ``max_attempts``
    is spent the last error propagates.
    """

    def __init__(
        self,
        pr_source: PRSignalSource,
        document_source: Optional[DocumentSource] = None,
        max_attempts: int = 3,
        retry_base: float = 1.5,
        retry_jitter: float = 0.5,
    ) -> None:
        self._pr_source = pr_source
        self._document_source = document_source
        self._max_attempts = max_attempts
        self._retry_base = retry_base
        self._retry_jitter = retry_jitter

    async def _fetch_prs(self, repo: str, migration_id: str) -> tuple[List[HachikoPR], List[HachikoPR]]:
        async def list_both() -> tuple[List[PRSignal], List[PRSignal]]:
            open_signals, closed_signals = await asyncio.gather(
                self._pr_source.list_open(repo), self._pr_source.list_closed(repo)
            )
            return open_signals, closed_signals

        try:
            open_signals, closed_signals = await with_retry(
                list_both,
                max_attempts=self._max_attempts,
                base=self._retry_base,
                jitter=self._retry_jitter,
            )
        except Exception as e:
            logger.error(f"Failed to list pull requests for {migration_id} in {repo}: {e}")
            raise
        return (
            filter_migration_prs(open_signals, migration_id),
            filter_migration_prs(closed_signals, migration_id),
        )

    async def get_migration_state(
        self, repo: str, migration_id: str, document: Optional[str] = None
    ) -> MigrationStateInfo:
        """Infer state from pull requests and, if given, the document text.

        Raises:
            Exception: Whatever the PR source raised; without PR evidence no
                state can be derived.
        """
        open_prs, closed_prs = await self._fetch_prs(repo, migration_id)
        return build_state_info(migration_id, open_prs, closed_prs, document)

    async def fetch_document(self, migration_id: str) -> Optional[str]:
        """Return the migration document, or ``None`` if unavailable for any reason."""
        if self._document_source is None:
            return None
        try:
            document = await self._document_source.get_document(migration_id)
        except Exception as e:
            logger.warning(
                f"Failed to fetch document for {migration_id}, "
                f"falling back to PR-only inference: {e}"
            )
            return None
        if document is None:
            logger.info(f"Migration document for {migration_id} not found")
        return document

    async def get_migration_state_with_document(
        self, repo: str, migration_id: str
    ) -> MigrationStateInfo:
        """Like :meth:`get_migration_state` but fetches the document first."""
        document = await self.fetch_document(migration_id)
        return await self.get_migration_state(repo, migration_id, document)

    async def get_multiple_migration_states(
        self, repo: str, migration_ids: List[str]
    ) -> Dict[str, MigrationStateInfo]:
        """Reconcile several migrations; one failing id does not fail the batch."""

        async def _one(migration_id: str) -> MigrationStateInfo:
            try:
                return await self.get_migration_state_with_document(repo, migration_id)
            except Exception as e:
                logger.error(f"Failed to infer state for {migration_id}: {e}")
                return MigrationStateInfo(
                    migration_id=migration_id, state=InferredMigrationState.PENDING
                )

        results = await asyncio.gather(*(_one(mid) for mid in migration_ids))
        logger.info(f"Processed {len(results)} migration states for {repo}")
        return {info.migration_id: info for info in results}


def get_migration_state_summary(info: MigrationStateInfo) -> str:
    """One-line, human readable description of ``info``."""
    tasks = (
        f" • {info.completed_tasks}/{info.total_tasks} tasks complete"
        if info.total_tasks
        else ""
    )
    if info.state is InferredMigrationState.PENDING:
        if info.total_tasks:
            return f"Pending ({info.total_tasks} tasks planned, none started)"
        return "Pending (no PRs opened yet)"
    if info.state is InferredMigrationState.ACTIVE:
        count = len(info.open_prs)
        prs = "1 open PR" if count == 1 else f"{count} open PRs"
        return f"Active ({prs}{tasks})"
    if info.state is InferredMigrationState.PAUSED:
        count = len(info.closed_prs)
        prs = "1 closed PR" if count == 1 else f"{count} closed PRs"
        latest = max(info.closed_prs, key=lambda pr: pr.number, default=None)
        on_cleanup = " on cleanup" if latest is not None and is_cleanup_pr(latest) else ""
        return f"Paused{on_cleanup} ({prs}, no open PRs{tasks})"
    return f"Completed (all {info.total_tasks} tasks finished)"
