"""Explicit control-plane state machine for migrations and their steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .exceptions import MigrationStateError
from .persistence import (
    ControlState,
    MigrationProgress,
    MigrationStore,
    StepProgress,
    StepState,
    TERMINAL_CONTROL_STATES,
)
from .persistence.models import utcnow

logger = logging.getLogger(__name__)

_NON_TERMINAL = [s for s in ControlState if s not in TERMINAL_CONTROL_STATES]

_FORWARD_TRANSITIONS: Mapping[ControlState, frozenset[ControlState]] = {
    ControlState.DRAFT: frozenset({ControlState.PLAN_APPROVED}),
    ControlState.PLAN_APPROVED: frozenset({ControlState.QUEUED}),
    ControlState.QUEUED: frozenset({ControlState.RUNNING}),
    ControlState.RUNNING: frozenset(
        {ControlState.AWAITING_REVIEW, ControlState.FAILED, ControlState.PAUSED}
    ),
    ControlState.AWAITING_REVIEW: frozenset({ControlState.RUNNING, ControlState.DONE}),
    ControlState.PAUSED: frozenset({ControlState.QUEUED, ControlState.RUNNING}),
    ControlState.FAILED: frozenset(),
    ControlState.DONE: frozenset(),
    ControlState.CANCELLED: frozenset(),
    ControlState.SKIPPED: frozenset(),
}
# Any non-terminal state may also be cancelled.
VALID_STATE_TRANSITIONS: Mapping[ControlState, frozenset[ControlState]] = {
    state: (targets | {ControlState.CANCELLED}) if state in _NON_TERMINAL else targets
    for state, targets in _FORWARD_TRANSITIONS.items()
}

VALID_STEP_TRANSITIONS: Mapping[StepState, frozenset[StepState]] = {
    StepState.PENDING: frozenset({StepState.RUNNING}),
    StepState.RUNNING: frozenset(
        {StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED}
    ),
    StepState.FAILED: frozenset({StepState.RUNNING}),
    StepState.COMPLETED: frozenset(),
    StepState.SKIPPED: frozenset(),
}

_FINISHED_STEP_STATES = frozenset(
    {StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED}
)


def can_transition(current: ControlState, new: ControlState) -> bool:
    return new in VALID_STATE_TRANSITIONS[current]


def can_transition_step(current: StepState, new: StepState) -> bool:
    return new in VALID_STEP_TRANSITIONS[current]


def recalculate_progress(progress: MigrationProgress) -> None:
    """Recompute counters and ``current_step`` from the step map."""
    counts = {StepState.COMPLETED: 0, StepState.FAILED: 0, StepState.SKIPPED: 0}
    running: Optional[str] = None
    for step in progress.steps.values():
        if step.state in counts:
            counts[step.state] += 1
        elif step.state is StepState.RUNNING and running is None:
            running = step.step_id
    progress.completed_steps = counts[StepState.COMPLETED]
    progress.failed_steps = counts[StepState.FAILED]
    progress.skipped_steps = counts[StepState.SKIPPED]
    progress.current_step = running


def new_migration_progress(
    plan_id: str,
    step_ids: Iterable[str],
    issue_number: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> MigrationProgress:
    steps = {step_id: StepProgress(step_id=step_id) for step_id in step_ids}
    return MigrationProgress(
        plan_id=plan_id,
        issue_number=issue_number,
        total_steps=len(steps),
        steps=steps,
        metadata=metadata or {},
    )


class MigrationStateMachine:
    """Validates and persists control-plane transitions.

    Every call loads the snapshot, modifies a copy and saves it. There is no
    cross-process locking: two concurrent calls for one migration race and the
    last save wins.
    """

    def __init__(self, store: MigrationStore) -> None:
        self._store = store

    async def _require(self, plan_id: str) -> MigrationProgress:
        progress = await self._store.load(plan_id)
        if progress is None:
            raise MigrationStateError(
                f"Migration state not found for plan {plan_id}", plan_id, "unknown"
            )
        return progress

    async def create_migration(
        self,
        plan_id: str,
        step_ids: List[str],
        issue_number: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MigrationProgress:
        """Create the snapshot for a newly observed migration, all steps pending."""
        if len(set(step_ids)) != len(step_ids):
            raise MigrationStateError(
                f"Duplicate step ids in plan {plan_id}",
                plan_id,
                ControlState.DRAFT.value,
                {"step_ids": step_ids},
            )
        if await self._store.load(plan_id) is not None:
            raise MigrationStateError(
                f"Migration state already exists for plan {plan_id}",
                plan_id,
                "exists",
            )
        progress = new_migration_progress(plan_id, step_ids, issue_number, metadata)
        await self._store.save(plan_id, progress)
        logger.info(
            f"Created migration state for {plan_id} with {progress.total_steps} steps"
        )
        return progress

    async def get_migration(self, plan_id: str) -> MigrationProgress | None:
        return await self._store.load(plan_id)

    async def list_active_migrations(self) -> list[MigrationProgress]:
        """Return snapshots whose control state is not terminal."""
        return [p for p in await self._store.list() if not p.state.is_terminal]

    async def transition(self, plan_id: str, new_state: ControlState) -> MigrationProgress:
        """Move the migration to ``new_state``.

        Raises:
            MigrationStateError: If the migration does not exist or the edge
                is not in :data:`VALID_STATE_TRANSITIONS`. Nothing is saved.
        """
        progress = await self._require(plan_id)
        old_state = progress.state
        try:
            new_state = ControlState(new_state)
        except ValueError:
            raise MigrationStateError(
                f"Unknown migration state {new_state}",
                plan_id,
                old_state.value,
                {"requested_state": str(new_state)},
            ) from None
        if not can_transition(old_state, new_state):
            raise MigrationStateError(
                f"Invalid state transition from {old_state.value} to {new_state.value}",
                plan_id,
                old_state.value,
                {"requested_state": new_state.value},
            )

        now = utcnow()
        progress.state = new_state
        progress.last_updated_at = now
        if new_state is ControlState.RUNNING and progress.started_at is None:
            progress.started_at = now
        if new_state.is_terminal:
            progress.completed_at = now

        await self._store.save(plan_id, progress)
        logger.info(f"Migration {plan_id}: {old_state.value} -> {new_state.value}")
        return progress

    async def update_step(
        self,
        plan_id: str,
        step_id: str,
        new_state: StepState,
        pull_request: Optional[int] = None,
        agent: Optional[str] = None,
    ) -> MigrationProgress:
        """Move one step to ``new_state`` and recompute the aggregate counters.

        Raises:
            MigrationStateError: If the migration or step does not exist, the
                edge is not in :data:`VALID_STEP_TRANSITIONS`, the migration is
                terminal, or another step is already running.
        """
        progress = await self._require(plan_id)
        try:
            new_state = StepState(new_state)
        except ValueError:
            raise MigrationStateError(
                f"Unknown step state {new_state}",
                plan_id,
                progress.state.value,
                {"step_id": step_id, "requested_state": str(new_state)},
            ) from None
        if progress.state.is_terminal:
            raise MigrationStateError(
                f"Migration {plan_id} is {progress.state.value} and read-only",
                plan_id,
                progress.state.value,
                {"step_id": step_id},
            )

        step = progress.steps.get(step_id)
        if step is None:
            raise MigrationStateError(
                f"Step {step_id} not found in plan {plan_id}",
                plan_id,
                progress.state.value,
                {"step_id": step_id},
            )

        old_state = step.state
        if not can_transition_step(old_state, new_state):
            raise MigrationStateError(
                f"Invalid step state transition from {old_state.value} to {new_state.value}",
                plan_id,
                progress.state.value,
                {"step_id": step_id, "step_state": old_state.value},
            )

        if new_state is StepState.RUNNING:
            other = next(
                (
                    s.step_id
                    for s in progress.steps.values()
                    if s.state is StepState.RUNNING and s.step_id != step_id
                ),
                None,
            )
            if other is not None:
                raise MigrationStateError(
                    f"Step {other} is already running in plan {plan_id}",
                    plan_id,
                    progress.state.value,
                    {"step_id": step_id, "running_step": other},
                )

        now = utcnow()
        step.state = new_state
        if new_state is StepState.RUNNING:
            if old_state is StepState.FAILED:
                step.retry_count += 1
                step.completed_at = None
            if step.started_at is None:
                step.started_at = now
        if new_state in _FINISHED_STEP_STATES:
            step.completed_at = now
        if pull_request is not None:
            step.pull_request = pull_request
        if agent is not None:
            step.agent = agent

        recalculate_progress(progress)
        progress.last_updated_at = now
        await self._store.save(plan_id, progress)
        logger.info(
            f"Migration {plan_id} step {step_id}: {old_state.value} -> {new_state.value}"
        )
        return progress
