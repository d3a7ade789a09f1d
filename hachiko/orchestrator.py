"""Decide whether the next migration step may be dispatched to an agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .config import HachikoConfig
from .contracts import AgentDispatcher, AgentResult, PRSignal
from .documents import parse_migration_document
from .exceptions import (
    AgentExecutionError,
    ConfigurationError,
    MigrationStateError,
    PolicyViolationError,
)
from .persistence import ControlState, MigrationProgress, StepState
from .policy import PolicyContext, PolicyEngine, PolicyEvaluationResult
from .reconcile import InferredMigrationState, MigrationStateInfo, StateReconciler
from .signals import detect_hachiko_pr
from .state import MigrationStateMachine
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

_DISPATCHABLE_STATES = frozenset(
    {ControlState.QUEUED, ControlState.RUNNING, ControlState.AWAITING_REVIEW}
)
_BUSY_STATES = frozenset({ControlState.RUNNING, ControlState.AWAITING_REVIEW})


class DispatchDecision(BaseModel):
    """Whether a step should be handed to an agent, and why."""

    migration_id: str
    dispatch: bool
    reason: str
    step_number: Optional[int] = None
    step_id: Optional[str] = None
    inferred: Optional[MigrationStateInfo] = None
    policy: Optional[PolicyEvaluationResult] = None


def step_id_for_number(progress: MigrationProgress, step_number: Optional[int]) -> Optional[str]:
    """Map a 1-based step number onto the plan's ordered step ids."""
    if step_number is None or step_number < 1:
        return None
    step_ids = list(progress.steps)
    if step_number > len(step_ids):
        return None
    return step_ids[step_number - 1]


def attempts_used(progress: MigrationProgress, step_id: str) -> int:
    step = progress.steps[step_id]
    if step.started_at is None:
        return 0
    return step.retry_count + 1


class Orchestrator:
    """Glue between reconciled evidence, explicit state and the policy gate."""

    def __init__(
        self,
        reconciler: StateReconciler,
        state_machine: MigrationStateMachine,
        policy_engine: PolicyEngine,
        dispatcher: Optional[AgentDispatcher] = None,
        config: Optional[HachikoConfig] = None,
        poll_base: float = 1.5,
        max_poll_interval: float = 30.0,
    ) -> None:
        self._reconciler = reconciler
        self._state_machine = state_machine
        self._policy_engine = policy_engine
        self._dispatcher = dispatcher
        self._config = config or HachikoConfig()
        self._poll_base = poll_base
        self._max_poll_interval = max_poll_interval
        if not policy_engine.initialized:
            policy_engine.initialize(self._config)

    @property
    def step_timeout(self) -> float:
        return self._config.policy.step_timeout_minutes * 60.0

    async def ensure_migration(
        self,
        repo: str,
        document: str,
        issue_number: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MigrationProgress:
        """Create the snapshot the first time a migration document is seen."""
        parsed = parse_migration_document(document)
        plan_id = parsed.frontmatter.id
        existing = await self._state_machine.get_migration(plan_id)
        if existing is not None:
            return existing
        return await self._state_machine.create_migration(
            plan_id,
            parsed.step_ids,
            issue_number=issue_number,
            metadata={"repository": repo, "title": parsed.frontmatter.title, **(metadata or {})},
        )

    async def _busy_migrations(self, repo: str, exclude: str) -> int:
        active = await self._state_machine.list_active_migrations()
        return sum(
            1
            for p in active
            if p.plan_id != exclude
            and p.state in _BUSY_STATES
            and p.metadata.get("repository") == repo
        )

    async def plan_next_step(
        self, repo: str, migration_id: str, context: PolicyContext
    ) -> DispatchDecision:
        """Reconcile evidence with the stored snapshot and consult policy."""

        def decide(dispatch: bool, reason: str, **extra: Any) -> DispatchDecision:
            decision = DispatchDecision(
                migration_id=migration_id, dispatch=dispatch, reason=reason, **extra
            )
            logger.info(f"Dispatch decision for {migration_id}: {dispatch} ({reason})")
            return decision

        inferred = await self._reconciler.get_migration_state_with_document(repo, migration_id)
        step_number = inferred.current_step
        if inferred.state is InferredMigrationState.COMPLETED:
            return decide(False, "all tasks are complete", inferred=inferred)
        if inferred.open_prs:
            return decide(
                False,
                f"step {step_number} has an open pull request",
                inferred=inferred,
                step_number=step_number,
            )

        progress = await self._state_machine.get_migration(migration_id)
        if progress is None:
            return decide(False, "migration is not tracked", inferred=inferred)
        if progress.state not in _DISPATCHABLE_STATES:
            return decide(
                False, f"migration is {progress.state.value}", inferred=inferred
            )
        if progress.current_step is not None:
            return decide(
                False,
                f"step {progress.current_step} is already running",
                inferred=inferred,
                step_id=progress.current_step,
            )
        if progress.state is ControlState.QUEUED:
            busy = await self._busy_migrations(repo, migration_id)
            limit = self._config.policy.per_repo_max_concurrent_migrations
            if busy >= limit:
                return decide(
                    False,
                    f"{busy} migrations already running in {repo} (limit {limit})",
                    inferred=inferred,
                )

        step_id = step_id_for_number(progress, step_number)
        if step_id is None:
            return decide(
                False, "no remaining steps", inferred=inferred, step_number=step_number
            )
        step = progress.steps[step_id]
        if step.state in (StepState.COMPLETED, StepState.SKIPPED):
            return decide(
                False,
                f"step {step_id} is already {step.state.value}",
                inferred=inferred,
                step_number=step_number,
                step_id=step_id,
            )
        max_attempts = self._config.policy.max_attempts_per_step
        if step.state is StepState.FAILED and attempts_used(progress, step_id) >= max_attempts:
            return decide(
                False,
                f"step {step_id} exhausted {max_attempts} attempts",
                inferred=inferred,
                step_number=step_number,
                step_id=step_id,
            )

        scoped = context.model_copy(update={"plan_id": migration_id, "step_id": step_id})
        policy = self._policy_engine.evaluate_policies(scoped)
        extra = dict(inferred=inferred, step_number=step_number, step_id=step_id, policy=policy)
        if not policy.allowed:
            return decide(False, "blocked by policy", **extra)
        if policy.requires_approval:
            return decide(False, "policy requires approval", **extra)
        return decide(True, f"step {step_id} is ready", **extra)

    async def execute_step(
        self,
        repo: str,
        migration_id: str,
        context: PolicyContext,
        prompt: str,
        timeout: Optional[float] = None,
    ) -> AgentResult:
        """Dispatch the next step and track it until the agent finishes.

        A timeout is recorded as a step failure, not a cancellation.

        Raises:
            PolicyViolationError: If policy rejected the action.
            MigrationStateError: If no step may be dispatched.
            ConfigurationError: If no dispatcher was configured.
        """
        if self._dispatcher is None:
            raise ConfigurationError("No agent dispatcher configured")

        decision = await self.plan_next_step(repo, migration_id, context)
        if not decision.dispatch:
            if decision.policy is not None and not decision.policy.allowed:
                raise PolicyViolationError(
                    decision.reason,
                    [v.model_dump(mode="json") for v in decision.policy.violations],
                    {"plan_id": migration_id, "step_id": decision.step_id},
                )
            raise MigrationStateError(decision.reason, migration_id, "not-dispatchable")

        step_id = decision.step_id
        progress = await self._state_machine.get_migration(migration_id)
        if progress.state is not ControlState.RUNNING:
            await self._state_machine.transition(migration_id, ControlState.RUNNING)
        await self._state_machine.update_step(
            migration_id, step_id, StepState.RUNNING, agent=self._dispatcher.name
        )

        scoped = context.model_copy(update={"plan_id": migration_id, "step_id": step_id})
        try:
            task_id = await self._dispatcher.submit(scoped, prompt)
            result = await self._wait_for_result(task_id, timeout or self.step_timeout)
        except Exception as e:
            logger.error(f"Step {step_id} of {migration_id} failed: {e}")
            await self._state_machine.update_step(migration_id, step_id, StepState.FAILED)
            raise

        if result.success:
            await self._state_machine.update_step(migration_id, step_id, StepState.COMPLETED)
            await self._state_machine.transition(migration_id, ControlState.AWAITING_REVIEW)
        else:
            logger.warning(f"Agent reported failure for {migration_id}/{step_id}: {result.error}")
            await self._state_machine.update_step(migration_id, step_id, StepState.FAILED)
        return result

    async def _wait_for_result(self, task_id: str, timeout: float) -> AgentResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0
        while True:
            status = await self._dispatcher.poll(task_id)
            if status.is_terminal:
                if status.result is not None:
                    return status.result
                return AgentResult(
                    success=status.status == "succeeded",
                    error=None if status.status == "succeeded" else "agent reported no result",
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise AgentExecutionError(
                    f"Agent task {task_id} did not finish within {timeout:.0f}s",
                    self._dispatcher.name,
                    {"task_id": task_id, "timeout": timeout},
                )
            attempt += 1
            delay = min(
                compute_backoff(attempt, base=self._poll_base, jitter=0),
                self._max_poll_interval,
                remaining,
            )
            await asyncio.sleep(delay)

    async def record_pull_request(self, pr: PRSignal) -> Optional[MigrationProgress]:
        """Reflect a pull request lifecycle event in the explicit step state."""
        detected = detect_hachiko_pr(pr)
        if detected is None:
            return None
        progress = await self._state_machine.get_migration(detected.migration_id)
        if progress is None:
            logger.debug(f"PR #{pr.number} belongs to untracked migration {detected.migration_id}")
            return None
        step_id = step_id_for_number(progress, detected.step_number)
        if step_id is None or progress.state.is_terminal:
            return progress

        plan_id = progress.plan_id
        step_state = progress.steps[step_id].state
        try:
            if not pr.closed:
                if step_state in (StepState.PENDING, StepState.FAILED):
                    progress = await self._state_machine.update_step(
                        plan_id, step_id, StepState.RUNNING, pull_request=pr.number
                    )
            elif pr.merged:
                if step_state in (StepState.PENDING, StepState.FAILED):
                    progress = await self._state_machine.update_step(
                        plan_id, step_id, StepState.RUNNING, pull_request=pr.number
                    )
                    step_state = StepState.RUNNING
                if step_state is StepState.RUNNING:
                    progress = await self._state_machine.update_step(
                        plan_id, step_id, StepState.COMPLETED, pull_request=pr.number
                    )
            elif step_state is StepState.RUNNING:
                progress = await self._state_machine.update_step(
                    plan_id, step_id, StepState.FAILED, pull_request=pr.number
                )
        except MigrationStateError as e:
            logger.warning(f"Ignoring PR #{pr.number} for {plan_id}/{step_id}: {e}")
            return await self._state_machine.get_migration(plan_id)
        return progress
