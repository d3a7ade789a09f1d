import pytest

from hachiko.config import HachikoConfig, PolicyConfig
from hachiko.contracts import AgentResult, AgentStatus, PRSignal
from hachiko.exceptions import (
    AgentExecutionError,
    ConfigurationError,
    MigrationStateError,
    PolicyViolationError,
)
from hachiko.orchestrator import Orchestrator, step_id_for_number
from hachiko.persistence import ControlState, InMemoryMigrationStore, StepState
from hachiko.policy import PolicyContext, PolicyEngine, RepositoryInfo, UserInfo
from hachiko.reconcile import StateReconciler
from hachiko.sources import StaticPRSource
from hachiko.state import MigrationStateMachine

REPO = "acme/app"

DOCUMENT = """---
id: demo
title: Demo migration
steps:
  - id: step-1
  - id: step-2
---

- [ ] first
- [ ] second
"""


class FakeDispatcher:
    name = "mock"

    def __init__(self, statuses=None, submit_error=None):
        self.statuses = list(statuses or [])
        self.submit_error = submit_error
        self.submitted = []

    async def submit(self, context, prompt):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((context, prompt))
        return f"task-{len(self.submitted)}"

    async def poll(self, task_id):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class DictDocumentSource:
    def __init__(self, documents):
        self.documents = documents

    async def get_document(self, migration_id):
        return self.documents.get(migration_id)


def done(success=True, error=None):
    return AgentStatus(
        task_id="task-1",
        status="succeeded" if success else "failed",
        result=AgentResult(success=success, modified_files=["src/a.ts"], error=error),
    )


def make_context(files=("src/a.ts",)):
    return PolicyContext(
        repository=RepositoryInfo(owner="acme", name="app"),
        user=UserInfo(login="hachiko"),
        files=list(files),
    )


def make_orchestrator(prs=(), dispatcher=None, config=None, documents=None):
    machine = MigrationStateMachine(InMemoryMigrationStore())
    reconciler = StateReconciler(StaticPRSource(prs), DictDocumentSource(documents or {}))
    orchestrator = Orchestrator(
        reconciler,
        machine,
        PolicyEngine(),
        dispatcher=dispatcher,
        config=config,
        poll_base=1.0,
        max_poll_interval=0.01,
    )
    return orchestrator, machine


async def queue(orchestrator, machine, document=DOCUMENT):
    progress = await orchestrator.ensure_migration(REPO, document, issue_number=5)
    await machine.transition(progress.plan_id, ControlState.PLAN_APPROVED)
    await machine.transition(progress.plan_id, ControlState.QUEUED)
    return progress.plan_id


@pytest.mark.asyncio
async def test_ensure_migration_is_idempotent():
    orchestrator, machine = make_orchestrator()
    first = await orchestrator.ensure_migration(REPO, DOCUMENT)
    assert first.metadata == {"repository": REPO, "title": "Demo migration"}
    assert list(first.steps) == ["step-1", "step-2"]

    await machine.transition("demo", ControlState.PLAN_APPROVED)
    again = await orchestrator.ensure_migration(REPO, DOCUMENT)
    assert again.state is ControlState.PLAN_APPROVED


@pytest.mark.asyncio
async def test_draft_migration_is_not_dispatched():
    orchestrator, _ = make_orchestrator()
    await orchestrator.ensure_migration(REPO, DOCUMENT)
    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert decision.reason == "migration is draft"


@pytest.mark.asyncio
async def test_untracked_migration_is_not_dispatched():
    orchestrator, _ = make_orchestrator()
    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert decision.reason == "migration is not tracked"


@pytest.mark.asyncio
async def test_execute_step_runs_agent_and_awaits_review():
    dispatcher = FakeDispatcher([AgentStatus(task_id="task-1"), done()])
    orchestrator, machine = make_orchestrator(dispatcher=dispatcher)
    await queue(orchestrator, machine)

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is True
    assert decision.step_id == "step-1"
    assert decision.policy.allowed

    result = await orchestrator.execute_step(REPO, "demo", make_context(), "Add docs")
    assert result.success
    context, prompt = dispatcher.submitted[0]
    assert (context.plan_id, context.step_id, prompt) == ("demo", "step-1", "Add docs")

    progress = await machine.get_migration("demo")
    assert progress.state is ControlState.AWAITING_REVIEW
    assert progress.steps["step-1"].state is StepState.COMPLETED
    assert progress.steps["step-1"].agent == "mock"
    assert progress.completed_steps == 1


@pytest.mark.asyncio
async def test_merged_pr_advances_to_next_step():
    merged = PRSignal(
        number=11, title="Step 1", head_branch="hachiko/demo-step-1", merged=True, closed=True
    )
    dispatcher = FakeDispatcher([done()])
    orchestrator, machine = make_orchestrator(prs=[merged], dispatcher=dispatcher)
    await queue(orchestrator, machine)
    progress = await orchestrator.record_pull_request(merged)
    assert progress.steps["step-1"].state is StepState.COMPLETED

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is True
    assert decision.step_number == 2
    assert decision.step_id == "step-2"

    await orchestrator.execute_step(REPO, "demo", make_context(), "step two")
    progress = await machine.get_migration("demo")
    assert progress.completed_steps == 2

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False


@pytest.mark.asyncio
async def test_open_pr_blocks_dispatch():
    open_pr = PRSignal(number=12, title="Step 1", head_branch="hachiko/demo-step-1")
    orchestrator, machine = make_orchestrator(prs=[open_pr])
    await queue(orchestrator, machine)
    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert decision.step_number == 1
    assert "open pull request" in decision.reason


@pytest.mark.asyncio
async def test_completed_checklist_blocks_dispatch():
    finished = DOCUMENT.replace("- [ ]", "- [x]")
    orchestrator, machine = make_orchestrator(documents={"demo": finished})
    await queue(orchestrator, machine)
    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert decision.reason == "all tasks are complete"


@pytest.mark.asyncio
async def test_policy_violation_prevents_execution():
    dispatcher = FakeDispatcher([done()])
    orchestrator, machine = make_orchestrator(dispatcher=dispatcher)
    await queue(orchestrator, machine)

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context([".env"]))
    assert decision.dispatch is False
    assert decision.reason == "blocked by policy"

    with pytest.raises(PolicyViolationError) as exc_info:
        await orchestrator.execute_step(REPO, "demo", make_context([".env"]), "x")
    assert exc_info.value.violations[0]["rule_id"] == "block_sensitive_files"
    assert dispatcher.submitted == []
    assert (await machine.get_migration("demo")).state is ControlState.QUEUED


@pytest.mark.asyncio
async def test_agent_timeout_marks_step_failed():
    dispatcher = FakeDispatcher([AgentStatus(task_id="task-1")])
    config = HachikoConfig(policy=PolicyConfig(max_attempts_per_step=1))
    orchestrator, machine = make_orchestrator(dispatcher=dispatcher, config=config)
    await queue(orchestrator, machine)

    with pytest.raises(AgentExecutionError):
        await orchestrator.execute_step(REPO, "demo", make_context(), "x", timeout=0.02)

    progress = await machine.get_migration("demo")
    assert progress.state is ControlState.RUNNING
    assert progress.steps["step-1"].state is StepState.FAILED
    assert progress.failed_steps == 1

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert "exhausted" in decision.reason


@pytest.mark.asyncio
async def test_failed_step_is_retried_until_attempts_run_out():
    dispatcher = FakeDispatcher([done(success=False, error="tests failed")])
    orchestrator, machine = make_orchestrator(dispatcher=dispatcher)
    await queue(orchestrator, machine)

    result = await orchestrator.execute_step(REPO, "demo", make_context(), "x")
    assert result.success is False
    retry = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert retry.dispatch is True
    assert retry.step_id == "step-1"

    await orchestrator.execute_step(REPO, "demo", make_context(), "x")
    progress = await machine.get_migration("demo")
    assert progress.steps["step-1"].retry_count == 1
    exhausted = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert exhausted.dispatch is False


@pytest.mark.asyncio
async def test_execute_step_requires_dispatcher():
    orchestrator, machine = make_orchestrator()
    await queue(orchestrator, machine)
    with pytest.raises(ConfigurationError):
        await orchestrator.execute_step(REPO, "demo", make_context(), "x")


@pytest.mark.asyncio
async def test_not_dispatchable_raises_state_error():
    orchestrator, _ = make_orchestrator(dispatcher=FakeDispatcher([done()]))
    await orchestrator.ensure_migration(REPO, DOCUMENT)
    with pytest.raises(MigrationStateError):
        await orchestrator.execute_step(REPO, "demo", make_context(), "x")


@pytest.mark.asyncio
async def test_submit_failure_marks_step_failed():
    dispatcher = FakeDispatcher(submit_error=AgentExecutionError("boom", "mock"))
    orchestrator, machine = make_orchestrator(dispatcher=dispatcher)
    await queue(orchestrator, machine)
    with pytest.raises(AgentExecutionError):
        await orchestrator.execute_step(REPO, "demo", make_context(), "x")
    progress = await machine.get_migration("demo")
    assert progress.steps["step-1"].state is StepState.FAILED


@pytest.mark.asyncio
async def test_per_repo_concurrency_limit():
    other = DOCUMENT.replace("id: demo", "id: other")
    config = HachikoConfig(policy=PolicyConfig(per_repo_max_concurrent_migrations=1))
    orchestrator, machine = make_orchestrator(config=config)
    await queue(orchestrator, machine, other)
    await machine.transition("other", ControlState.RUNNING)
    await queue(orchestrator, machine)

    decision = await orchestrator.plan_next_step(REPO, "demo", make_context())
    assert decision.dispatch is False
    assert "limit 1" in decision.reason

    decision = await orchestrator.plan_next_step("acme/elsewhere", "demo", make_context())
    assert decision.dispatch is True


@pytest.mark.asyncio
async def test_record_pull_request_tracks_step_lifecycle():
    orchestrator, machine = make_orchestrator()
    await queue(orchestrator, machine)

    opened = PRSignal(number=21, title="Step 1", head_branch="hachiko/demo-step-1")
    progress = await orchestrator.record_pull_request(opened)
    assert progress.steps["step-1"].state is StepState.RUNNING
    assert progress.steps["step-1"].pull_request == 21

    merged = opened.model_copy(update={"merged": True, "closed": True})
    progress = await orchestrator.record_pull_request(merged)
    assert progress.steps["step-1"].state is StepState.COMPLETED

    closed = PRSignal(number=22, title="Step 2", head_branch="hachiko/demo-step-2", closed=True)
    progress = await orchestrator.record_pull_request(closed)
    assert progress.steps["step-2"].state is StepState.PENDING

    unrelated = PRSignal(number=30, title="chore", head_branch="feature/x")
    assert await orchestrator.record_pull_request(unrelated) is None


@pytest.mark.asyncio
async def test_closed_unmerged_pr_fails_running_step():
    orchestrator, machine = make_orchestrator()
    await queue(orchestrator, machine)
    opened = PRSignal(number=21, title="Step 1", head_branch="hachiko/demo-step-1")
    await orchestrator.record_pull_request(opened)
    progress = await orchestrator.record_pull_request(
        opened.model_copy(update={"closed": True})
    )
    assert progress.steps["step-1"].state is StepState.FAILED


def test_step_id_for_number():
    from hachiko.state import new_migration_progress

    progress = new_migration_progress("demo", ["a", "b"])
    assert step_id_for_number(progress, 1) == "a"
    assert step_id_for_number(progress, 2) == "b"
    assert step_id_for_number(progress, 3) is None
    assert step_id_for_number(progress, 0) is None
