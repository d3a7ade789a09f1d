"""Command line interface for inspecting hachiko migrations."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer

from hachiko.config import load_config
from hachiko.contracts import PRSignal
from hachiko.exceptions import (
    ConfigurationError,
    ConventionError,
    HachikoError,
    format_error_for_issue,
)
from hachiko.persistence import ControlState, get_store
from hachiko.policy import PolicyContext, PolicyEngine, RepositoryInfo, UserInfo
from hachiko.reconcile import (
    StateReconciler,
    get_migration_state_summary,
    get_task_completion_info,
)
from hachiko.signals import extract_migration_id, validate_hachiko_pr
from hachiko.sources import DirectoryDocumentSource, JsonFilePRSource
from hachiko.state import MigrationStateMachine

app = typer.Typer(help="CLI for hachiko migrations")

# Command groups
migration_app = typer.Typer(help="Commands for inspecting migration state")
pr_app = typer.Typer(help="Commands for pull request conventions")
policy_app = typer.Typer(help="Commands for the policy gate")

app.add_typer(migration_app, name="migration")
app.add_typer(pr_app, name="pr")
app.add_typer(policy_app, name="policy")


def _fail(error: HachikoError, markdown: bool = False) -> None:
    if markdown:
        typer.echo(format_error_for_issue(error))
        raise typer.Exit(code=1)
    typer.secho(f"{error.code}: {error.message}", fg=typer.colors.RED)
    for hint in error.details.get("recommendations", []):
        typer.echo(f"  - {hint}")
    raise typer.Exit(code=1)


@app.callback()
def main() -> None:
    """Hachiko CLI entry point."""
    pass


@migration_app.command("list")
def migration_list() -> None:
    """
    List tracked migrations with their control state and step counts.

    Example:
        hachiko migration list
        # Output: add-jsdoc-comments    running    1/3
    """
    store = get_store()
    migrations = asyncio.run(store.list())
    if not migrations:
        typer.echo("No migrations found")
        return
    for progress in migrations:
        typer.echo(
            f"{progress.plan_id}\t{progress.state.value}\t"
            f"{progress.completed_steps}/{progress.total_steps}"
        )


@migration_app.command("show")
def migration_show(migration_id: str) -> None:
    """
    Show the stored snapshot for one migration, step by step.

    Example:
        hachiko migration show add-jsdoc-comments
        # Output: Migration add-jsdoc-comments: RUNNING
        #         - step-1: completed (PR #123)
        #         - step-2: running
    """
    store = get_store()
    progress = asyncio.run(store.load(migration_id))
    if progress is None:
        typer.echo("Migration not found")
        raise typer.Exit(code=1)
    typer.echo(f"Migration {progress.plan_id}: {progress.state.value.upper()}")
    typer.echo(
        f"Completed {progress.completed_steps}/{progress.total_steps}, "
        f"failed {progress.failed_steps}, skipped {progress.skipped_steps}"
    )
    for step in progress.steps.values():
        pr = f" (PR #{step.pull_request})" if step.pull_request else ""
        retries = f" retries={step.retry_count}" if step.retry_count else ""
        typer.echo(f"- {step.step_id}: {step.state.value}{pr}{retries}")


@migration_app.command("transition")
def migration_transition(migration_id: str, state: ControlState) -> None:
    """Request an explicit control-state transition for a migration."""
    machine = MigrationStateMachine(get_store())
    try:
        progress = asyncio.run(machine.transition(migration_id, state))
    except HachikoError as e:
        _fail(e)
    typer.echo(f"Migration {migration_id} is now {progress.state.value}")


@migration_app.command("infer")
def migration_infer(
    migration_id: str,
    prs: Path = typer.Option(..., help="JSON file with a GitHub pull request listing"),
    docs: Optional[Path] = typer.Option(None, help="Directory holding migration documents"),
    repo: str = typer.Option("local", help="Repository name passed to the sources"),
) -> None:
    """
    Infer a migration's state from saved pull request data.

    Example:
        hachiko migration infer add-jsdoc-comments --prs prs.json --docs migrations/
        # Output: Active (1 open PR • 2/5 tasks complete)
        #         Current step: 3
    """
    try:
        source = JsonFilePRSource(prs)
    except HachikoError as e:
        _fail(e)
    documents = DirectoryDocumentSource(docs) if docs else None
    reconciler = StateReconciler(source, documents)
    info = asyncio.run(reconciler.get_migration_state_with_document(repo, migration_id))
    typer.echo(get_migration_state_summary(info))
    typer.echo(f"Current step: {info.current_step}")


@migration_app.command("checklist")
def migration_checklist(path: Path) -> None:
    """Count the top-level checklist items of a migration document."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    info = get_task_completion_info(path.read_text(encoding="utf-8"))
    typer.echo(f"{info.completed_tasks}/{info.total_tasks} tasks complete")
    if info.all_tasks_complete:
        typer.echo("All tasks complete")


@pr_app.command("validate")
def pr_validate(
    branch: str = typer.Option("", help="Head branch name"),
    title: str = typer.Option("", help="Pull request title"),
    label: List[str] = typer.Option([], help="Pull request label (repeatable)"),
    body: Optional[str] = typer.Option(None, help="Pull request body"),
    markdown: bool = typer.Option(False, help="Print failures as an issue comment"),
) -> None:
    """
    Check a pull request against the migration naming conventions.

    Example:
        hachiko pr validate --branch hachiko/add-jsdoc-comments --label hachiko:migration
        # Output: Migration: add-jsdoc-comments (branch, label)
    """
    pr = PRSignal(number=0, title=title, body=body, head_branch=branch, labels=label)
    validation = validate_hachiko_pr(pr)
    migration_id = validation.migration_id or extract_migration_id(pr)
    methods = ", ".join(validation.identification_methods) or "none"
    typer.echo(f"Migration: {migration_id or '(unknown)'} ({methods})")
    if not validation.is_valid:
        _fail(
            ConventionError(
                "Not enough conventions followed",
                validation.recommendations,
                {"migration_id": migration_id},
            ),
            markdown=markdown,
        )


@policy_app.command("check")
def policy_check(
    file: List[str] = typer.Option([], help="File the action touches (repeatable)"),
    command: Optional[List[str]] = typer.Option(None, help="Command to run (repeatable)"),
    user: str = typer.Option("hachiko", help="Login requesting the action"),
    user_type: str = typer.Option("User", help="GitHub account type"),
    repo: str = typer.Option("local/repo", help="owner/name of the repository"),
    rules: Optional[Path] = typer.Option(None, help="YAML file with extra policy rules"),
) -> None:
    """
    Evaluate a proposed action against the configured policy.

    Example:
        hachiko policy check --file .env.production
        # Output: BLOCKED
        #         [error] block_sensitive_files: Access to sensitive files is not allowed
    """
    try:
        engine = PolicyEngine()
        engine.initialize(load_config())
        if rules is not None:
            engine.load_rules_from_file(rules)
    except ConfigurationError as e:
        _fail(e)

    owner, _, name = repo.partition("/")
    context = PolicyContext(
        repository=RepositoryInfo(owner=owner, name=name or owner),
        user=UserInfo(login=user, type=user_type),
        files=file,
        commands=command or None,
    )
    result = engine.evaluate_policies(context)
    typer.echo("ALLOWED" if result.allowed else "BLOCKED")
    for violation in result.violations + result.warnings:
        typer.echo(f"[{violation.severity.value}] {violation.rule_id}: {violation.message}")
    if result.requires_approval:
        typer.echo("Approval required")
    if not result.allowed:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
