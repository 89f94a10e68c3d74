"""Command line interface for managing and running errand workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from errand import intent as intent_parser
from errand import planner
from errand.config import load_config
from errand.confidence import ConfidenceTracker
from errand.contracts import LiteralParam, Step
from errand.engine import Decision, StepApprover, WorkflowRunner
from errand.errors import ErrandError, WorkflowNotFoundError
from errand.history import History
from errand.persistence import WorkflowRecord, WorkflowRepository, get_repository
from errand.scheduler import Scheduler
from errand.tools import load_executor
from errand.transfer import WorkflowTransfer

app = typer.Typer(help="CLI for errand workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
scheduler_app = typer.Typer(help="Commands for running triggers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """errand CLI entry point."""
    level = "DEBUG" if verbose else load_config().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


async def _find(repo: WorkflowRepository, ident: str) -> WorkflowRecord:
    workflow = await repo.get_workflow_by_name(ident) or await repo.get_workflow(ident)
    if workflow is None:
        raise WorkflowNotFoundError(f"Workflow not found: {ident}")
    return workflow


def _lookup(ident: str) -> WorkflowRecord:
    try:
        return asyncio.run(_find(get_repository(), ident))
    except WorkflowNotFoundError as exc:
        _fail(str(exc))


def _print_steps(steps: list[Step]) -> None:
    for step in steps:
        params = ", ".join(
            f"{k}={v.value!r}" if isinstance(v, LiteralParam) else f"{k}={v}"
            for k, v in step.params.items()
        )
        typer.echo(f"  {step.id}. [{step.tool}] {step.description} ({step.confidence:.0%})")
        if params:
            typer.echo(f"     params: {params}")
        if step.output_key:
            typer.echo(f"     -> {step.output_key}")


async def _prompt(text: str, default: str) -> str:
    # typer.prompt blocks on stdin; keep the event loop free for other runs
    return await asyncio.to_thread(typer.prompt, text, default=default)


class CliApprover(StepApprover):
    """Ask on the terminal whether to run, edit or skip a step."""

    async def confirm(self, step: Step, preview: str, params: Dict[str, Any]) -> Decision:
        typer.echo(preview)
        choice = (await _prompt("[a]pprove, [e]dit, [s]kip", "a")).strip().lower()
        if choice.startswith("s"):
            return Decision.skip()
        if not choice.startswith("e"):
            return Decision.approve()

        changed: Dict[str, Any] = {}
        for key, value in params.items():
            current = json.dumps(value, default=str)
            answer = await _prompt(key, current)
            if answer == current:
                continue
            try:
                changed[key] = json.loads(answer)
            except json.JSONDecodeError:
                changed[key] = answer
        return Decision.correct(changed) if changed else Decision.approve()


@workflow_app.command("create")
def workflow_create(
    description: str,
    name: Optional[str] = typer.Option(None, help="Override the generated name"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without saving"),
) -> None:
    """
    Create a workflow from a plain-English description.

    Example:
        errand workflow create "Every Friday at 5pm, extract vendor and amount
        from invoices in my Downloads folder and add them to ~/expenses.csv"
    """
    parsed = intent_parser.parse(description)
    try:
        steps = planner.generate(parsed)
    except ErrandError as exc:
        _fail(f"Could not build a plan: {exc}")
    workflow_name = name or parsed.name

    typer.echo(f"Workflow: {workflow_name}")
    typer.echo(f"Trigger: {parsed.trigger.model_dump(exclude_none=True)}")
    _print_steps(steps)
    if dry_run:
        return

    repo = get_repository()
    try:
        workflow = asyncio.run(
            repo.create_workflow(
                workflow_name,
                steps,
                trigger=parsed.trigger.model_dump(),
                description=parsed.description,
            )
        )
    except ErrandError as exc:
        _fail(str(exc))
    typer.secho(f"Saved workflow {workflow.name} ({workflow.id})", fg=typer.colors.GREEN)


@workflow_app.command("list")
def workflow_list() -> None:
    """List saved workflows, most-run first."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.enabled else "disabled"
        typer.echo(
            f"{wf.name}\t{wf.trigger_type}\t{wf.confidence:.0%}\t"
            f"{wf.success_count}/{wf.run_count} runs\t{state}"
        )


@workflow_app.command("show")
def workflow_show(workflow: str) -> None:
    """Show a workflow's trigger, steps and counters."""
    wf = _lookup(workflow)
    typer.echo(f"Workflow {wf.name} ({wf.id})")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    typer.echo(f"Trigger: {wf.trigger}")
    typer.echo(f"Enabled: {wf.enabled}")
    typer.echo(f"Confidence: {wf.confidence:.0%}  Runs: {wf.run_count}  Successful: {wf.success_count}")
    _print_steps(wf.steps)


@workflow_app.command("delete")
def workflow_delete(
    workflow: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a workflow and its history."""
    wf = _lookup(workflow)
    if not yes and not typer.confirm(f"Delete workflow {wf.name}?"):
        raise typer.Exit(code=1)
    asyncio.run(get_repository().delete_workflow(wf.id))
    typer.echo(f"Deleted {wf.name}")


def _set_enabled(workflow: str, enabled: bool) -> None:
    wf = _lookup(workflow)
    asyncio.run(get_repository().set_enabled(wf.id, enabled))
    typer.echo(f"{wf.name} {'enabled' if enabled else 'disabled'}")


@workflow_app.command("enable")
def workflow_enable(workflow: str) -> None:
    """Let triggers start this workflow."""
    _set_enabled(workflow, True)


@workflow_app.command("disable")
def workflow_disable(workflow: str) -> None:
    """Stop triggers from starting this workflow."""
    _set_enabled(workflow, False)


@workflow_app.command("run")
def workflow_run(
    workflow: str,
    executor: Optional[str] = typer.Option(
        None, help="Tool executor as module:attribute (defaults to config)"
    ),
    interactive: bool = typer.Option(
        True, help="Ask before running steps that are not yet autonomous"
    ),
) -> None:
    """
    Run a workflow once.

    Example:
        errand workflow run friday-invoices --executor mytools:executor
    """
    config = load_config()
    spec = executor or config.executor
    if not spec:
        _fail("No tool executor configured; pass --executor module:attribute")
    wf = _lookup(workflow)

    async def _run():
        async with load_executor(spec) as tools:
            runner = WorkflowRunner(
                get_repository(),
                tools,
                approver=CliApprover() if interactive else None,
                config=config,
            )
            return await runner.run(wf.id)

    try:
        result = asyncio.run(_run())
    except (ErrandError, ImportError, ValueError) as exc:
        _fail(str(exc))

    for event in result.log:
        line = f"- step {event.step_id}: {event.event}"
        if event.error:
            line += f" ({event.error})"
        typer.echo(line)
    colour = typer.colors.GREEN if result.success else typer.colors.RED
    typer.secho(f"Run {result.run_id}: {result.status}", fg=colour)
    if result.status != "completed":
        raise typer.Exit(code=1)


@workflow_app.command("history")
def workflow_history(
    workflow: Optional[str] = typer.Argument(None),
    limit: int = typer.Option(20, help="Maximum number of runs"),
    status: Optional[str] = typer.Option(None, help="Only runs with this status"),
) -> None:
    """Show recent runs for one workflow, or all workflows."""
    history = History(get_repository())
    if workflow is None:
        runs = asyncio.run(history.get_all_runs(limit=limit, status=status))
    else:
        wf = _lookup(workflow)
        runs = asyncio.run(history.get_runs(wf.id, limit=limit, status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        duration = f"{run.duration_seconds}s" if run.duration_seconds is not None else "-"
        typer.echo(
            f"{run.started_at:%Y-%m-%d %H:%M}\t{run.workflow_name}\t{run.status}\t{duration}"
        )
    if workflow is not None:
        stats = asyncio.run(history.get_stats(wf.id))
        typer.echo(
            f"Total: {stats.total_runs}  Success rate: {stats.success_rate}%  "
            f"Average: {stats.avg_duration_seconds}s"
        )
        for error in asyncio.run(history.get_recent_errors(wf.id)):
            for message in error.errors:
                typer.secho(f"  {error.started_at:%Y-%m-%d %H:%M} {message}", fg=typer.colors.RED)


@workflow_app.command("graduation")
def workflow_graduation(workflow: str) -> None:
    """Show whether each step is ready to run unattended."""
    wf = _lookup(workflow)
    repo = get_repository()

    async def _statuses():
        return [
            (
                step,
                await ConfidenceTracker(repo, wf.id, step.id).evaluate_graduation(
                    step.confidence, wf.run_count
                ),
            )
            for step in wf.steps
        ]

    for step, status in asyncio.run(_statuses()):
        verdict = "ready" if status.ready else "supervised"
        typer.echo(f"{step.id}. {step.tool}: {verdict}")
        for reason in status.reasons:
            typer.echo(f"   - {reason}")


@workflow_app.command("patterns")
def workflow_patterns(workflow: str) -> None:
    """Show correction patterns learned for a workflow."""
    wf = _lookup(workflow)
    patterns = asyncio.run(ConfidenceTracker(get_repository(), wf.id).infer_patterns())
    if not patterns:
        typer.echo("No patterns learned yet")
        return
    for pattern in patterns:
        typer.echo(
            f"{pattern.action}\t{pattern.pattern}\t{pattern.support} corrections\t"
            f"{pattern.confidence:.0%}"
        )


@workflow_app.command("export")
def workflow_export(workflow: str, output: Path) -> None:
    """Export a workflow to JSON (or YAML for .yaml/.yml paths)."""
    wf = _lookup(workflow)
    path = asyncio.run(WorkflowTransfer(get_repository()).export_to_file(wf.id, output))
    typer.echo(f"Exported {wf.name} to {path}")


@workflow_app.command("export-all")
def workflow_export_all(directory: Path) -> None:
    """Export every workflow into a directory."""
    paths = asyncio.run(WorkflowTransfer(get_repository()).export_all(directory))
    typer.echo(f"Exported {len(paths)} workflows to {directory}")


@workflow_app.command("import")
def workflow_import(
    path: Path,
    rename: bool = typer.Option(False, "--rename", help="Rename instead of failing on a name clash"),
) -> None:
    """Import a workflow file, or every workflow file in a directory."""
    transfer = WorkflowTransfer(get_repository())
    try:
        if path.is_dir():
            imported = asyncio.run(transfer.import_all(path, rename_on_conflict=rename))
        else:
            imported = [asyncio.run(transfer.import_from_file(path, rename_on_conflict=rename))]
    except (ErrandError, OSError, ValueError) as exc:
        _fail(f"Import failed: {exc}")
    for wf in imported:
        typer.echo(f"Imported {wf.name} ({wf.id})")


@scheduler_app.command("start")
def scheduler_start(
    executor: Optional[str] = typer.Option(
        None, help="Tool executor as module:attribute (defaults to config)"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Poll schedule triggers and run due workflows unattended.

    Steps that are not yet autonomous stop their run and are reported in
    the run history.
    """
    config = load_config()
    spec = executor or config.executor
    if not spec:
        _fail("No tool executor configured; pass --executor module:attribute")

    async def _start():
        async with load_executor(spec) as tools:
            runner = WorkflowRunner(get_repository(), tools, config=config)
            scheduler = Scheduler(runner, poll_interval=config.scheduler.poll_interval)
            await scheduler.start(lifespan=lifespan)

    typer.echo("Starting scheduler")
    asyncio.run(_start())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
