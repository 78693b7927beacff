"""Render plans, validation results, run state and checkpoints with rich."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .constants import RUBRIC_CATEGORIES, RUBRIC_MAX_CATEGORY_SCORE
from .models import Checkpoint, ExecutionState, Plan, TaskStatus, ValidationResult

_STATUS_STYLE = {
    TaskStatus.PENDING: "white",
    TaskStatus.RUNNING: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.RETRYING: "magenta",
    TaskStatus.ESCALATED: "bold red",
}


def _recording_console() -> Console:
    return Console(record=True, width=100)


def render_plan(plan: Plan) -> str:
    """Render the parallel groups and critical path of *plan*."""
    console = _recording_console()
    console.print(f"\n[bold]Plan {plan.id}[/bold]")
    console.print(f"Tasks: {len(plan.tasks)}")
    console.print(f"Parallel groups: {len(plan.parallel_groups)}")
    console.print(f"Complexity: {plan.complexity_score:g} ({plan.complexity_tier.value})")
    console.print()

    for idx, group in enumerate(plan.parallel_groups):
        console.print(f"[bold cyan]Group {idx}:[/bold cyan] ({len(group)} task(s) in parallel)")
        for task_id in group:
            task = plan.tasks[task_id]
            label = f"  • {task_id} [dim]<{task.executor_ref.value}, {task.duration_estimate:g}m>[/dim]"
            if task.dependencies:
                label += f" [dim](depends on: {', '.join(task.dependencies)})[/dim]"
            console.print(label)
            if task.description:
                console.print(f"    {task.description[:80]}")
        console.print()

    if plan.critical_path:
        total = sum(plan.tasks[task_id].duration_estimate for task_id in plan.critical_path)
        console.print(f"[bold]Critical path[/bold] ({total:g}m): {' -> '.join(plan.critical_path)}")
    return console.export_text()


def render_dependency_tree(plan: Plan) -> str:
    """Render *plan* as a tree rooted at its source tasks."""
    console = _recording_console()
    dependents = plan.dependents()
    tree = Tree(f"[bold]Task Dependency Tree: {plan.id}[/bold]")

    def add_dependents(parent: Tree, task_id: str, visited: set[str]) -> None:
        for child in sorted(dependents.get(task_id, [])):
            if child in visited:
                parent.add(f"[dim]{child} (see above)[/dim]")
                continue
            visited.add(child)
            add_dependents(parent.add(child), child, visited)

    visited: set[str] = set()
    for task_id in plan.parallel_groups[0] if plan.parallel_groups else ():
        visited.add(task_id)
        add_dependents(tree.add(f"[green]{task_id}[/green]"), task_id, visited)
    console.print(tree)
    return console.export_text()


def render_validation(result: ValidationResult, plan_id: Optional[str] = None) -> str:
    console = _recording_console()
    title = f"Validation: {plan_id}" if plan_id else "Validation"
    if result.skipped:
        console.print(f"[bold]{title}[/bold]: skipped ({result.tier.value} tier)")
        return console.export_text()

    table = Table(title=title, show_header=True)
    table.add_column("Category", style="cyan")
    table.add_column("Score", justify="right")
    for name in RUBRIC_CATEGORIES:
        table.add_row(name, f"{result.scores.get(name, 0)}/{RUBRIC_MAX_CATEGORY_SCORE}")
    verdict = "[green]passed[/green]" if result.passed else "[red]below threshold[/red]"
    table.add_row("[bold]overall[/bold]", f"[bold]{result.overall_score}[/bold] (threshold {result.threshold})")
    console.print(table)
    console.print(f"Tier: {result.tier.value}  Iteration: {result.iteration}  Result: {verdict}")
    for issue in result.issues:
        console.print(f"  [yellow]-[/yellow] {issue}")
    return console.export_text()


def render_state(state: ExecutionState, plan: Optional[Plan] = None) -> str:
    """Render per-task status for a run."""
    console = _recording_console()
    table = Table(title=f"Run {state.plan_id}", show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Checkpoint", justify="right")
    table.add_column("Last error")

    order = [tid for group in plan.parallel_groups for tid in group] if plan else list(state.records)
    for task_id in order:
        record = state.records.get(task_id)
        if record is None:
            continue
        style = _STATUS_STYLE.get(record.status, "white")
        table.add_row(
            task_id,
            f"[{style}]{record.status.value}[/{style}]",
            str(record.attempts),
            str(record.retry_count),
            "" if record.checkpoint_index is None else str(record.checkpoint_index),
            (record.last_error or "")[:60],
        )
    console.print(table)
    counts = ", ".join(f"{name}={count}" for name, count in state.counts().items() if count)
    console.print(
        f"Run: {state.run_status.value}  Overall: {state.overall_status.value}  "
        f"Checkpoint: {state.checkpoint_index}  ({counts})"
    )
    if state.escalations:
        console.print(f"[bold red]Escalations: {len(state.escalations)}[/bold red]")
        for item in state.escalations:
            console.print(f"  - {item.get('task_id') or 'plan'}: {item.get('message')}")
    return console.export_text()


def render_checkpoint(checkpoint: Checkpoint) -> str:
    console = _recording_console()
    summary = checkpoint.summary
    state = "open"
    if checkpoint.applied:
        state = f"applied ({checkpoint.decision.value if checkpoint.decision else '-'})"
    elif checkpoint.closed:
        state = "awaiting decision"
    console.print(
        f"[bold]Checkpoint {checkpoint.index}[/bold] \\[{state}]"
        f"{' (forced)' if checkpoint.forced else ''}"
    )
    console.print(f"Completed: {', '.join(checkpoint.task_ids) or '-'}")
    if summary is None:
        return console.export_text()

    table = Table(show_header=True)
    table.add_column("Change")
    table.add_column("Files")
    table.add_row("[green]created[/green]", "\n".join(summary.files_created) or "-")
    table.add_row("[yellow]modified[/yellow]", "\n".join(summary.files_modified) or "-")
    table.add_row("[red]deleted[/red]", "\n".join(summary.files_deleted) or "-")
    console.print(table)
    tests = summary.tests
    console.print(f"Tests: {tests.passed} passed, {tests.failed} failed, {tests.skipped} skipped")
    for failure in summary.failures:
        console.print(
            f"  [red]✗[/red] {failure.get('task_id')} attempt {failure.get('attempt')}: {failure.get('error')}"
        )
    return console.export_text()
