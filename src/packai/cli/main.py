"""PackAI CLI - Main entry point."""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from packai.config import configure_logging, get_settings
from packai.errors import CycleError
from packai.models import Plan
from packai.orchestration.conflict_resolver import ConflictResolver
from packai.orchestration.dependency_resolver import DependencyResolver
from packai.orchestration.loader import load_outputs, load_plan

app = typer.Typer(
    name="packai",
    help="Plan inspection and output conflict analysis for multi-agent code generation",
    add_completion=False,
)
console = Console()

_STATUS_STYLES = {
    "pending": "white",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "skipped": "dim",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    """Configure logging from settings before any command runs."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )


def _load_plan_or_exit(path: Path) -> Plan:
    try:
        return load_plan(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Could not load plan:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def batches(
    plan_file: Path = typer.Argument(..., help="Path to plan YAML/JSON file"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show the parallel batches each phase would run in."""
    plan = _load_plan_or_exit(plan_file)
    resolver = DependencyResolver()

    result = []
    try:
        for phase in plan.phases:
            result.append((phase, resolver.build_batches(phase.tasks)))
    except CycleError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    if json_output:
        payload = [
            {
                "phase": phase.id,
                "batches": [
                    {
                        "index": b.index,
                        "tasks": b.task_ids,
                        "estimated_minutes": b.estimated_minutes,
                    }
                    for b in phase_batches
                ],
            }
            for phase, phase_batches in result
        ]
        print(json.dumps(payload, indent=2))
        return

    for phase, phase_batches in result:
        table = Table(title=f"{phase.label or phase.id}")
        table.add_column("Batch", style="cyan", justify="right")
        table.add_column("Tasks")
        table.add_column("Est. min", justify="right")
        for batch in phase_batches:
            table.add_row(
                str(batch.index),
                ", ".join(batch.task_ids),
                f"{batch.estimated_minutes:g}",
            )
        console.print(table)

    stats = plan.stats
    console.print(
        f"\n[bold]{stats.total_tasks}[/bold] tasks, "
        f"{stats.parallelizable_tasks} parallelizable, "
        f"~{plan.estimated_total_minutes:g} min sequential"
    )


@app.command()
def schedule(
    plan_file: Path = typer.Argument(..., help="Path to plan YAML/JSON file"),
):
    """Show which tasks are ready, blocked or unreachable right now."""
    plan = _load_plan_or_exit(plan_file)
    resolver = DependencyResolver()
    snapshot = resolver.recompute_schedule(plan.tasks)

    table = Table(title="Schedule")
    table.add_column("Task", style="cyan")
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Waiting on", style="dim")

    for task in snapshot.ready:
        table.add_row(task.id, task.agent, "[green]ready[/green]", "")
    for blocked in snapshot.blocked:
        table.add_row(
            blocked.task.id,
            blocked.task.agent,
            "[yellow]blocked[/yellow]",
            ", ".join(blocked.waiting_on),
        )
    for task in snapshot.unreachable:
        table.add_row(task.id, task.agent, "[red]unreachable[/red]", "")
    for group in (snapshot.running, snapshot.completed, snapshot.failed):
        for task in group:
            style = _STATUS_STYLES[task.status.value]
            table.add_row(
                task.id, task.agent, f"[{style}]{task.status.value}[/{style}]", ""
            )

    console.print(table)


@app.command()
def graph(
    plan_file: Path = typer.Argument(..., help="Path to plan YAML/JSON file"),
    output: Path = typer.Option(None, "--output", "-o", help="Write DOT to file"),
):
    """Render the task dependency graph as Graphviz DOT."""
    plan = _load_plan_or_exit(plan_file)
    dot = DependencyResolver().visualize_dot(plan.tasks)

    if output:
        output.write_text(dot + "\n")
        console.print(f"[green]Wrote graph to {output}[/green]")
    else:
        print(dot)


@app.command()
def conflicts(
    outputs_file: Path = typer.Argument(..., help="YAML/JSON list of agent outputs"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Detect conflicts between agent outputs and show auto-resolutions."""
    try:
        outputs = load_outputs(outputs_file)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Could not load outputs:[/red] {e}")
        raise typer.Exit(1)

    resolver = ConflictResolver()
    found = resolver.detect_conflicts(outputs)
    resolutions = {c.id: resolver.auto_resolve(c) for c in found}

    if json_output:
        payload = [
            {
                "id": c.id,
                "type": c.type.value,
                "severity": c.severity,
                "task_ids": list(c.task_ids),
                "description": c.description,
                "auto_resolution": (
                    resolutions[c.id].strategy.value if resolutions[c.id] else None
                ),
            }
            for c in found
        ]
        print(json.dumps(payload, indent=2))
        return

    if not found:
        console.print("[green]No conflicts detected[/green]")
        return

    table = Table(title=f"{len(found)} conflict(s)")
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Tasks")
    table.add_column("Description")
    table.add_column("Auto-resolution")

    severity_styles = {"high": "red", "medium": "yellow", "low": "dim"}
    for conflict in found:
        resolution = resolutions[conflict.id]
        style = severity_styles[conflict.severity]
        table.add_row(
            conflict.type.value,
            f"[{style}]{conflict.severity}[/{style}]",
            " / ".join(conflict.task_ids),
            conflict.description,
            resolution.strategy.value if resolution else "[dim]needs review[/dim]",
        )
    console.print(table)


if __name__ == "__main__":
    app()
