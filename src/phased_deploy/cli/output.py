"""Rich rendering of plans and run reports."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..orchestrator.models import RunReport, RunState, StageState, VerificationStatus
from ..orchestrator.planner import DeploymentPlan

STATE_STYLES = {
    StageState.PENDING: "dim",
    StageState.APPLIED: "cyan",
    StageState.READY: "yellow",
    StageState.FUNCTIONAL: "green",
    StageState.FAILED: "red",
    StageState.ROLLED_BACK: "magenta",
}

RUN_STYLES = {
    RunState.RUNNING: "cyan",
    RunState.SUCCEEDED: "green",
    RunState.FAILED: "red",
    RunState.PARTIAL_ROLLBACK_FAILURE: "red",
}

CHECK_MARKS = {
    VerificationStatus.PASSED: "[green]✓[/green]",
    VerificationStatus.FAILED: "[red]✗[/red]",
    VerificationStatus.SKIPPED: "[dim]-[/dim]",
}


def plan_to_dict(plan: DeploymentPlan) -> dict:
    return {
        'plan': plan.names,
        'stages': [
            {
                'name': d.name,
                'depends_on': list(d.depends_on),
                'instances': d.expected_instance_count,
                'probe': d.probe.type,
                'criticality': d.criticality.value,
                'timeout': d.stage_timeout,
                'documents': len(d.configs),
            }
            for d in plan
        ],
    }


def render_plan(console: Console, plan: DeploymentPlan, target: str) -> None:
    """Print the ordered plan as a table."""
    table = Table(title=f"Deployment plan for {target}", show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Depends on")
    table.add_column("Instances", justify="right")
    table.add_column("Probe")
    table.add_column("Timeout", justify="right")
    table.add_column("Documents", justify="right")

    for idx, descriptor in enumerate(plan, 1):
        table.add_row(
            str(idx),
            descriptor.name,
            ", ".join(descriptor.depends_on) or "-",
            str(descriptor.expected_instance_count),
            descriptor.probe.type,
            f"{descriptor.stage_timeout:g}s",
            str(len(descriptor.configs)),
        )

    console.print(table)


def render_report(console: Console, report: RunReport) -> None:
    """Print a finished run report: stages, removal, verification and warnings."""
    style = RUN_STYLES[report.state]
    lines = [
        f"[bold {style}]{report.operation.capitalize()} {report.state.value}[/bold {style}]",
        "",
        f"Target: {report.target}",
        f"Run: {report.run_id}",
    ]
    if report.duration is not None:
        lines.append(f"Duration: {report.duration:.1f}s")
    if report.failed_stage:
        lines.append(f"Failed stage: [red]{report.failed_stage}[/red]")
    if report.error:
        lines.append(f"Error: {report.error['message']}")

    title = "Dry Run" if report.dry_run else report.operation.capitalize()
    console.print(Panel.fit("\n".join(lines), title=title, border_style=style))

    stages = report.stages()
    if stages:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Stage", style="cyan")
        table.add_column("State")
        table.add_column("Error")
        for name, entry in stages.items():
            state_style = STATE_STYLES[entry.state]
            table.add_row(name, f"[{state_style}]{entry.state.value}[/{state_style}]", entry.last_error or "")
        console.print(table)

    if report.validated:
        console.print(f"[green]✓[/green] Accepted by the server: {', '.join(report.validated)}")

    if report.removal is not None:
        removal = report.removal
        if removal.removed:
            console.print(f"\n[bold]Removed:[/bold] {', '.join(removal.removed)}")
        for name, resources in removal.stuck.items():
            console.print(f"  [red]✗[/red] {name}: still present: {', '.join(resources)}")
        for name, storage in removal.retained_storage.items():
            console.print(f"  [yellow]Retained storage[/yellow] {name}: {', '.join(storage)}")
        for name, storage in removal.removed_storage.items():
            console.print(f"  [red]Deleted storage[/red] {name}: {', '.join(storage)}")
        if not removal.complete:
            console.print("\n[red]Manual cleanup is required for the resources above[/red]")

    if report.verification is not None:
        console.print(f"\n[bold]Verification[/bold] (unit {report.verification.unit})")
        for check in report.verification.checks:
            message = f" [dim]{check.message}[/dim]" if check.message else ""
            console.print(f"  {CHECK_MARKS[check.status]} {check.name}{message}")

    for warning in report.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
