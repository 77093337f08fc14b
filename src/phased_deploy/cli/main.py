"""Main CLI entry point."""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel

from phased_deploy.cli.output import plan_to_dict, render_plan, render_report
from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.cluster.kubernetes import KubernetesCluster
from phased_deploy.config.models import TargetConfig, parse_duration
from phased_deploy.config.parser import Config, ConfigValidationError
from phased_deploy.orchestrator.models import RunReport, RunState
from phased_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from phased_deploy.orchestrator.planner import DeploymentPlanner
from phased_deploy.state.lease import ClusterRunLease, FileRunLease, RunLease
from phased_deploy.state.store import ReportStore
from phased_deploy.utils.cancellation import CancellationToken, install_signal_handlers
from phased_deploy.utils.errors import ConfigurationError, DeploymentError, LeaseHeldError, PlanError
from phased_deploy.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_PARTIAL_ROLLBACK = 2
EXIT_PLAN_ERROR = 3
EXIT_LOCK_HELD = 4
EXIT_VERIFY_FAILED = 5
EXIT_USAGE = 6


class PhasedGroup(click.Group):
    """Command group whose usage errors exit with EXIT_USAGE.

    Click's own usage exit code would collide with EXIT_PARTIAL_ROLLBACK.
    """

    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as e:
            e.exit_code = EXIT_USAGE
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = EXIT_USAGE
            raise


@click.group(cls=PhasedGroup)
@click.option('--config', 'config_path', default='deploy.yaml', show_default=True,
              help='Path to the project file')
@click.option('--target', help='Target name from the project file')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, target, log_level):
    """Phased, dependency-ordered deployments to Kubernetes."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['target'] = target
    ctx.obj['log_level'] = log_level


def load_config(ctx) -> Config:
    """Load the project file and configure logging under its state directory."""
    cfg = Config(ctx.obj['config_path']).load()
    state_dir = cfg.resolve_path(cfg.lease.state_dir)
    setup_logging(ctx.obj['log_level'], log_dir=str(state_dir / "logs"))
    return cfg


def create_cluster(target: TargetConfig) -> ClusterHandle:
    """Cluster handle for a target."""
    return KubernetesCluster(namespace=target.namespace, context=target.context, kubeconfig=target.kubeconfig)


def create_lease(cfg: Config, target: TargetConfig, cluster: ClusterHandle) -> RunLease:
    if cfg.lease.backend == "kubernetes":
        return ClusterRunLease(
            target.identity,
            api_client=cluster.api_client,
            namespace=target.namespace,
            duration=cfg.lease.duration
        )
    return FileRunLease(target.identity, state_dir=str(cfg.resolve_path(cfg.lease.state_dir)))


def create_orchestrator(cfg: Config, target: TargetConfig) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies."""
    cluster = create_cluster(target)
    return DeploymentOrchestrator(
        cluster=cluster,
        lease=create_lease(cfg, target, cluster),
        target=target.identity,
        backoff=cfg.backoff_policy(),
        removal_timeout=cfg.polling.removal_timeout,
        verification=cfg.verification,
        store=ReportStore(str(cfg.resolve_path(cfg.lease.state_dir)))
    )


def exit_code_for(error: Exception) -> int:
    """Map an exception escaping a command to a process exit code."""
    if isinstance(error, PlanError):
        return EXIT_PLAN_ERROR
    if isinstance(error, LeaseHeldError):
        return EXIT_LOCK_HELD
    if isinstance(error, (ConfigurationError, FileNotFoundError)):
        return EXIT_USAGE
    return EXIT_FAILED


def fail(error: Exception) -> None:
    """Render an error and exit with its code."""
    if isinstance(error, ConfigValidationError):
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(error), markup=False)
    elif isinstance(error, DeploymentError):
        console.print(error.to_user_message(), style="red", markup=False)
    elif isinstance(error, FileNotFoundError):
        console.print(f"[red]Error:[/red] {error}")
    else:
        logger.exception("Unexpected error")
        console.print(f"[red]Unexpected error:[/red] {error}")
    sys.exit(exit_code_for(error))


def emit_report(report: RunReport, as_json: bool, report_path: Optional[str]) -> None:
    if report_path:
        path = Path(report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(report.to_json())
    if as_json:
        click.echo(report.to_json())
    else:
        render_report(console, report)


def _timeout_option(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def _cancellation() -> CancellationToken:
    token = CancellationToken()
    install_signal_handlers(token)
    return token


@cli.command()
@click.option('--plan-only', is_flag=True, help='Print the plan and touch nothing')
@click.option('--dry-run', is_flag=True, help='Server-side validation only; no lock, no probing')
@click.option('--timeout-per-stage', callback=_timeout_option, help='Override every stage timeout (90s, 5m, 1h30m)')
@click.option('--json', 'as_json', is_flag=True, help='Print the run report as JSON')
@click.option('--report', 'report_path', type=click.Path(dir_okay=False), help='Also write the run report to a file')
@click.pass_context
def deploy(ctx, plan_only, dry_run, timeout_per_stage, as_json, report_path):
    """Deploy every stage in dependency order."""
    try:
        cfg = load_config(ctx)
        target = cfg.get_target(ctx.obj['target'])
        descriptors = cfg.build_descriptors()

        if plan_only:
            plan = DeploymentPlanner().create_deployment_plan(descriptors, timeout_override=timeout_per_stage)
            if as_json:
                click.echo(json.dumps(plan_to_dict(plan), indent=2))
            else:
                render_plan(console, plan, target.identity)
            return

        if not as_json:
            console.print(Panel.fit(
                f"[bold]{'Validating' if dry_run else 'Deploying'} {cfg.project.name}[/bold]\n"
                f"Target: {target.identity}\n"
                f"Stages: {len(descriptors)}\n"
                f"Timeout override: {f'{timeout_per_stage:g}s' if timeout_per_stage else 'none'}",
                title="Deployment Configuration",
                border_style="cyan"
            ))

        orchestrator = create_orchestrator(cfg, target)
        report = orchestrator.deploy(
            descriptors,
            dry_run=dry_run,
            timeout_override=timeout_per_stage,
            cancel=_cancellation()
        )
    except Exception as e:
        fail(e)

    emit_report(report, as_json, report_path)
    sys.exit(report.exit_code)


@cli.command()
@click.option('--to', 'stage', required=True, help='Last stage to keep; every later stage is removed')
@click.option('--json', 'as_json', is_flag=True, help='Print the run report as JSON')
@click.option('--report', 'report_path', type=click.Path(dir_okay=False), help='Also write the run report to a file')
@click.pass_context
def rollback(ctx, stage, as_json, report_path):
    """Remove every stage planned after --to, in reverse order."""
    try:
        cfg = load_config(ctx)
        target = cfg.get_target(ctx.obj['target'])
        orchestrator = create_orchestrator(cfg, target)
        report = orchestrator.rollback_to(cfg.build_descriptors(), stage)
    except Exception as e:
        fail(e)

    emit_report(report, as_json, report_path)
    sys.exit(report.exit_code)


@cli.command()
@click.option('--include-data', is_flag=True, help='Also delete persistent storage (irreversible)')
@click.option('--confirm-data-loss', is_flag=True, help='Confirm --include-data without prompting')
@click.option('--json', 'as_json', is_flag=True, help='Print the run report as JSON')
@click.option('--report', 'report_path', type=click.Path(dir_okay=False), help='Also write the run report to a file')
@click.pass_context
def teardown(ctx, include_data, confirm_data_loss, as_json, report_path):
    """Remove every stage in reverse dependency order."""
    try:
        cfg = load_config(ctx)
        target = cfg.get_target(ctx.obj['target'])

        confirmed = confirm_data_loss
        if include_data and not confirmed:
            if not sys.stdin.isatty():
                raise ConfigurationError(
                    "--include-data deletes persistent storage and needs confirmation",
                    suggestions=["Pass --confirm-data-loss, or run interactively to confirm"]
                )
            console.print(Panel.fit(
                f"[bold red]⚠ WARNING: persistent storage in {target.identity} will be deleted[/bold red]\n\n"
                "This cannot be undone.",
                title="Data Loss",
                border_style="red"
            ))
            confirmed = click.confirm("Delete all persistent data?", default=False)
            if not confirmed:
                console.print("[yellow]Teardown cancelled[/yellow]")
                sys.exit(EXIT_USAGE)

        orchestrator = create_orchestrator(cfg, target)
        report = orchestrator.teardown(cfg.build_descriptors(), include_storage=include_data, confirmed=confirmed)
    except Exception as e:
        fail(e)

    emit_report(report, as_json, report_path)
    sys.exit(report.exit_code)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the run report as JSON')
@click.option('--report', 'report_path', type=click.Path(dir_okay=False), help='Also write the run report to a file')
@click.pass_context
def verify(ctx, as_json, report_path):
    """Check every stage is functional, then run the smoke checks."""
    try:
        cfg = load_config(ctx)
        target = cfg.get_target(ctx.obj['target'])
        orchestrator = create_orchestrator(cfg, target)
        report = orchestrator.verify(cfg.build_descriptors())
    except Exception as e:
        fail(e)

    emit_report(report, as_json, report_path)
    sys.exit(EXIT_SUCCESS if report.state is RunState.SUCCEEDED else EXIT_VERIFY_FAILED)


if __name__ == '__main__':
    cli()
