"""Main CLI entry point."""

import signal
import sys
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from stackpilot.config.models import EngineSettings
from stackpilot.config.parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError
from stackpilot.drivers import DriverRegistry, InMemoryDriver, register_aws_drivers
from stackpilot.orchestrator.executor import ApplyResult, RunStatus
from stackpilot.orchestrator.orchestrator import ProvisioningOrchestrator, pseudo_parameters
from stackpilot.orchestrator.planner import Plan, StepAction, StepStatus
from stackpilot.state.manager import StateStore
from stackpilot.template.loader import load_template
from stackpilot.utils.errors import EngineError
from stackpilot.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

ACTION_STYLES = {
    StepAction.CREATE: ('+', 'green'),
    StepAction.UPDATE: ('~', 'yellow'),
    StepAction.DELETE: ('-', 'red'),
    StepAction.NO_OP: (' ', 'dim'),
}

STATUS_MARKS = {
    StepStatus.SUCCEEDED: '[green]✓[/green]',
    StepStatus.FAILED: '[red]✗[/red]',
    StepStatus.SKIPPED: '[yellow]-[/yellow]',
}


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--state', 'state_path', help='Path to the state file (overrides configuration)')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), help='Log level')
@click.pass_context
def cli(ctx, config_path, state_path, profile, region, log_level):
    """stackpilot: declarative resource provisioning."""
    settings = load_settings(config_path)

    overrides: Dict[str, Any] = {}
    if state_path:
        overrides['state_path'] = state_path
    if log_level:
        overrides['log_level'] = log_level
    if profile or region:
        overrides['aws'] = settings.aws.model_copy(update={
            'profile': profile or settings.aws.profile,
            'region': region or settings.aws.region,
        })
    if overrides:
        settings = settings.model_copy(update=overrides)

    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings

    setup_logging(settings.log_level, settings.log_dir)


def load_settings(config_path: str) -> EngineSettings:
    """Load stackpilot.yaml, falling back to defaults when it doesn't exist."""
    try:
        return Config(config_path).load_or_default().settings
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def parse_variables(values: Iterable[str]) -> Dict[str, str]:
    """Parse repeated ``--var KEY=VALUE`` options."""
    variables = {}
    for item in values:
        key, sep, value = item.partition('=')
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint='--var')
        variables[key] = value
    return variables


def create_session(settings: EngineSettings) -> boto3.Session:
    """Create the boto3 session for AWS runs, exiting on configuration errors."""
    try:
        return boto3.Session(profile_name=settings.aws.profile, region_name=settings.aws.region)
    except BotoCoreError as e:
        console.print(f"[red]Error creating AWS session:[/red] {e}")
        sys.exit(1)


def create_registry(settings: EngineSettings, local: bool, types: Iterable[str] = ()) -> DriverRegistry:
    """Create the driver registry for a run.

    Args:
        settings: Engine settings (AWS region and profile)
        local: Register an in-memory driver for each of ``types`` instead of
            the AWS drivers
        types: Resource types the run touches
    """
    registry = DriverRegistry()
    if local:
        for type_tag in sorted(set(types)):
            registry.register(type_tag, InMemoryDriver(type_tag))
        return registry

    register_aws_drivers(registry, create_session(settings))
    return registry


def resolve_pseudo_parameters(settings: EngineSettings, local: bool) -> Dict[str, str]:
    """Look up the target region and account for ``AWS::*`` pseudo parameters.

    Local runs use the configured region and a placeholder account.
    """
    if local:
        return pseudo_parameters(settings.aws.region)

    session = create_session(settings)
    try:
        account_id = session.client('sts').get_caller_identity()['Account']
    except (BotoCoreError, ClientError) as e:
        console.print(f"[red]Error resolving AWS account:[/red] {e}")
        sys.exit(1)
    return pseudo_parameters(session.region_name, account_id)


def load_document(template: str, var: Tuple[str, ...]) -> Dict[str, Any]:
    try:
        return load_template(template, parse_variables(var))
    except EngineError as e:
        report_error(e)
        sys.exit(1)


def document_types(document: Dict[str, Any]) -> Iterator[str]:
    resources = document.get('resources') or {}
    declarations = resources.values() if isinstance(resources, dict) else resources
    for declaration in declarations:
        if isinstance(declaration, dict) and isinstance(declaration.get('type'), str):
            yield declaration['type']


def report_error(error: EngineError) -> None:
    console.print(f"[red]{type(error).__name__}:[/red] {error.message}")
    for cause in error.cause_chain()[1:]:
        console.print(f"   [dim]caused by {cause}[/dim]")
    for suggestion in error.suggestions:
        console.print(f"   [cyan]hint:[/cyan] {suggestion}")


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Set the yielded event on Ctrl-C instead of aborting in-flight calls."""
    cancel_event = threading.Event()

    def handler(signum, frame):
        console.print("\n[yellow]Cancelling: waiting for in-flight operations to finish...[/yellow]")
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


class RichProgressCallback:
    """Progress callback that displays updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self.progress.update(self.task_id, total=total)

    def __call__(self, resource_id: str, status: StepStatus, message: Optional[str]) -> None:
        if status == StepStatus.IN_PROGRESS:
            self.progress.update(self.task_id, description=f"[cyan]Applying:[/cyan] {resource_id}")
            return
        if not status.finished:
            return

        self.completed += 1
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"{STATUS_MARKS[status]} {resource_id}"
        )


def print_plan(plan: Plan) -> None:
    """Render a plan as a table with a summary line."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=1)
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("Reason", style="dim")

    for step in plan.steps:
        mark, style = ACTION_STYLES[step.action]
        table.add_row(
            f"[{style}]{mark}[/{style}]",
            step.identifier,
            step.type,
            f"[{style}]{step.action.value}[/{style}]",
            step.reason or ''
        )

    if plan.steps:
        console.print(table)

    summary = plan.get_summary()
    console.print(
        f"\nPlan: [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[red]{summary['delete']} to delete[/red], "
        f"{summary['no-op']} unchanged."
    )


def print_result(result: ApplyResult) -> None:
    """Render an apply result and exit non-zero unless every step succeeded."""
    summary = result.get_summary()
    body = (
        f"Succeeded: {summary['succeeded']}\n"
        f"Failed: {summary['failed']}\n"
        f"Skipped: {summary['skipped']}\n"
        f"Duration: {result.duration:.2f}s"
    )

    if result.status == RunStatus.SUCCEEDED:
        console.print(Panel.fit(f"[green]✓ Apply complete[/green]\n\n{body}", title="Apply", border_style="green"))
    elif result.status == RunStatus.CANCELLED:
        console.print(Panel.fit(f"[yellow]Apply cancelled[/yellow]\n\n{body}", title="Apply", border_style="yellow"))
    elif result.status == RunStatus.PARTIAL_FAILURE:
        console.print(Panel.fit(
            f"[yellow]⚠ Apply partially successful[/yellow]\n\n{body}", title="Apply", border_style="yellow"
        ))
    else:
        console.print(Panel.fit(f"[red]✗ Apply failed[/red]\n\n{body}", title="Apply", border_style="red"))

    failed = result.get_failed_resource_ids()
    if failed:
        console.print("\n[bold]Failed Resources:[/bold]")
        for identifier in failed:
            step = result.steps[identifier]
            console.print(f"  [red]✗[/red] {identifier} ({step.action.value}): {step.error}")

    skipped = result.get_skipped_resource_ids()
    if skipped:
        console.print(f"\n[bold]Skipped:[/bold] {', '.join(skipped)}")

    if result.outputs:
        table = Table(show_header=True, header_style="bold", title="Outputs")
        table.add_column("Output Name", style="cyan")
        table.add_column("Value")
        for name, value in result.outputs.items():
            table.add_row(name, str(value))
        console.print(table)

    if result.status != RunStatus.SUCCEEDED:
        sys.exit(1)


def run_apply(orchestrator: ProvisioningOrchestrator, plan: Plan) -> ApplyResult:
    with cancel_on_interrupt() as cancel_event, Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task("[cyan]Starting apply...", total=None)
        callback = RichProgressCallback(progress, task_id, total=len(plan))
        return orchestrator.apply(plan, cancel_event=cancel_event, progress_callback=callback)


def template_options(func):
    """Options shared by commands that read a template."""
    func = click.option('--local', is_flag=True, help='Use in-memory drivers instead of AWS')(func)
    func = click.option('--var', multiple=True, help='Variable override (format: KEY=VALUE)')(func)
    func = click.argument('template', type=click.Path(exists=True, dir_okay=False))(func)
    return func


@cli.command()
@template_options
@click.pass_context
def validate(ctx, template, var, local):
    """Validate a template without touching state or providers."""
    settings = ctx.obj['settings']
    document = load_document(template, var)
    registry = create_registry(settings, local, document_types(document))
    orchestrator = ProvisioningOrchestrator(registry, StateStore(), settings)

    try:
        graph = orchestrator.build_graph(document)
        order = orchestrator.compiler.topological_order(graph)
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Depends On", style="dim")
    for index in order:
        node = graph.nodes[index]
        table.add_row(node.identifier, node.type, ', '.join(graph.get_dependencies(node.identifier)))
    console.print(table)
    console.print(f"[green]✓ Template is valid:[/green] {len(graph)} resources")


@cli.command()
@template_options
@click.option('--refresh/--no-refresh', default=None, help='Read recorded resources from providers first')
@click.option('--json-output', is_flag=True, help='Output the plan in JSON format')
@click.pass_context
def plan(ctx, template, var, local, refresh, json_output):
    """Show what an apply would change."""
    settings = ctx.obj['settings']
    document = load_document(template, var)

    try:
        with StateStore(settings.state_path) as state_store:
            types = set(document_types(document)) | {r.type for r in state_store.snapshot().values()}
            registry = create_registry(settings, local, types)
            orchestrator = ProvisioningOrchestrator(
                registry, state_store, settings, resolve_pseudo_parameters(settings, local)
            )
            result = orchestrator.plan(document, refresh=False if local else refresh)
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    if json_output:
        console.print_json(data={
            'summary': result.get_summary(),
            'steps': [
                {
                    'id': step.identifier,
                    'type': step.type,
                    'action': step.action.value,
                    'depends_on': step.depends_on,
                    'changed': step.changed_keys,
                }
                for step in result.steps
            ],
        })
        return

    print_plan(result)


@cli.command()
@template_options
@click.option('--auto-approve', is_flag=True, help='Skip confirmation prompt')
@click.option('--refresh/--no-refresh', default=None, help='Read recorded resources from providers first')
@click.pass_context
def apply(ctx, template, var, local, auto_approve, refresh):
    """Create, update and delete resources to match a template."""
    settings = ctx.obj['settings']
    document = load_document(template, var)

    try:
        with StateStore(settings.state_path) as state_store:
            types = set(document_types(document)) | {r.type for r in state_store.snapshot().values()}
            registry = create_registry(settings, local, types)
            orchestrator = ProvisioningOrchestrator(
                registry, state_store, settings, resolve_pseudo_parameters(settings, local)
            )
            plan = orchestrator.plan(document, refresh=False if local else refresh)
            print_plan(plan)

            if plan.has_changes() and not auto_approve:
                if not click.confirm("Apply these changes?", default=False):
                    console.print("[yellow]Apply cancelled[/yellow]")
                    return

            result = run_apply(orchestrator, plan)
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    print_result(result)


@cli.command()
@click.option('--local', is_flag=True, help='Use in-memory drivers instead of AWS')
@click.option('--auto-approve', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, local, auto_approve):
    """Delete every recorded resource, dependents first."""
    settings = ctx.obj['settings']

    try:
        with StateStore(settings.state_path) as state_store:
            records = state_store.snapshot()
            if not records:
                console.print("[yellow]No resources recorded in state[/yellow]")
                return

            registry = create_registry(settings, local, {r.type for r in records.values()})
            orchestrator = ProvisioningOrchestrator(registry, state_store, settings)
            plan = orchestrator.plan_destroy(refresh=False)

            console.print(Panel.fit(
                f"[bold red]⚠ WARNING: This will delete {len(plan)} resources[/bold red]",
                title="Destruction Plan",
                border_style="red"
            ))
            print_plan(plan)

            if not auto_approve:
                if not click.confirm("Are you sure you want to destroy these resources?", default=False):
                    console.print("[yellow]Destruction cancelled[/yellow]")
                    return

            result = run_apply(orchestrator, plan)
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    print_result(result)


@cli.group()
def state():
    """Inspect recorded state."""
    pass


@state.command('list')
@click.pass_context
def state_list(ctx):
    """List recorded resources."""
    settings = ctx.obj['settings']
    try:
        state_store = StateStore(settings.state_path).load()
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    records = state_store.snapshot()
    if not records:
        console.print("[dim]No resources recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("External ID")
    table.add_column("Status")
    table.add_column("Last Applied", style="dim")
    for identifier, record in records.items():
        table.add_row(
            identifier,
            record.type,
            record.external_id,
            record.last_status,
            record.last_applied_at.strftime('%Y-%m-%d %H:%M:%S')
        )
    console.print(table)

    pending = state_store.pending_operations()
    if pending:
        console.print(
            f"\n[yellow]{len(pending)} interrupted operation(s) will be reconciled on the next plan:[/yellow] "
            f"{', '.join(pending)}"
        )


@state.command('show')
@click.argument('resource_id')
@click.pass_context
def state_show(ctx, resource_id):
    """Show the recorded state of one resource."""
    settings = ctx.obj['settings']
    try:
        state_store = StateStore(settings.state_path).load()
    except EngineError as e:
        report_error(e)
        sys.exit(1)

    record = state_store.get(resource_id)
    if record is None:
        console.print(f"[red]Resource '{resource_id}' not found in state[/red]")
        sys.exit(1)

    console.print_json(data=record.model_dump(mode='json'))


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
