import json
import logging

import click
from tabulate import tabulate

from .config import load_settings
from .descriptors import Operation, ServiceType
from .discovery import ServiceDiscovery
from .errors import CriticalStepFailure, LifecycleError, RunCancelledError
from .lifecycle import RunOutcome, StepStatus
from .orchestrator import LifecycleOrchestrator
from .registry import ServiceRegistry, ServiceStatus
from .runtime import DockerRuntime

STEP_ICONS = {
    StepStatus.SUCCEEDED: '✅',
    StepStatus.FAILED_NON_CRITICAL: '⚠️ ',
    StepStatus.FAILED_CRITICAL: '❌',
    StepStatus.SKIPPED: '⏭️ ',
    StepStatus.PENDING: '⏳',
}

STATUS_ICONS = {
    ServiceStatus.RUNNING.value: '🟢',
    ServiceStatus.STOPPED.value: '⚪',
    ServiceStatus.INSTALLING.value: '🔧',
    ServiceStatus.REMOVING.value: '🧹',
    ServiceStatus.FAILED.value: '🔴',
    ServiceStatus.ABSENT.value: '➖',
}

SERVICE_TYPES = [t.value for t in ServiceType]
OPERATIONS = [o.value for o in Operation]


def _engine(ctx) -> dict:
    """Build settings, registry, runtime and orchestrator on first use"""
    obj = ctx.ensure_object(dict)
    if 'orchestrator' not in obj:
        settings = load_settings(obj.get('config_path'))
        registry = ServiceRegistry(settings.registry_file)
        runtime = DockerRuntime(settings)
        obj.update({
            'settings': settings,
            'registry': registry,
            'runtime': runtime,
            'orchestrator': LifecycleOrchestrator(registry, runtime, settings),
        })
    return obj


def _orchestrator(ctx) -> LifecycleOrchestrator:
    orchestrator = _engine(ctx)['orchestrator']
    orchestrator.on_step = _echo_step
    return orchestrator


def _echo_step(run, record):
    icon = STEP_ICONS.get(record.status, '•')
    line = f"   {icon} {record.name}"
    if record.error:
        line += f": {record.error}"
    click.echo(line)


def _report(run):
    """Print the completion report of a run"""
    outcome = run.outcome
    if outcome == RunOutcome.SUCCEEDED:
        click.echo(f"🎉 {run.operation} {run.instance}: done")
    elif outcome == RunOutcome.COMPLETED_WITH_WARNINGS:
        click.echo(f"⚠️  {run.operation} {run.instance}: completed with warnings")
    elif outcome == RunOutcome.NOT_FOUND:
        click.echo(f"ℹ️  {run.instance} is not installed, nothing to do")
    elif outcome == RunOutcome.DECLINED:
        click.echo('🚫 Cancelled, nothing was changed')
    else:
        click.echo(f"❌ {run.operation} {run.instance}: {outcome.value}")
        if run.error:
            click.echo(f"   Cause: {run.error}")

    for warning in run.warnings:
        click.echo(f"   ⚠️  {warning}")
    if run.rollback:
        click.echo('   ↩️  Rollback:')
        for note in run.rollback:
            click.echo(f"      • {note}")


def _run_operation(ctx, operation, *args, **kwargs):
    try:
        run = operation(*args, **kwargs)
    except (CriticalStepFailure, RunCancelledError) as e:
        run = getattr(e, 'run', None)
        if run is not None:
            _report(run)
        else:
            click.echo(f"❌ {e}")
        click.echo("💡 Check 'status' for details, then retry or remove the service")
        ctx.exit(1)
    except LifecycleError as e:
        click.echo(f"❌ {e}")
        ctx.exit(1)
    _report(run)
    return run


def _parse_params(pairs):
    params = {}
    for pair in pairs:
        if '=' not in pair:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint='-p/--param')
        key, _, value = pair.partition('=')
        params[key.strip()] = value.strip()
    return params


@click.group()
@click.option('--config', '-c', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Path to config.yaml (default: ./config.yaml, $ETH_SERVICES_HOME, ~/.eth-services)')
@click.option('--verbose', '-v', count=True, help='Show engine logs (-vv for debug output)')
@click.pass_context
def cli(ctx, config_path, verbose):
    """🚀 Ethereum service lifecycle manager"""
    level = logging.WARNING if not verbose else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s')
    obj = ctx.ensure_object(dict)
    obj.setdefault('config_path', config_path)


@cli.command()
@click.argument('service_type', type=click.Choice(SERVICE_TYPES))
@click.argument('name')
@click.option('--param', '-p', 'params', multiple=True, help='Install parameter as key=value (repeatable)')
@click.option('--beacon-node', 'beacon_nodes', multiple=True, help='Ethnode a validator should use (repeatable)')
@click.option('--signer', default=None, help='Signer service a validator should use')
@click.pass_context
def install(ctx, service_type, name, params, beacon_nodes, signer):
    """📦 Install a new service"""
    install_params = _parse_params(params)
    if beacon_nodes:
        install_params['beacon_nodes'] = list(beacon_nodes)
    if signer:
        install_params['signer'] = signer
    click.echo(f"📦 Installing {service_type} service {name}...")
    _run_operation(ctx, _orchestrator(ctx).install, service_type, name, install_params)


@cli.command()
@click.argument('name')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def remove(ctx, name, yes):
    """🗑️  Remove a service and everything it owns"""

    def confirm(plan):
        _echo_plan(plan)
        return click.confirm(f"\nRemove {name}?", default=False)

    _run_operation(ctx, _orchestrator(ctx).remove, name, interactive=not yes, confirm=confirm)


@cli.command()
@click.argument('name')
@click.pass_context
def start(ctx, name):
    """▶️  Start a stopped service"""
    click.echo(f"▶️  Starting {name}...")
    _run_operation(ctx, _orchestrator(ctx).start, name)


@cli.command()
@click.argument('name')
@click.pass_context
def stop(ctx, name):
    """⏹️  Stop a running service"""
    click.echo(f"⏹️  Stopping {name}...")
    _run_operation(ctx, _orchestrator(ctx).stop, name)


@cli.command()
@click.argument('name')
@click.pass_context
def update(ctx, name):
    """⬆️  Pull new images and recreate a service"""
    click.echo(f"⬆️  Updating {name}...")
    _run_operation(ctx, _orchestrator(ctx).update, name)


def _echo_plan(plan):
    click.echo(f"\n📋 {plan.operation} {plan.instance} ({plan.service_type}, currently {plan.current_status})")
    if not plan.allowed:
        click.echo(f"🚫 Not possible: {plan.reason}")
        return
    if plan.reason:
        click.echo(f"ℹ️  {plan.reason}")

    rows = [[i, s.name, 'critical' if s.critical else 'non-critical', s.description]
            for i, s in enumerate(plan.steps, 1)]
    click.echo(tabulate(rows, headers=['#', 'Step', 'Failure policy', 'Action'], tablefmt='fancy_grid'))

    resources = [[r.kind.value, r.label, 'shared' if r.shared else 'owned',
                  ', '.join(sorted(r.shared_with_instances)) or '-']
                 for r in plan.resources.resources]
    if resources:
        click.echo(tabulate(resources, headers=['Kind', 'Identifier', 'Ownership', 'Also used by'],
                            tablefmt='fancy_grid'))
    if plan.dependents:
        click.echo(f"🔗 Dependents to update: {', '.join(plan.dependents)}")
    if plan.shared_retained:
        click.echo(f"🔒 Shared resources kept: {', '.join(plan.shared_retained)}")
    if plan.shared_released:
        click.echo(f"🧹 Shared resources released: {', '.join(plan.shared_released)}")


@cli.command()
@click.argument('name')
@click.argument('operation', type=click.Choice(OPERATIONS))
@click.option('--type', 'service_type', type=click.Choice(SERVICE_TYPES), default=None,
              help='Service type (needed to plan an install)')
@click.pass_context
def plan(ctx, name, operation, service_type):
    """📋 Preview an operation without executing it"""
    try:
        result = _orchestrator(ctx).plan(name, operation, service_type=service_type)
    except LifecycleError as e:
        click.echo(f"❌ {e}")
        ctx.exit(1)
    _echo_plan(result)


@cli.command()
@click.argument('name')
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@click.pass_context
def status(ctx, name, as_json):
    """🔍 Show status, resources and last run of a service"""
    try:
        info = _orchestrator(ctx).status(name)
    except LifecycleError as e:
        click.echo(f"❌ {e}")
        ctx.exit(1)

    if as_json:
        click.echo(json.dumps(info, indent=2, default=str))
        return

    icon = STATUS_ICONS.get(info['status'], '•')
    click.echo(f"{icon} {name}: {info['status']}")
    if info['status'] == ServiceStatus.ABSENT.value:
        return
    click.echo(f"   Type: {info['type']}")
    if info.get('in_flight'):
        click.echo(f"   In progress: {info['in_flight']}")
    if info.get('last_error'):
        click.echo(f"   Last error: {info['last_error']}")
    if info['dependencies']:
        click.echo(f"   Depends on: {', '.join(info['dependencies'])}")
    if info['dependents']:
        click.echo(f"   Used by: {', '.join(info['dependents'])}")
    rows = [[r['kind'], r['identifier'], 'shared' if r['shared'] else 'owned', ', '.join(r['shared_with']) or '-']
            for r in info['resources']]
    click.echo(tabulate(rows, headers=['Kind', 'Identifier', 'Ownership', 'Also used by'], tablefmt='fancy_grid'))
    last_run = info.get('last_run')
    if last_run:
        click.echo(f"   Last run: {last_run['operation']} -> {last_run['outcome']}")
        if last_run.get('failed_step'):
            click.echo(f"   Failed step: {last_run['failed_step']}")


@cli.command(name='list')
@click.option('--type', 'service_type', type=click.Choice(SERVICE_TYPES), default=None, help='Only this service type')
@click.pass_context
def list_services(ctx, service_type):
    """📜 List installed services"""
    instances = _orchestrator(ctx).list(service_type)
    if not instances:
        click.echo('ℹ️  No services installed')
        return
    rows = [[f"{STATUS_ICONS.get(i.status.value, '')} {i.status.value}", i.name, i.type.value,
             ', '.join(i.dependencies) or '-', i.updated_at.strftime('%Y-%m-%d %H:%M')]
            for i in instances]
    click.echo(tabulate(rows, headers=['Status', 'Name', 'Type', 'Depends on', 'Updated'], tablefmt='fancy_grid'))
    click.echo(f"\n📈 Total services: {len(instances)}")


@cli.command()
@click.pass_context
def verify(ctx):
    """🩺 Check the registry against running containers"""
    try:
        findings = _orchestrator(ctx).verify()
    except LifecycleError as e:
        click.echo(f"❌ {e}")
        ctx.exit(1)
    if not findings:
        click.echo('✅ Registry and runtime agree')
        return
    rows = [[f['name'], f['status'], f['problem']] for f in findings]
    click.echo(tabulate(rows, headers=['Service', 'Status', 'Problem'], tablefmt='fancy_grid'))
    ctx.exit(1)


@cli.command()
@click.option('--dry-run', is_flag=True, help='Only report what would be adopted')
@click.pass_context
def discover(ctx, dry_run):
    """🔍 Adopt service directories created by earlier tooling"""
    engine = _engine(ctx)
    discovery = ServiceDiscovery(engine['registry'], engine['runtime'], engine['settings'])
    try:
        found = discovery.discover(adopt=not dry_run)
    except (LifecycleError, OSError) as e:
        click.echo(f"❌ Discovery failed: {e}")
        ctx.exit(1)
    if not found:
        click.echo('ℹ️  No service directories found')
        return
    rows = []
    for service in found:
        if service.adopted:
            result = '✅ adopted'
        elif service.reason:
            result = f"➖ {service.reason}"
        else:
            result = '🔍 would adopt'
        rows.append([service.name, service.service_type.value if service.service_type else '?',
                     service.status.value, result])
    click.echo(tabulate(rows, headers=['Directory', 'Type', 'Status', 'Result'], tablefmt='fancy_grid'))
