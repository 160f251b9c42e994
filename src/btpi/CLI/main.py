"""
Command Line Interface for BTPI-REACT.
"""
import signal
import threading
from pathlib import Path

import click

from ..errors import DeploymentError, SessionLockedError
from ..MANAGERS.secret_store import SecretStore
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.deployment_config import DeploymentConfig, DeploymentMode
from ..MODELS.report import Report, SessionStatus
from ..PARSERS.catalog_parser import CatalogParser
from ..UTILS.host_info import primary_address
from ..UTILS.logging_config import configure_logging

EXIT_CODES = {
    SessionStatus.SUCCESS: 0,
    SessionStatus.PARTIAL: 1,
    SessionStatus.FAILED: 2,
}


@click.group()
@click.option('--file', '-f', default='services.yml', help='Service catalog path')
@click.option('--root', default='.', type=click.Path(file_okay=False), help='Deployment root directory')
@click.option('--debug', is_flag=True, help='Verbose console output')
@click.pass_context
def cli(ctx, file, root, debug):
    """
    BTPI-REACT - Blue Team Portable Infrastructure deployment.

    Deploys the catalog's services in dependency order and reports what came up.
    """
    ctx.ensure_object(dict)
    ctx.obj['root'] = Path(root).resolve()
    ctx.obj['file'] = _catalog_path(file, ctx.obj['root'])
    ctx.obj['debug'] = debug
    ctx.obj.setdefault('orchestrator_factory', ServiceOrchestrator)


def _catalog_path(file: str, root: Path) -> Path:
    path = Path(file)
    if not path.is_absolute() and (root / path).exists():
        return root / path
    return path


def _load_catalog(ctx):
    try:
        return CatalogParser().parse(str(ctx.obj['file']))
    except DeploymentError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(2)


def _server_ip(root: Path, explicit):
    if explicit:
        return explicit
    stored = SecretStore(root / 'config' / '.env').get('SERVER_IP')
    return stored or primary_address()


def _orchestrator(ctx, **overrides) -> ServiceOrchestrator:
    catalog = _load_catalog(ctx)
    root = ctx.obj['root']
    fields = dict(root=root, catalog=catalog)
    fields.update(overrides)
    fields['server_ip'] = _server_ip(root, fields.get('server_ip'))
    config = DeploymentConfig(**fields)
    return ctx.obj['orchestrator_factory'](config, cancel_event=ctx.obj.get('cancel_event'))


@cli.command()
@click.option('--mode', type=click.Choice([m.value for m in DeploymentMode]), default='full',
              help='full: every service, simple: the simple preset, custom: --services')
@click.option('--services', default='', help='Comma-separated services, implies custom mode')
@click.option('--skip-checks', is_flag=True, help='Skip system requirement checks')
@click.option('--force-ports', is_flag=True, help='Stop processes occupying required ports')
@click.option('--server-ip', default=None, help='Address used in certificates and access URLs')
@click.option('--lenient-networks', is_flag=True, help='Reuse existing networks whose subnet differs')
@click.option('--services-dir', type=click.Path(file_okay=False), default=None,
              help='Directory with <service>/deploy.sh scripts')
@click.option('--no-backup', is_flag=True, help='Do not archive an existing deployment first')
@click.option('--skip-tests', is_flag=True, help='Skip the post-deployment connectivity tests')
@click.pass_context
def deploy(ctx, mode, services, skip_checks, force_ports, server_ip, lenient_networks, services_dir,
           no_backup, skip_tests):
    """Deploy services in dependency order."""
    requested = tuple(s.strip() for s in services.split(',') if s.strip())
    if requested:
        mode = DeploymentMode.CUSTOM.value

    configure_logging(ctx.obj['root'] / 'logs', ctx.obj['debug'])
    cancel_event = threading.Event()
    ctx.obj['cancel_event'] = cancel_event
    orchestrator = _orchestrator(
        ctx,
        mode=DeploymentMode(mode),
        requested_services=requested,
        skip_checks=skip_checks,
        force_ports=force_ports,
        server_ip=server_ip,
        strict_network_subnets=not lenient_networks,
        services_dir=Path(services_dir).resolve() if services_dir else None,
        backup_existing=not no_backup,
        run_tests=not skip_tests,
    )

    previous = _install_interrupt_handler(cancel_event)
    try:
        report = orchestrator.up()
    except SessionLockedError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(3)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    _print_report(report)
    ctx.exit(EXIT_CODES[report.status])


def _install_interrupt_handler(cancel_event: threading.Event):
    """
    First Ctrl+C requests cancellation, a second one interrupts immediately.
    """
    if threading.current_thread() is not threading.main_thread():
        return None

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        click.echo("\nCancelling deployment, press Ctrl+C again to abort immediately...", err=True)
        cancel_event.set()

    return signal.signal(signal.SIGINT, handler)


def _print_report(report: Report):
    click.echo("")
    click.echo("=" * 40)
    click.echo(f"  {report.project} deployment: {report.status.value.upper()}")
    click.echo("=" * 40)
    if report.fatal_error:
        click.echo(f"Aborted: {report.fatal_error}")
        if report.rolled_back:
            click.echo(f"Rolled back: {', '.join(report.rolled_back)}")
    click.echo(f"{'SERVICE':20} {'STATE':10} {'READINESS':15} DETAIL")
    click.echo("-" * 60)
    for svc in report.services:
        detail = svc.error or svc.resolved_by or ''
        click.echo(f"{svc.name:20} {svc.state:10} {svc.readiness or '-':15} {detail}")
    access = [svc for svc in report.services if svc.access_url]
    if access:
        click.echo("")
        click.echo("Access your services:")
        for svc in access:
            click.echo(f"  {svc.name:20} {svc.access_url}")
    failed_tests = {name: result for name, result in report.connectivity.items() if result != 'passed'}
    if failed_tests:
        click.echo("")
        click.echo("Connectivity tests failed:")
        for name, result in failed_tests.items():
            click.echo(f"  {name:20} {result}")
    click.echo("")
    click.echo(f"Credentials are in: {report.resources.get('secrets')}")
    if report.backup:
        click.echo(f"Previous deployment backed up to: {report.backup}")
    if 'report' in report.resources:
        click.echo(f"Full report: {report.resources['report']}")


@cli.command()
@click.option('--mode', type=click.Choice([m.value for m in DeploymentMode]), default='full')
@click.option('--services', default='', help='Comma-separated services, implies custom mode')
@click.pass_context
def plan(ctx, mode, services):
    """Print the deployment order without deploying."""
    requested = tuple(s.strip() for s in services.split(',') if s.strip())
    if requested:
        mode = DeploymentMode.CUSTOM.value
    orchestrator = _orchestrator(ctx, mode=DeploymentMode(mode), requested_services=requested,
                                 server_ip='127.0.0.1')
    try:
        order = orchestrator.plan()
    except DeploymentError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(2)
    for index, name in enumerate(order, start=1):
        descriptor = orchestrator.config.catalog.get(name)
        deps = ', '.join(descriptor.dependencies) or '-'
        click.echo(f"{index:2}. {name:20} {descriptor.role.value:15} depends on: {deps}")


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status."""
    orchestrator = _orchestrator(ctx, server_ip='127.0.0.1')
    status = orchestrator.ps()
    click.echo(f"{'SERVICE':20} {'STATUS':20}")
    click.echo("-" * 40)
    for name, state in status.items():
        click.echo(f"{name:20} {state:20}")


@cli.command()
@click.option('--mode', type=click.Choice([m.value for m in DeploymentMode]), default='full')
@click.option('--services', default='', help='Comma-separated services, implies custom mode')
@click.pass_context
def down(ctx, mode, services):
    """Stop and remove service containers in reverse dependency order."""
    requested = tuple(s.strip() for s in services.split(',') if s.strip())
    if requested:
        mode = DeploymentMode.CUSTOM.value
    configure_logging(ctx.obj['root'] / 'logs', ctx.obj['debug'])
    orchestrator = _orchestrator(ctx, mode=DeploymentMode(mode), requested_services=requested,
                                 server_ip='127.0.0.1')
    try:
        results = orchestrator.down()
    except DeploymentError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(2)
    failed = [name for name, removed in results.items() if not removed]
    if failed:
        click.echo(f"Failed to remove: {', '.join(failed)}", err=True)
        ctx.exit(1)
    click.echo("Services stopped.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
