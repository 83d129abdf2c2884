"""
Click CLI for stackmigrate.
"""

import json
import logging
import sys
from typing import Any, Dict

import click

from .addresses import is_fully_modular
from .config import MigrationSettings
from .engine import load_engine
from .errors import MigrationError
from .events import get_status_from_events, read_events
from .lister import list_resources
from .orchestrator import plan_address_map, run_migration
from .snapshot import read_snapshot
from .state import list_runs, read_run_json, run_exists


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, output_json, verbose):
    """stackmigrate - migrate Terraform workspace state to stack state."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _json_output(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(ctx, error: Exception, exit_code: int = 1) -> None:
    if ctx.obj.get('json'):
        _json_output({'error': str(error), 'type': error.__class__.__name__})
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(exit_code)


@main.command()
@click.argument('config_dir', type=click.Path(exists=True, file_okay=False))
@click.pass_context
def resources(ctx, config_dir):
    """List the resources in a workspace state."""
    try:
        addresses = list_resources(config_dir)
        fully_modular = is_fully_modular(addresses)
    except MigrationError as e:
        _fail(ctx, e)
        return

    if ctx.obj['json']:
        _json_output({'resources': addresses, 'fully_modular': fully_modular})
        return

    click.echo("Resources in the Terraform state:")
    for address in addresses:
        click.echo(f"  {address}")
    click.echo(f"\nThe Terraform state is {'' if fully_modular else 'not '}fully modular.")


@main.command()
@click.option('--config-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='Terraform configuration directory of the workspace')
@click.option('--stack-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='Generated stack configuration directory')
@click.pass_context
def plan(ctx, config_dir, stack_dir):
    """Show the workspace to stack address map."""
    settings = MigrationSettings(config_dir=config_dir, stack_bundle_dir=stack_dir)
    try:
        mapping = plan_address_map(settings)
    except MigrationError as e:
        _fail(ctx, e)
        return

    data = {
        'fully_modular': mapping.fully_modular,
        'kind': mapping.address_map.kind.value,
        'components': sorted(mapping.components),
        'address_map': mapping.address_map.to_dict(),
    }
    if ctx.obj['json']:
        _json_output(data)
    else:
        click.echo(f"Address map ({data['kind']}):")
        for source, target in sorted(data['address_map'].items()):
            click.echo(f"  {source} -> {target}")


@main.command()
@click.option('--config-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='Terraform configuration directory of the workspace')
@click.option('--stack-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='Generated stack configuration directory')
@click.option('--state-file', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Raw Terraform state file')
@click.option('--output-dir', required=True, type=click.Path(file_okay=False),
              help='Directory for stack_state.tfstackstate')
@click.option('--engine', 'engine_ref', required=True, help="Migration engine factory, 'module:callable'")
@click.option('--timeout', type=float, help='Seconds the migration stream may take')
@click.option('--run-id', help='Optional run ID')
@click.pass_context
def migrate(ctx, config_dir, stack_dir, state_file, output_dir, engine_ref, timeout, run_id):
    """Migrate a workspace state into a stack state snapshot."""
    settings = MigrationSettings(
        config_dir=config_dir,
        stack_bundle_dir=stack_dir,
        state_file=state_file,
        output_dir=output_dir,
    )
    try:
        engine = load_engine(engine_ref)
        result = run_migration(settings, engine, run_id=run_id, timeout=timeout)
    except MigrationError as e:
        _fail(ctx, e)
        return
    except KeyboardInterrupt:
        click.echo("\nMigration cancelled by user", err=True)
        sys.exit(130)

    if ctx.obj['json']:
        _json_output({
            'run_id': result.run_id,
            'artifact': str(result.artifact_path),
            **result.snapshot.summary(),
        })
    else:
        click.echo(f"Migration completed successfully! (run {result.run_id})")
        click.echo(f"Stack state written to {result.artifact_path}")


@main.command()
@click.argument('snapshot_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def inspect(ctx, snapshot_file):
    """Show the contents of a stack state snapshot."""
    try:
        snapshot = read_snapshot(snapshot_file)
    except MigrationError as e:
        _fail(ctx, e)
        return

    summary = snapshot.summary()
    if ctx.obj['json']:
        summary['descriptions'] = {key: dict(value) for key, value in snapshot.descriptions.items()}
        _json_output(summary)
        return

    click.echo(f"Format version: {summary['format_version']}")
    click.echo(f"Raw entries ({len(summary['raw_keys'])}):")
    for key in summary['raw_keys']:
        click.echo(f"  {key} ({len(snapshot.raw[key])} bytes)")
    click.echo(f"Descriptions ({len(summary['description_keys'])}):")
    for key in summary['description_keys']:
        click.echo(f"  {key}")


@main.command()
@click.pass_context
def runs(ctx):
    """List migration runs."""
    run_ids = list_runs()
    if ctx.obj['json']:
        _json_output({'runs': [{'run_id': r, 'status': get_status_from_events(r)} for r in run_ids]})
        return

    if not run_ids:
        click.echo("No runs found")
    for run_id in run_ids:
        click.echo(f"{run_id}  {get_status_from_events(run_id)}")


@main.command()
@click.argument('run_id')
@click.pass_context
def status(ctx, run_id):
    """Show the status and journal of a run."""
    try:
        exists = run_exists(run_id)
    except ValueError as e:
        _fail(ctx, e, exit_code=2)
        return
    if not exists:
        _fail(ctx, FileNotFoundError(f"Run {run_id} not found"), exit_code=2)
        return

    run_status = get_status_from_events(run_id)
    run_data = read_run_json(run_id)
    events = read_events(run_id)
    if ctx.obj['json']:
        _json_output({'run_id': run_id, 'status': run_status, 'run': run_data, 'events': events})
        return

    color = {'done': 'green', 'failed': 'red'}.get(run_status, 'yellow')
    click.echo(f"Run: {run_id}")
    click.echo(f"Status: {click.style(run_status, fg=color)}")
    click.echo(f"Config dir: {run_data.get('config_dir')}")
    click.echo(f"Stack dir: {run_data.get('stack_bundle_dir')}")
    click.echo(f"Started: {run_data.get('created_at')}")
    for event in events:
        click.echo(f"  [{event.get('ts', '')}] {event.get('type', 'UNKNOWN')}: {json.dumps(event.get('data', {}))}")


if __name__ == '__main__':
    main()
