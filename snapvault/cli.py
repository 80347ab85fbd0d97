"""
Command line entry point.

Commands
--------
run     Run the backup cycle for every configured dataset
snap    Capture and archive every dataset under an explicit label
tidy    Undo today's cycle (mounts, captures and archives)
"""

import sys
import logging

import click

from snapvault import create_app
from snapvault.settings import load_settings, ConfigError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _load_or_exit(config_path: str):
    """Load the configuration file, exiting on error."""
    try:
        return load_settings(config_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)


def _report_runs(runs) -> int:
    """Print one line per dataset run and return the exit code."""
    failed = 0
    for run in runs:
        line = f"{run.dataset}: {run.status} ({run.label or 'no label'})"
        if run.error_message:
            line += f" - {run.error_message}"
        click.echo(line, err=run.status != 'success')
        if run.status != 'success':
            failed += 1
    return EXIT_FAILURE if failed else EXIT_OK


@click.group()
@click.option('--env', 'config_name', default=None,
              type=click.Choice(['production', 'development', 'testing']),
              help='Application configuration (default: SNAPVAULT_ENV or production).')
@click.pass_context
def cli(ctx, config_name):
    """ZFS capture rotation with borg archiving."""
    ctx.ensure_object(dict)
    ctx.obj['config_name'] = config_name


def _context_for(ctx, config_path):
    """Build the app and the backup context for a command."""
    from snapvault.backup.context import BackupContext

    settings = _load_or_exit(config_path)
    app = create_app(ctx.obj.get('config_name'))
    return app, BackupContext.from_settings(settings)


@cli.command()
@click.argument('config', type=click.Path(dir_okay=False))
@click.pass_context
def run(ctx, config):
    """Run the full backup cycle for all datasets in CONFIG."""
    from snapvault.backup.pipeline import run_cycle

    app, backup_context = _context_for(ctx, config)
    with app.app_context():
        try:
            runs = run_cycle(backup_context)
        except KeyboardInterrupt:
            click.echo("Interrupted; run 'snapvault tidy' to roll back today's cycle", err=True)
            sys.exit(EXIT_INTERRUPTED)
        sys.exit(_report_runs(runs))


@cli.command()
@click.argument('config', type=click.Path(dir_okay=False))
@click.argument('label')
@click.pass_context
def snap(ctx, config, label):
    """Capture and archive all datasets in CONFIG as LABEL (no pruning)."""
    from snapvault.backup.pipeline import run_snap, validate_label

    try:
        validate_label(label)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    app, backup_context = _context_for(ctx, config)
    with app.app_context():
        try:
            runs = run_snap(backup_context, label)
        except KeyboardInterrupt:
            click.echo("Interrupted; mounts and captures may be left behind", err=True)
            sys.exit(EXIT_INTERRUPTED)
        sys.exit(_report_runs(runs))


@cli.command()
@click.argument('config', type=click.Path(dir_okay=False))
@click.pass_context
def tidy(ctx, config):
    """Roll back today's cycle for all datasets in CONFIG."""
    from snapvault.backup.tidy import TidyController

    app, backup_context = _context_for(ctx, config)
    with app.app_context():
        summary = TidyController(backup_context).run()

    click.echo(
        f"Unmounted {summary['unmounted']}, "
        f"destroyed {len(summary['captures_destroyed'])} capture(s), "
        f"deleted {len(summary['archives_deleted'])} archive(s)"
    )
    for error in summary['errors']:
        click.echo(f"Error: {error}", err=True)

    sys.exit(EXIT_FAILURE if summary['errors'] else EXIT_OK)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
