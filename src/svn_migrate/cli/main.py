"""Main CLI entry point for SVN Migration Tool."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table

from ..api.client import GitLabClient
from ..config.config import Config
from ..events.broadcaster import EventType, MigrationEvent
from ..exceptions import MigrationError
from ..migration.bulk import load_authors_file, load_bulk_file, write_authors_template
from ..migration.engine import MigrationEngine
from ..models.job import ResumeFrom, SvnCredentials
from ..models.migration import LayoutConfig, LayoutKind, MigrationRecord, MigrationStatus
from ..scheduler.queue import validate_concurrency
from ..svn.prober import ConnectionProber
from ..utils.logging import mask_url, setup_logging

console = Console()

DEFAULT_CONFIG_PATHS = ['config.yaml', 'config.yml', '.svn-migrate.yaml']
FOLLOW_QUEUE_SIZE = 1000

STATUS_STYLES = {
    MigrationStatus.REGISTERED: 'white',
    MigrationStatus.PENDING: 'cyan',
    MigrationStatus.RUNNING: 'blue',
    MigrationStatus.SYNCING: 'blue',
    MigrationStatus.COMPLETED: 'green',
    MigrationStatus.FAILED: 'red',
    MigrationStatus.CANCELLED: 'yellow',
}


def credential_options(func):
    """Add ``--username`` / ``--password`` SVN credential options."""
    func = click.option(
        '--password',
        '-p',
        envvar='SVN_PASSWORD',
        help='SVN password (prompted for when only --username is given)',
    )(func)
    func = click.option('--username', '-u', envvar='SVN_USERNAME', help='SVN username')(
        func
    )
    return func


def layout_options(func):
    """Add repository layout options."""
    func = click.option('--tags', help='Tags path for a custom layout')(func)
    func = click.option('--branches', help='Branches path for a custom layout')(func)
    func = click.option('--trunk', help='Trunk path for a custom layout')(func)
    func = click.option(
        '--layout',
        type=click.Choice([kind.value for kind in LayoutKind]),
        default=LayoutKind.STANDARD.value,
        show_default=True,
        help='Repository layout',
    )(func)
    return func


@click.group()
@click.version_option(version='0.1.0', prog_name='svn-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """SVN Migration Tool - Migrate Subversion repositories into GitLab projects."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    # Basic logging until the configuration is loaded
    log_level = 'DEBUG' if verbose else 'WARNING'
    setup_logging(log_level)


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
@click.pass_context
def init(ctx: click.Context, output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]SVN Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your GitLab instance details[/yellow]'
        )

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.option('--svn-url', help='Also test read access to this SVN repository')
@credential_options
@click.pass_context
def check(
    ctx: click.Context,
    svn_url: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Check connectivity to GitLab and, optionally, an SVN repository."""
    console.print(
        Panel.fit(
            '[bold cyan]SVN Migration Tool[/bold cyan]\nChecking connectivity...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        with GitLabClient(config.destination) as client:
            if not client.test_connection():
                raise ConnectionError(f'Cannot connect to GitLab at {config.destination.url}')
        console.print(f'[green]✓[/green] GitLab reachable at {config.destination.url}')

        if svn_url:
            credentials = _credentials(username, password)
            prober = ConnectionProber(config.runner)
            result = asyncio.run(prober.test_connection(svn_url, credentials))
            console.print(
                f'[green]✓[/green] SVN repository readable at {mask_url(svn_url)} '
                f'(revision {result.head_revision}, {len(result.root_entries)} root entries)'
            )

    except Exception as e:
        console.print(f'[red]✗[/red] Connectivity check failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('svn_url')
@click.option(
    '--output',
    '-o',
    help='Write an authors mapping template (.txt for git-svn format, else YAML)',
)
@credential_options
@click.pass_context
def users(
    ctx: click.Context,
    svn_url: str,
    output: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """List the distinct authors of an SVN repository."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        prober = ConnectionProber(config.runner)
        with console.status(f'Reading history of {mask_url(svn_url)}...'):
            authors = asyncio.run(prober.extract_users(svn_url, credentials))

        table = Table(title=f'SVN Authors ({len(authors)})')
        table.add_column('Username', style='cyan')
        for author in authors:
            table.add_row(author)
        console.print(table)

        if output:
            write_authors_template(output, authors, config.runner.fallback_email_domain)
            console.print(f'[green]✓[/green] Authors template written to: {output}')

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to extract users: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('svn_url')
@layout_options
@click.option('--authors', type=click.Path(exists=True), help='Authors mapping file')
@credential_options
@click.pass_context
def preview(
    ctx: click.Context,
    svn_url: str,
    layout: str,
    trunk: Optional[str],
    branches: Optional[str],
    tags: Optional[str],
    authors: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Show what a migration would produce without running it."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        prober = ConnectionProber(config.runner)
        layout_config = LayoutConfig.parse(_layout(layout, trunk, branches, tags))
        with console.status(f'Previewing {mask_url(svn_url)}...'):
            result = asyncio.run(
                prober.preview_migration(
                    svn_url,
                    credentials,
                    layout=layout_config,
                    authors_mapping=load_authors_file(authors) if authors else None,
                )
            )

        table = Table(title='Migration Preview')
        table.add_column('Item', style='cyan')
        table.add_column('Value', style='green')
        table.add_row('Head revision', str(result.head_revision or '-'))
        table.add_row('Revisions', str(result.estimated_revision_count))
        table.add_row('Branches', ', '.join(result.branches) or '-')
        table.add_row('Tags', ', '.join(result.tags) or '-')
        table.add_row('Authors', str(len(result.authors)))
        console.print(table)

        if result.unmapped_authors:
            domain = config.runner.fallback_email_domain
            console.print(
                f'\n[yellow]Unmapped authors ({len(result.unmapped_authors)}), '
                f'will use @{domain} identities:[/yellow]'
            )
            for author in result.unmapped_authors[:10]:
                console.print(f'  • {author}')
            if len(result.unmapped_authors) > 10:
                console.print(f'  ... and {len(result.unmapped_authors) - 10} more')

    except Exception as e:
        console.print(f'[red]✗[/red] Preview failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('svn_url')
@click.option('--project-id', type=int, help='Existing GitLab project ID')
@click.option('--project-name', help='Project name (defaults to the last URL segment)')
@click.option('--project-path', help='Project path for a new project')
@click.option('--namespace-id', type=int, help='Namespace for a new project')
@layout_options
@click.option('--authors', type=click.Path(exists=True), help='Authors mapping file')
@click.option('--no-validate', is_flag=True, help='Skip the SVN connection test')
@credential_options
@click.pass_context
def register(
    ctx: click.Context,
    svn_url: str,
    project_id: Optional[int],
    project_name: Optional[str],
    project_path: Optional[str],
    namespace_id: Optional[int],
    layout: str,
    trunk: Optional[str],
    branches: Optional[str],
    tags: Optional[str],
    authors: Optional[str],
    no_validate: bool,
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Register an SVN repository for migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        async def action(engine: MigrationEngine) -> MigrationRecord:
            return await engine.register(
                svn_url,
                target_project_id=project_id,
                layout=_layout(layout, trunk, branches, tags),
                authors_mapping=load_authors_file(authors) if authors else None,
                project_name=project_name,
                project_path=project_path,
                namespace_id=namespace_id,
                credentials=credentials,
                validate=not no_validate,
            )

        record = asyncio.run(_with_engine(config, action))
        console.print(f'[green]✓[/green] Registered migration {record.id}')
        _print_record(record)

    except Exception as e:
        console.print(f'[red]✗[/red] Registration failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command(name='import')
@click.argument('bulk_file', type=click.Path(exists=True))
@click.option('--validate', is_flag=True, help='Test every SVN connection first')
@click.pass_context
def import_(ctx: click.Context, bulk_file: str, validate: bool) -> None:
    """Register every migration listed in a bulk YAML file."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        entries = load_bulk_file(bulk_file)

        async def action(engine: MigrationEngine) -> Dict[str, Any]:
            return await engine.register_bulk(entries, validate=validate)

        result = asyncio.run(_with_engine(config, action))

        console.print(
            f'[green]✓[/green] Registered {len(result["registered"])} of '
            f'{len(entries)} migrations'
        )
        if result['registered']:
            console.print(_records_table(result['registered'], 'Registered Migrations'))
        _print_errors(
            f'#{error["index"]} {mask_url(error["svn_url"])}: {error["error"]}'
            for error in result['errors']
        )
        if result['errors']:
            sys.exit(1)

    except Exception as e:
        console.print(f'[red]✗[/red] Import failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_ids', nargs=-1, required=True)
@credential_options
@click.pass_context
def start(
    ctx: click.Context,
    migration_ids: List[str],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Start registered migrations and follow them until they finish."""
    console.print(
        Panel.fit(
            '[bold blue]SVN Migration Tool[/bold blue]\nStarting migrations...',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        async def action(engine: MigrationEngine) -> List[MigrationRecord]:
            result = await engine.bulk_start(migration_ids, credentials)
            _print_errors(
                f'{error["migration_id"]}: {error["error"]}' for error in result['errors']
            )
            return await _follow(engine, migration_ids)

        records = asyncio.run(_with_engine(config, action))
        _finish(records)

    except Exception as e:
        console.print(f'[red]✗[/red] Start failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@click.option(
    '--from',
    'resume_from',
    type=click.Choice([point.value for point in ResumeFrom]),
    default=ResumeFrom.LAST_REVISION.value,
    show_default=True,
    help='Continue from the checkpoint or replay from the first revision',
)
@credential_options
@click.pass_context
def resume(
    ctx: click.Context,
    migration_id: str,
    resume_from: str,
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Resume a failed or cancelled migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        async def action(engine: MigrationEngine) -> List[MigrationRecord]:
            await engine.resume(migration_id, resume_from, credentials)
            return await _follow(engine, [migration_id])

        records = asyncio.run(_with_engine(config, action))
        _finish(records)

    except Exception as e:
        console.print(f'[red]✗[/red] Resume failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@click.pass_context
def stop(ctx: click.Context, migration_id: str) -> None:
    """Stop a queued or running migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        async def action(engine: MigrationEngine) -> MigrationRecord:
            return await engine.stop(migration_id)

        record = asyncio.run(_with_engine(config, action))
        revision = record.last_synced_revision
        console.print(
            f'[green]✓[/green] Migration {migration_id} cancelled '
            f'(checkpoint: {revision if revision is not None else "none"})'
        )

    except Exception as e:
        console.print(f'[red]✗[/red] Stop failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@credential_options
@click.pass_context
def sync(
    ctx: click.Context,
    migration_id: str,
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Fetch and push new revisions of a completed migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        async def action(engine: MigrationEngine) -> List[MigrationRecord]:
            await engine.sync(migration_id, credentials)
            return await _follow(engine, [migration_id])

        records = asyncio.run(_with_engine(config, action))
        _finish(records)

    except Exception as e:
        console.print(f'[red]✗[/red] Sync failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def delete(ctx: click.Context, migration_id: str, yes: bool) -> None:
    """Delete a migration and its working directory."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        if not yes:
            click.confirm(f'Delete migration {migration_id}?', abort=True)

        async def action(engine: MigrationEngine) -> bool:
            return await engine.delete(migration_id)

        asyncio.run(_with_engine(config, action))
        console.print(f'[green]✓[/green] Migration {migration_id} deleted')

    except click.Abort:
        raise
    except Exception as e:
        console.print(f'[red]✗[/red] Delete failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command(name='list')
@click.option(
    '--status',
    'statuses',
    multiple=True,
    type=click.Choice([status.value for status in MigrationStatus]),
    help='Only show migrations with this status (repeatable)',
)
@click.pass_context
def list_(ctx: click.Context, statuses: List[str]) -> None:
    """List registered migrations."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        async def action(engine: MigrationEngine) -> List[MigrationRecord]:
            return engine.list_migrations([MigrationStatus(s) for s in statuses] or None)

        records = asyncio.run(_with_engine(config, action))
        if not records:
            console.print('[yellow]No migrations found[/yellow]')
            return
        console.print(_records_table(records, f'Migrations ({len(records)})'))

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to list migrations: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@click.pass_context
def show(ctx: click.Context, migration_id: str) -> None:
    """Show the details of one migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        async def action(engine: MigrationEngine) -> MigrationRecord:
            return engine.get_migration(migration_id)

        _print_record(asyncio.run(_with_engine(config, action)))

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load migration: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_id')
@click.option('--limit', '-n', default=50, show_default=True, help='Number of lines')
@click.pass_context
def logs(ctx: click.Context, migration_id: str, limit: int) -> None:
    """Show the most recent log lines of a migration."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        async def action(engine: MigrationEngine) -> List[Dict[str, Any]]:
            return engine.get_logs(migration_id, limit)

        entries = asyncio.run(_with_engine(config, action))
        if not entries:
            console.print('[yellow]No log entries[/yellow]')
            return

        table = Table(title=f'Logs for {migration_id}')
        table.add_column('Time', style='cyan', no_wrap=True)
        table.add_column('Level')
        table.add_column('Message', overflow='fold')
        level_styles = {'error': 'red', 'warning': 'yellow', 'info': 'green'}
        for entry in reversed(entries):
            level = entry['level']
            table.add_row(
                entry['timestamp'].strftime('%Y-%m-%d %H:%M:%S') if entry['timestamp'] else '',
                f'[{level_styles.get(level, "white")}]{level}[/]',
                entry['message'],
            )
        console.print(table)

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load logs: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show queue limits and migration counts."""
    console.print(
        Panel.fit(
            '[bold magenta]SVN Migration Tool[/bold magenta]\nMigration Status',
            border_style='magenta',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        async def action(engine: MigrationEngine) -> Dict[str, Any]:
            return engine.get_queue_status()

        queue_status = asyncio.run(_with_engine(config, action))

        queues = Table(title='Queues')
        queues.add_column('Queue', style='cyan')
        queues.add_column('Concurrency', style='blue')
        queues.add_column('Waiting')
        queues.add_column('Active')
        for name in ('migration', 'sync'):
            counts = queue_status[name]
            queues.add_row(
                name,
                str(counts['concurrency']),
                str(counts['waiting']),
                str(counts['active']),
            )
        console.print(queues)

        records = Table(title='Migrations')
        records.add_column('Status', style='cyan')
        records.add_column('Count', style='green')
        for name, count in queue_status['records'].items():
            style = STATUS_STYLES[MigrationStatus(name)]
            records.add_row(f'[{style}]{name}[/]', str(count))
        console.print(records)

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load status: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_ids', nargs=-1)
@click.option(
    '--completed/--no-completed',
    default=True,
    show_default=True,
    help='Remove completed migrations',
)
@click.option('--failed', is_flag=True, help='Also remove failed and cancelled migrations')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def clean(
    ctx: click.Context,
    migration_ids: List[str],
    completed: bool,
    failed: bool,
    yes: bool,
) -> None:
    """Remove finished migrations (or the given ones) and their working directories."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        if not yes:
            target = (
                f'{len(migration_ids)} migrations' if migration_ids else 'finished migrations'
            )
            click.confirm(f'Delete {target}?', abort=True)

        async def action(engine: MigrationEngine) -> Dict[str, Any]:
            return await engine.clean(
                migration_ids or None,
                include_completed=completed,
                include_failed=failed,
            )

        result = asyncio.run(_with_engine(config, action))
        console.print(f'[green]✓[/green] Removed {result["deleted"]} migrations')
        _print_errors(
            f'{error["migration_id"]}: {error["error"]}' for error in result['errors']
        )

    except click.Abort:
        raise
    except Exception as e:
        console.print(f'[red]✗[/red] Clean failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('limit', type=int)
@click.option(
    '--queue',
    type=click.Choice(['migration', 'sync']),
    default='migration',
    show_default=True,
    help='Queue to change',
)
@click.pass_context
def concurrency(ctx: click.Context, limit: int, queue: str) -> None:
    """Set a queue's concurrency limit (1-10) in the configuration file."""
    try:
        validate_concurrency(limit)
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        setattr(config.scheduler, f'{queue}_concurrency', limit)
        config_path = _find_config_path(ctx)
        if config_path is None:
            env_var = 'MAX_CONCURRENT_MIGRATIONS' if queue == 'migration' else 'MAX_CONCURRENT_SYNCS'
            console.print(
                f'[yellow]No configuration file in use; set {env_var}={limit} instead[/yellow]'
            )
            return

        config.to_file(config_path)
        console.print(
            f'[green]✓[/green] {queue.capitalize()} concurrency set to {limit} in {config_path}'
        )

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to set concurrency: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('migration_ids', nargs=-1)
@click.option(
    '--recover',
    is_flag=True,
    help='First mark migrations left active by a crashed run as failed',
)
@click.option('--sync', 'sync_completed', is_flag=True, help='Also sync completed migrations')
@click.option('--migration-concurrency', type=int, help='Override the migration queue limit')
@click.option('--sync-concurrency', type=int, help='Override the sync queue limit')
@credential_options
@click.pass_context
def run(
    ctx: click.Context,
    migration_ids: List[str],
    recover: bool,
    sync_completed: bool,
    migration_concurrency: Optional[int],
    sync_concurrency: Optional[int],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Process registered migrations (all of them, or the given ones) until done."""
    console.print(
        Panel.fit(
            '[bold blue]SVN Migration Tool[/bold blue]\nProcessing migration queue...',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        credentials = _credentials(username, password)

        async def action(engine: MigrationEngine) -> List[MigrationRecord]:
            if migration_concurrency is not None:
                await engine.set_concurrency_limit(migration_concurrency, 'migration')
            if sync_concurrency is not None:
                await engine.set_concurrency_limit(sync_concurrency, 'sync')
            if recover:
                recovered = await engine.recover_interrupted()
                if recovered:
                    console.print(
                        f'[yellow]Marked {len(recovered)} interrupted migrations as failed[/yellow]'
                    )

            targets = list(migration_ids) or [
                record.id
                for record in engine.list_migrations([MigrationStatus.REGISTERED])
            ]
            result = await engine.bulk_start(targets, credentials)
            _print_errors(
                f'{error["migration_id"]}: {error["error"]}' for error in result['errors']
            )

            if sync_completed:
                for record in engine.list_migrations([MigrationStatus.COMPLETED]):
                    try:
                        await engine.sync(record.id, credentials)
                    except MigrationError as e:
                        console.print(f'[red]✗[/red] Sync of {record.id} not queued: {e}')
                        continue
                    targets.append(record.id)

            if not targets:
                console.print('[yellow]Nothing to run[/yellow]')
                return []
            return await _follow(engine, targets)

        records = asyncio.run(_with_engine(config, action))
        if records:
            _finish(records)

    except Exception as e:
        console.print(f'[red]✗[/red] Run failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


def _find_config_path(ctx: click.Context) -> Optional[str]:
    """Explicit --config path, else the first default file that exists."""
    config_path = ctx.obj.get('config_path')
    if config_path:
        return config_path
    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return path
    return None


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = _find_config_path(ctx)

    if config_path:
        if not Path(config_path).exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')
        return Config.from_file(config_path)

    # Fall back to environment variables
    try:
        return Config.from_env()
    except Exception:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run "svn-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    verbose = ctx.obj.get('verbose', False)

    # The verbose flag overrides the configured level
    log_level = 'DEBUG' if verbose else config.logging.level
    setup_logging(
        level=log_level, log_file=config.logging.file, log_format=config.logging.format
    )


def _build_engine(config: Config) -> MigrationEngine:
    return MigrationEngine.from_config(config)


async def _with_engine(
    config: Config, action: Callable[[MigrationEngine], Awaitable[Any]]
) -> Any:
    """Run ``action`` against a fresh engine and always close it."""
    engine = _build_engine(config)
    try:
        return await action(engine)
    finally:
        await engine.close()


def _credentials(username: Optional[str], password: Optional[str]) -> Optional[SvnCredentials]:
    if not username:
        return None
    if password is None:
        password = click.prompt(f'SVN password for {username}', hide_input=True)
    return SvnCredentials(username=username, password=password)


def _layout(
    kind: str, trunk: Optional[str], branches: Optional[str], tags: Optional[str]
) -> Dict[str, Any]:
    layout: Dict[str, Any] = {'kind': kind}
    for key, value in (('trunk', trunk), ('branches', branches), ('tags', tags)):
        if value:
            layout[key] = value
    return layout


async def _follow(engine: MigrationEngine, migration_ids: Iterable[str]) -> List[MigrationRecord]:
    """Render progress events until the queues drain.

    Returns:
        Final state of the followed migrations
    """
    migration_ids = list(dict.fromkeys(migration_ids))
    subscription = engine.subscribe(maxsize=FOLLOW_QUEUE_SIZE)
    idle = asyncio.create_task(engine.wait_idle())
    tasks: Dict[str, Any] = {}
    names: Dict[str, str] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn('[progress.description]{task.description}'),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        try:
            while not idle.done() or not subscription.queue.empty():
                try:
                    event = await subscription.get(timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                if event.type in (EventType.LOG, EventType.REGISTERED, EventType.DELETED):
                    continue

                migration_id = event.record_id
                if migration_id not in tasks:
                    record = engine.store.get(migration_id)
                    names[migration_id] = record.project_name if record else migration_id[:8]
                    tasks[migration_id] = progress.add_task(
                        f'[blue]{names[migration_id]}', total=100
                    )
                _render_event(progress, tasks[migration_id], names[migration_id], event)
        finally:
            subscription.close()
            if not idle.done():
                idle.cancel()

    return [record for record in map(engine.store.get, migration_ids) if record is not None]


def _render_event(progress: Progress, task_id, name: str, event: MigrationEvent) -> None:
    payload = event.payload
    if event.type == EventType.PROGRESS:
        revision = payload.get('revision')
        estimated = ' ~' if payload.get('is_estimated') else ''
        progress.update(
            task_id,
            completed=payload.get('percentage', 0.0),
            description=f'[blue]{name}[/blue] r{revision}{estimated}',
        )
    elif event.type in (EventType.STARTED, EventType.SYNCING, EventType.RESUMED):
        progress.update(task_id, description=f'[blue]{name}[/blue] {event.type.value}')
    elif event.type == EventType.COMPLETED:
        progress.update(
            task_id,
            completed=100,
            description=f'[green]{name} completed at r{payload.get("last_synced_revision")}',
        )
    elif event.type == EventType.FAILED:
        progress.update(task_id, description=f'[red]{name} failed: {payload.get("error")}')
    elif event.type == EventType.CANCELLED:
        progress.update(task_id, description=f'[yellow]{name} cancelled')


def _finish(records: List[MigrationRecord]) -> None:
    """Print final states, exiting 1 if any migration did not complete."""
    console.print(_records_table(records, 'Migration Summary'))
    unfinished = [r for r in records if r.status != MigrationStatus.COMPLETED]
    for record in unfinished:
        if record.error:
            console.print(f'[red]✗[/red] {record.id}: {record.error}')
    if unfinished:
        sys.exit(1)
    console.print('[green]✓[/green] All migrations completed successfully')


def _records_table(records: Iterable[MigrationRecord], title: str) -> Table:
    table = Table(title=title)
    table.add_column('ID', style='cyan', no_wrap=True)
    table.add_column('Project', style='blue')
    table.add_column('Source')
    table.add_column('Status')
    table.add_column('Revision', justify='right')
    for record in records:
        style = STATUS_STYLES[record.status]
        revision = record.last_synced_revision
        table.add_row(
            record.id,
            record.project_name,
            mask_url(record.source_url),
            f'[{style}]{record.status.value}[/]',
            str(revision) if revision is not None else '-',
        )
    return table


def _print_record(record: MigrationRecord) -> None:
    table = Table(title=f'Migration {record.id}')
    table.add_column('Field', style='cyan')
    table.add_column('Value', style='green')

    style = STATUS_STYLES[record.status]
    progress = record.metadata.get('progress') or {}
    summary = record.metadata.get('summary') or {}
    revision = record.last_synced_revision

    table.add_row('Source', mask_url(record.source_url))
    table.add_row('Project', f'{record.project_name} (ID {record.target_project_id})')
    table.add_row('Status', f'[{style}]{record.status.value}[/]')
    table.add_row('Layout', record.layout.kind.value)
    table.add_row('Authors mapped', str(len(record.authors_mapping)))
    table.add_row('Last synced revision', str(revision) if revision is not None else '-')
    if record.status.is_active and progress:
        estimated = ' (estimated)' if progress.get('is_estimated') else ''
        table.add_row('Progress', f'{progress.get("percentage", 0):.1f}%{estimated}')
    if summary:
        table.add_row('Last run', f'{summary.get("revisions_processed", 0)} revisions')
    if record.metadata.get('svn_username'):
        table.add_row('SVN user', record.metadata['svn_username'])
    if record.error:
        table.add_row('Error', f'[red]{record.error}[/red]')
    if record.created_at:
        table.add_row('Created', record.created_at.strftime('%Y-%m-%d %H:%M:%S'))
    if record.updated_at:
        table.add_row('Updated', record.updated_at.strftime('%Y-%m-%d %H:%M:%S'))
    console.print(table)


def _print_errors(errors: Iterable[str]) -> None:
    errors = list(errors)
    if not errors:
        return
    console.print(f'\n[red]Errors ({len(errors)}):[/red]')
    for error in errors[:5]:
        console.print(f'  • {error}')
    if len(errors) > 5:
        console.print(f'  ... and {len(errors) - 5} more errors')


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Interrupted by user[/red]')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]Error: {e}[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
