"""CLI commands for stale-hunter."""

from contextlib import contextmanager

import click

SORT_CHOICES = ["name", "memory", "cpu", "staleness", "last-active"]
FILTER_CHOICES = ["all", "stale", "heavy"]


@click.group()
@click.version_option(package_name="stale-hunter")
def main() -> None:
    """Find idle, memory-hungry apps and close them safely."""
    from stale_hunter.logging import configure_cli

    configure_cli()


@contextmanager
def _open_session():
    """Load config, open the database and yield a refreshed session."""
    import asyncio

    from stale_hunter.config import Config
    from stale_hunter.errors import EnumerationError
    from stale_hunter.session import TrackingSession
    from stale_hunter.storage import get_connection, init_database

    config = Config.load()
    init_database(config.db_path)
    conn = get_connection(config.db_path)
    try:
        session = TrackingSession.create(config, conn)
        try:
            asyncio.run(session.refresh())
        except EnumerationError as e:
            raise click.ClickException(str(e)) from e
        yield session
    finally:
        conn.close()


def _print_apps(apps, now: float) -> None:
    from stale_hunter.formatting import format_bytes, format_idle

    click.echo(
        f"{'App':28}  {'PID':>7}  {'Memory':>10}  {'CPU':>6}  {'Idle':>8}  "
        f"{'Score':>5}  {'Level':10}  Flags"
    )
    click.echo("-" * 96)
    for app in apps:
        name = app.display_name[:26] + ".." if len(app.display_name) > 28 else app.display_name
        flags = []
        if app.is_stale:
            flags.append("stale")
        if app.is_heavy:
            flags.append("heavy")
        if app.is_protected:
            flags.append("protected")
        if app.is_system_app:
            flags.append("system")
        level = app.level.value.replace("_", " ")
        click.echo(
            f"{name:28}  {app.pid:>7}  {format_bytes(app.memory_bytes):>10}  "
            f"{app.cpu_percent:>5.1f}%  {format_idle(app.idle_seconds(now)):>8}  "
            f"{app.staleness_score:>5.2f}  {level:10}  {','.join(flags)}"
        )


@main.command("list")
@click.option("--search", "-s", default="", help="Case-insensitive name filter")
@click.option(
    "--filter", "-f", "filter_name", type=click.Choice(FILTER_CHOICES), default="all"
)
@click.option("--sort", "sort_name", type=click.Choice(SORT_CHOICES), default="staleness")
@click.option("--asc", is_flag=True, help="Sort ascending (default: descending)")
@click.option("--ids", is_flag=True, help="Show app ids (for quit/protect)")
def list_apps(search: str, filter_name: str, sort_name: str, asc: bool, ids: bool) -> None:
    """List running apps."""
    from stale_hunter.store import FilterOption, SortOption

    with _open_session() as session:
        session.set_search_query(search)
        session.set_filter(FilterOption(filter_name))
        session.set_sort(SortOption(sort_name.replace("-", "_")), ascending=asc)

        apps = session.displayed_apps
        if not apps:
            click.echo("No apps match.")
            return

        if ids:
            for app in apps:
                click.echo(app.id)
            return

        _print_apps(apps, session.snapshot.taken_at)
        click.echo()
        click.echo(
            f"{len(apps)} of {len(session.snapshot)} apps, {session.stale_app_count} stale, "
            f"{session.formatted_total_memory} total"
        )
        if session.snapshot.partial:
            click.echo("Warning: some apps could not be read; list may be incomplete.", err=True)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be closed")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def cleanup(dry_run: bool, yes: bool) -> None:
    """Close stale apps that are neither protected nor system apps."""
    from stale_hunter.formatting import format_bytes

    with _open_session() as session:
        plan = session.prepare_cleanup()
        if plan.is_empty:
            click.echo("No stale apps to clean up.")
            return

        _print_apps(plan.candidates, session.snapshot.taken_at)
        click.echo()
        click.echo(
            f"{len(plan)} apps, {format_bytes(plan.reclaimable_bytes)} reclaimable"
        )

        if dry_run:
            return

        if not yes:
            click.confirm(f"Quit {len(plan)} apps?", abort=True)

        report = session.execute_cleanup()

    click.echo(f"Quit {report.quit_count} apps (~{format_bytes(report.freed_bytes)} freed)")
    for app_id in report.denied_ids:
        click.echo(f"  denied: {app_id}")
    for app_id in report.failed_ids:
        click.echo(f"  failed: {app_id}")


@main.command("quit")
@click.argument("app_id")
def quit_app(app_id: str) -> None:
    """Quit one app by id (see 'list --ids')."""
    from stale_hunter.errors import ActionFailure, PermissionDenied

    with _open_session() as session:
        try:
            app = session.quit(app_id)
        except (PermissionDenied, ActionFailure) as e:
            raise click.ClickException(str(e)) from e

    click.echo(f"Quit {app.display_name} (PID {app.pid})")


@main.command()
@click.argument("app_id")
def protect(app_id: str) -> None:
    """Toggle protection for an app's identity."""
    with _open_session() as session:
        app = session.snapshot.get(app_id)
        protected = session.toggle_protection(app_id)

    if app is None or protected is None:
        raise click.ClickException(f"No running app with id {app_id}")
    state = "protected" if protected else "no longer protected"
    click.echo(f"{app.display_name} ({app.bundle_id}) is {state}")


@main.command()
def protected() -> None:
    """List protected identities."""
    from stale_hunter.config import Config
    from stale_hunter.storage import DatabaseNotAvailable, get_protected_apps, require_database

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            bundle_ids = sorted(get_protected_apps(conn))
    except DatabaseNotAvailable:
        return

    if not bundle_ids:
        click.echo("No protected apps.")
        return
    for bundle_id in bundle_ids:
        click.echo(bundle_id)


@main.command()
@click.option("--day", "-d", default=None, help="Day as YYYY-MM-DD (default: today)")
def usage(day: str | None) -> None:
    """Show per-app usage for a day."""
    from datetime import date

    from stale_hunter.config import Config
    from stale_hunter.formatting import format_bytes, format_duration
    from stale_hunter.storage import DatabaseNotAvailable, get_usage_records, require_database

    if day is not None:
        try:
            day = date.fromisoformat(day).isoformat()
        except ValueError:
            raise click.BadParameter(f"Invalid day: {day}", param_hint="--day") from None

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            records = get_usage_records(conn, day)
    except DatabaseNotAvailable:
        return

    if not records:
        click.echo("No usage recorded.")
        return

    click.echo(
        f"{'App':28}  {'Launches':>8}  {'Activations':>11}  {'Quits':>5}  {'Active':>8}  "
        f"{'Avg':>10}  {'Peak':>10}"
    )
    click.echo("-" * 92)
    for r in records:
        name = r["app_name"][:26] + ".." if len(r["app_name"]) > 28 else r["app_name"]
        click.echo(
            f"{name:28}  {r['launch_count']:>8}  {r['activation_count']:>11}  "
            f"{r['quit_count']:>5}  {format_duration(r['active_seconds']):>8}  "
            f"{format_bytes(r['average_memory_bytes']):>10}  "
            f"{format_bytes(r['peak_memory_bytes']):>10}"
        )


@main.command()
def status() -> None:
    """Show database and background tracker status."""
    from stale_hunter.config import Config
    from stale_hunter.formatting import format_since
    from stale_hunter.storage import get_daemon_state, get_schema_version, require_database

    config = Config.load()

    with require_database(config.db_path, exit_on_missing=True) as conn:
        version = get_schema_version(conn)
        started = get_daemon_state(conn, "started_at")
        stopped = get_daemon_state(conn, "stopped_at")
        last_refresh = get_daemon_state(conn, "last_refresh_at")

    click.echo(f"Database: {config.db_path} (schema v{version})")
    if started is None:
        click.echo("Tracker: never run (start it with 'stale-hunter watch')")
    elif stopped is not None and float(stopped) >= float(started):
        click.echo(f"Tracker: stopped {format_since(float(stopped))}")
    else:
        click.echo(f"Tracker: started {format_since(float(started))}")
    if last_refresh is not None:
        click.echo(f"Last refresh: {format_since(float(last_refresh))}")


@main.command()
@click.argument("app_id")
def info(app_id: str) -> None:
    """Show details for one app by id (see 'list --ids')."""
    from stale_hunter.formatting import format_bytes, format_since

    with _open_session() as session:
        app = session.snapshot.get(app_id)
        now = session.snapshot.taken_at

    if app is None:
        raise click.ClickException(f"No running app with id {app_id}")

    click.echo(f"{app.display_name} ({app.bundle_id}, PID {app.pid})")
    click.echo(f"  Memory:      {format_bytes(app.memory_bytes)}")
    click.echo(f"  CPU:         {app.cpu_percent:.1f}%")
    click.echo(f"  Launched:    {format_since(app.launched_at, now=now)}")
    click.echo(f"  Last active: {format_since(app.last_active_at, now=now)}")
    click.echo(f"  Staleness:   {app.staleness_score:.2f} ({app.level.description})")
    if app.is_protected:
        click.echo("  Protected: will not be quit")
    elif app.is_system_app:
        click.echo("  System app: will not be quit")


@main.command()
def watch() -> None:
    """Run the background tracker until interrupted."""
    import asyncio

    from stale_hunter.daemon import run_daemon

    asyncio.run(run_daemon())


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from stale_hunter.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[scoring]")
    click.echo(f"  stale_threshold_seconds = {cfg.scoring.stale_threshold_seconds}")
    click.echo(f"  heavy_threshold_bytes = {cfg.scoring.heavy_threshold_bytes}")
    click.echo(f"  idle_weight = {cfg.scoring.idle_weight}")
    click.echo(f"  memory_weight = {cfg.scoring.memory_weight}")
    click.echo()
    click.echo("[refresh]")
    click.echo(f"  interval = {cfg.refresh.interval}")
    click.echo(f"  keep_missing_on_partial = {cfg.refresh.keep_missing_on_partial}")
    click.echo()
    click.echo("[retention]")
    click.echo(f"  usage_days = {cfg.retention.usage_days}")
    click.echo()
    click.echo("[apps]")
    click.echo(f"  system = {len(cfg.apps.system)} entries")
    click.echo(f"  excluded = {len(cfg.apps.excluded)} entries")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from stale_hunter.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
