"""CLI commands for usage-monitor."""

import click


@click.group()
@click.version_option(package_name="usage-monitor")
def main() -> None:
    """Record which applications run on this machine, and for how long."""
    pass


def _load_config():
    from usage_monitor.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
def daemon() -> None:
    """Run the process monitor in the foreground."""
    import asyncio

    from usage_monitor.daemon import run_daemon

    config = _load_config()
    try:
        asyncio.run(run_daemon(config))
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Quick health check."""
    import time

    from usage_monitor.daemon import read_daemon_pid
    from usage_monitor.formatting import format_duration
    from usage_monitor.storage import DatabaseNotAvailable, get_app_events, require_database

    config = _load_config()

    pid = read_daemon_pid(config)
    click.echo(f"Daemon: running (PID {pid})" if pid else "Daemon: stopped")

    try:
        with require_database(config.db_path) as conn:
            open_events = get_app_events(conn, limit=1000, open_only=True)

            if not open_events:
                click.echo("No applications currently open.")
                return

            click.echo(f"\nOpen applications: {len(open_events)}")
            now = time.time()
            for event in open_events:
                duration = format_duration(event["start_time"], None, now=now)
                click.echo(f"  - {event['process_name']} (PID {event['pid']}): {duration}")
    except DatabaseNotAvailable:
        return


@main.command()
@click.option("--limit", "-n", default=20, help="Number of events to show")
@click.option("--open", "open_only", is_flag=True, help="Show only open events")
def events(limit: int, open_only: bool) -> None:
    """List recorded application events, newest first."""
    import time

    from usage_monitor.formatting import format_duration, format_timestamp
    from usage_monitor.storage import DatabaseNotAvailable, get_app_events, require_database

    config = _load_config()

    try:
        with require_database(config.db_path) as conn:
            events_list = get_app_events(conn, limit=limit, open_only=open_only)

            if not events_list:
                click.echo("No events recorded.")
                return

            click.echo(
                f"{'ID':>5}  {'Process':24}  {'PID':>7}  {'Started':19}  "
                f"{'Duration':>10}  {'Parent':16}"
            )
            click.echo("-" * 90)

            now = time.time()
            for event in events_list:
                duration = format_duration(event["start_time"], event["end_time"], now=now)
                click.echo(
                    f"{event['id']:>5}  {event['process_name'][:24]:24}  {event['pid']:>7}  "
                    f"{format_timestamp(event['start_time']):19}  {duration:>10}  "
                    f"{event['parent_process_name'][:16]:16}"
                )
    except DatabaseNotAvailable:
        return


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def clear(yes: bool) -> None:
    """Delete all recorded events and reset the running daemon."""
    import os
    import signal

    from usage_monitor.daemon import read_daemon_pid
    from usage_monitor.storage import DatabaseNotAvailable, clear_history, require_database

    config = _load_config()

    if not yes and not click.confirm("Delete all recorded application events?"):
        click.echo("Aborted.")
        return

    try:
        with require_database(config.db_path) as conn:
            deleted = clear_history(conn)
    except DatabaseNotAvailable:
        return

    click.echo(f"Deleted {deleted} events.")

    # The daemon still remembers what it logged; make it start fresh
    pid = read_daemon_pid(config)
    if pid is None:
        return
    try:
        os.kill(pid, signal.SIGUSR1)
        click.echo(f"Reset signal sent to daemon (PID {pid}).")
    except (ProcessLookupError, PermissionError) as e:
        click.echo(f"Warning: could not signal daemon: {e}", err=True)


@main.command()
@click.option("--days", type=int, default=None, help="Override retention (default: config value)")
def prune(days: int | None) -> None:
    """Delete closed events older than the retention period."""
    from usage_monitor.storage import DatabaseNotAvailable, prune_old_data, require_database

    config = _load_config()
    events_days = days if days is not None else config.retention.events_days
    if events_days < 1:
        click.echo("Error: --days must be >= 1", err=True)
        raise SystemExit(1)

    try:
        with require_database(config.db_path) as conn:
            deleted = prune_old_data(conn, events_days=events_days)
    except DatabaseNotAvailable:
        return

    click.echo(f"Pruned {deleted} events older than {events_days} days.")


@main.command()
def config() -> None:
    """Show the config file path, creating it with defaults if missing."""
    cfg = _load_config()
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config: {cfg.config_path}")
    else:
        click.echo(f"Config: {cfg.config_path}")
    click.echo(f"Database: {cfg.db_path}")
    click.echo(f"Log: {cfg.log_path}")
