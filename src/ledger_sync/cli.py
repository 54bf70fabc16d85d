"""Click CLI entry point for the ledger-sync command.

Handles argument parsing, config loading, and output. All sync logic is
delegated to the ``orchestrator``, which runs every command in an isolated
worker exactly as the scheduler does.
"""

from __future__ import annotations

import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import click

from ledger_sync import __version__
from ledger_sync.models import Command, LogEvent, LogLevel, mask_secret

CONFIG_POLL_SECONDS = 5.0


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Set up logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        force=True,
    )


def _format_event(event: LogEvent) -> str:
    stamp = datetime.fromtimestamp(event.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
    prefix = f"[{event.profile_id}] " if event.profile_id else ""
    return f"{stamp} {event.level.value.upper():<7} {prefix}{event.message}"


def _echo_event(event: LogEvent) -> None:
    click.echo(_format_event(event), err=event.level == LogLevel.ERROR)


def _load_or_exit(root: Path):
    from ledger_sync.config import load_settings

    try:
        return load_settings(root)
    except FileNotFoundError as exc:
        click.echo(
            f"Error: {exc}. Run 'ledger-sync init' to create the configuration.",
            err=True,
        )
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error loading configuration: {exc}", err=True)
        sys.exit(1)


def _run_once(profile_id: str, command: Command) -> None:
    """Run *command* for *profile_id* in a worker and wait for it."""
    from ledger_sync.config import load_settings
    from ledger_sync.orchestrator import Admission, Orchestrator

    root = Path.cwd()
    config, _ = _load_or_exit(root)

    orchestrator = Orchestrator(
        root=root,
        loader=lambda: load_settings(root),
        max_log_entries=config.max_log_entries,
        on_event=_echo_event,
    )
    admission = orchestrator.request(profile_id, command)
    if admission == Admission.UNKNOWN_PROFILE:
        click.echo(f"Error: no profile with id {profile_id!r}.", err=True)
        sys.exit(1)

    record = orchestrator.wait(profile_id)
    if record is None or not record.result.success:
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="ledger-sync")
def cli() -> None:
    """Sync Investec bank accounts into Actual Budget, per profile."""


@cli.command()
@click.option(
    "--dir", "target_dir", default=".", type=click.Path(), help="Directory to initialize."
)
def init(target_dir: str) -> None:
    """Create config.toml, categories.toml and the data directory."""
    from ledger_sync.config import initialize

    target = Path(target_dir).resolve()

    try:
        initialize(target)
    except Exception as exc:
        click.echo(f"Error initializing project: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Initialized ledger-sync configuration in {target}")


@cli.command()
def profiles() -> None:
    """List configured profiles (secrets masked)."""
    config, default_taxonomy = _load_or_exit(Path.cwd())

    if not config.profiles:
        click.echo("No profiles configured.")
        return

    for profile in config.profiles:
        state = "enabled" if profile.enabled else "disabled"
        taxonomy = "custom" if profile.categories is not None else "default"
        click.echo(f"{profile.id}: {profile.name} ({state})")
        click.echo(f"  schedule:   {profile.schedule or '(manual only)'}")
        click.echo(f"  server:     {profile.server_url or '(not set)'}")
        click.echo(f"  budget:     {profile.budget_id or '(not set)'}")
        click.echo(f"  client id:  {mask_secret(profile.client_id)}")
        click.echo(f"  secret:     {mask_secret(profile.secret_id)}")
        click.echo(f"  api key:    {mask_secret(profile.api_key)}")
        click.echo(f"  password:   {mask_secret(profile.password)}")
        click.echo(f"  categories: {taxonomy}")


@cli.command("add-profile")
@click.option("--id", "profile_id", required=True, help="Stable profile id.")
@click.option("--name", default=None, help="Display name. Defaults to the id.")
@click.option("--client-id", default="", help="Investec client id.")
@click.option("--secret-id", default="", help="Investec secret.")
@click.option("--api-key", default="", help="Investec API key.")
@click.option("--server-url", default="", help="Actual server URL.")
@click.option("--budget-id", default="", help="Actual budget sync id.")
@click.option("--password", default="", help="Actual server / encryption password.")
@click.option("--schedule", default="", help="Cron expression, empty for manual only.")
@click.option("--disabled", is_flag=True, default=False, help="Create the profile disabled.")
def add_profile(
    profile_id: str,
    name: str | None,
    client_id: str,
    secret_id: str,
    api_key: str,
    server_url: str,
    budget_id: str,
    password: str,
    schedule: str,
    disabled: bool,
) -> None:
    """Add or replace a profile in config.toml."""
    from croniter import croniter

    from ledger_sync.config import save_config, validate_profile_id
    from ledger_sync.models import SyncProfile

    root = Path.cwd()
    config, _ = _load_or_exit(root)

    try:
        profile_id = validate_profile_id(profile_id)
    except ValueError as exc:
        click.echo(f"Error: {exc}.", err=True)
        sys.exit(1)

    if schedule.strip() and not croniter.is_valid(schedule.strip()):
        click.echo(f"Error: invalid cron expression {schedule!r}.", err=True)
        sys.exit(1)

    profile = SyncProfile(
        id=profile_id,
        name=name or profile_id,
        enabled=not disabled,
        client_id=client_id,
        secret_id=secret_id,
        api_key=api_key,
        server_url=server_url,
        budget_id=budget_id,
        password=password,
        schedule=schedule,
    )

    replaced = config.get_profile(profile_id) is not None
    config.profiles = [p for p in config.profiles if p.id != profile_id] + [profile]

    try:
        save_config(root, config)
    except Exception as exc:
        click.echo(f"Error saving configuration: {exc}", err=True)
        sys.exit(1)

    click.echo(f"{'Updated' if replaced else 'Added'} profile {profile_id!r}.")


@cli.command()
@click.option("--profile", "profile_id", required=True, help="Profile id to sync.")
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def sync(profile_id: str, verbose: bool, debug: bool) -> None:
    """Run a sync for one profile now."""
    _configure_logging(verbose, debug)
    _run_once(profile_id, Command.SYNC)


@cli.command("test-provider")
@click.option("--profile", "profile_id", required=True, help="Profile id to test.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def test_provider(profile_id: str, debug: bool) -> None:
    """Check the profile's Investec credentials."""
    _configure_logging(False, debug)
    _run_once(profile_id, Command.TEST_PROVIDER)


@cli.command("test-ledger")
@click.option("--profile", "profile_id", required=True, help="Profile id to test.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def test_ledger(profile_id: str, debug: bool) -> None:
    """Check the profile's Actual server and budget."""
    _configure_logging(False, debug)
    _run_once(profile_id, Command.TEST_LEDGER)


@cli.command()
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def serve(verbose: bool, debug: bool) -> None:
    """Run the scheduler in the foreground until interrupted.

    The schedule is re-derived whenever config.toml changes.
    """
    _configure_logging(verbose, debug)

    from ledger_sync.config import load_settings
    from ledger_sync.orchestrator import Orchestrator

    root = Path.cwd()
    config, _ = _load_or_exit(root)
    config_path = root / "config.toml"

    orchestrator = Orchestrator(
        root=root,
        loader=lambda: load_settings(root),
        max_log_entries=config.max_log_entries,
        on_event=_echo_event,
    )
    orchestrator.start()
    click.echo(f"ledger-sync {__version__} scheduler running. Press Ctrl+C to stop.")

    last_mtime = config_path.stat().st_mtime
    try:
        while True:
            time.sleep(CONFIG_POLL_SECONDS)
            try:
                mtime = config_path.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime != last_mtime:
                last_mtime = mtime
                click.echo("Configuration changed, reloading schedule.")
                try:
                    orchestrator.reload()
                except Exception as exc:
                    click.echo(f"Error reloading configuration: {exc}", err=True)
    except KeyboardInterrupt:
        click.echo("Stopping scheduler...")
    finally:
        orchestrator.stop()
