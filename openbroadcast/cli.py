"""Typer CLI for OpenBroadcast."""

from __future__ import annotations

import json
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from . import config
from .reconcile import run_reconcile_cycle
from .scheduler import stop_scheduler
from .seed import seed_fake_data
from .storage import fetch_root_token, init_db, rotate_root_token, upgrade_database

app = typer.Typer(help="OpenBroadcast command-line interface")


@contextmanager
def _writable(action: str):
    """Turn read-only SQLite failures into a readable CLI error."""
    try:
        yield
    except OperationalError as exc:
        text = str(getattr(exc, "orig", exc)).lower()
        if "readonly" not in text and "read-only" not in text:
            raise
        typer.secho(
            f"Unable to {action}: {config.settings.database_path} is read-only.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


def _parse_assignment(raw: str) -> tuple[str, str]:
    key, sep, value = raw.partition("=")
    key = key.strip().replace("-", "_")
    if not sep or key not in config.OPTIONS:
        known = ", ".join(sorted(config.OPTIONS))
        raise typer.BadParameter(f"Expected KEY=VALUE with KEY one of: {known}")
    return key, value.strip()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("admin-token")
def admin_token() -> None:
    """Print the root admin token, creating it on first use."""
    with _writable("read the root admin token"):
        init_db()
        typer.echo(fetch_root_token())


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Replace the root admin token; per-event tokens are untouched."""
    with _writable("rotate the root admin token"):
        init_db()
        typer.echo(rotate_root_token())


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False, "--no-backup", help="Skip the .bak copy taken before upgrading"
    ),
) -> None:
    """Migrate the SQLite schema to the latest revision."""
    with _writable("upgrade the database"):
        actions = upgrade_database(make_backup=not no_backup)
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("reconcile")
def reconcile() -> None:
    """Deliver queued messages whose invites were accepted elsewhere."""
    with _writable("reconcile queued messages"):
        init_db()
        stats = run_reconcile_cycle()
    typer.echo(
        f"Reconcile complete: {stats['messages_promoted']} messages delivered "
        f"for {stats['invites_promoted']} invites "
        f"({stats['invites_skipped']} accepted invites still lack an attendee)."
    )


@app.command("runserver")
def runserver(
    host: str = typer.Option(config.settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(config.settings.app_port, "--port", help="Port to bind"),
):
    """Serve the JSON API; the app lifespan starts the reconcile scheduler."""
    typer.echo(
        f"Starting OpenBroadcast on {host}:{port} "
        f"(fanout mode: {config.settings.fanout_mode})"
    )
    try:
        uvicorn.run(
            "openbroadcast.api:app",
            host=host,
            port=port,
            proxy_headers=True,
            forwarded_allow_ips="*",
        )
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        config.settings.seed_events, "--events", min=0, help="Events to create"
    ),
    max_attendees: int = typer.Option(
        config.settings.seed_attendees_per_event,
        "--max-attendees",
        min=0,
        help="Upper bound of attendees per event",
    ),
    max_invites: int = typer.Option(
        config.settings.seed_invites_per_event,
        "--max-invites",
        min=0,
        help="Upper bound of invites per event",
    ),
):
    """Fill the database with fake events, attendees, and invites."""
    stats = seed_fake_data(
        event_count=events,
        max_attendees_per_event=max_attendees,
        max_invites_per_event=max_invites,
    )
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['attendees']} attendees, "
        f"{stats['invites']} invites created."
    )


@app.command("config")
def configure(
    assignments: list[str] = typer.Option(
        None, "--set", help="KEY=VALUE to persist, e.g. --set fanout_mode=atomic"
    ),
    fanout_mode: str | None = typer.Option(
        None,
        "--fanout-mode",
        help="best_effort skips failed recipients; atomic aborts the broadcast",
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="TOML file to read or update"
    ),
):
    """Show the effective configuration, optionally updating it first."""
    updates = dict(_parse_assignment(raw) for raw in assignments or [])
    if fanout_mode is not None:
        updates["fanout_mode"] = fanout_mode

    target_path = config_path or config.settings.config_path
    if updates:
        try:
            current = config.update_config_file(updates, path=target_path)
        except ValueError as exc:
            typer.secho(str(exc), err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        current = config.load_settings(target_path)

    effective = config.settings_as_dict(current)
    effective["config_path"] = str(target_path)
    typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest", *(pytest_args or [])]
    typer.echo(f"Running tests: {' '.join(cmd)}")
    raise typer.Exit(code=subprocess.run(cmd).returncode)


if __name__ == "__main__":
    app()
