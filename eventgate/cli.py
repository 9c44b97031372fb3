"""Typer CLI for EventGate."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import IntegrityError, OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .policy import VALID_ROLES
from .reminders import run_reminder_cycle
from .seed import seed_fake_data
from .storage import (
    create_user,
    fetch_super_admin_token,
    init_db,
    rotate_super_admin_token,
    upgrade_database,
)

app = typer.Typer(help="EventGate command-line interface")


def _is_read_only(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "readonly" in message or "read-only" in message


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("admin-token")
def admin_token() -> None:
    """Print the super-admin API token, creating the account if needed."""
    init_db()
    typer.echo(fetch_super_admin_token())


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Issue a new API token for the super-admin."""
    try:
        init_db()
        token = rotate_super_admin_token()
    except OperationalError as exc:
        if _is_read_only(exc):
            typer.secho(
                "Unable to rotate the super-admin token because the database is "
                f"read-only. Ensure the process can write to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise
    typer.echo(token)


@app.command("create-user")
def create_user_command(
    email: str = typer.Option(..., "--email", help="Email address of the user"),
    role: str = typer.Option(
        "user", "--role", help=f"One of: {', '.join(sorted(VALID_ROLES))}"
    ),
    first_name: str | None = typer.Option(None, "--first-name"),
    last_name: str | None = typer.Option(None, "--last-name"),
) -> None:
    """Create a user and print their API token."""
    if role not in VALID_ROLES:
        typer.secho(
            f"Unknown role {role!r}. Use one of: {', '.join(sorted(VALID_ROLES))}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    init_db()
    try:
        user = create_user(
            email=email, role=role, first_name=first_name, last_name=last_name
        )
    except IntegrityError:
        typer.secho(
            f"A user with email {email} already exists.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    typer.echo(f"Created {user.role} {user.email} ({user.id})")
    typer.echo(user.api_token)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        if _is_read_only(exc):
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI application with uvicorn."""
    init_db()
    config = uvicorn.Config(
        "eventgate.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventGate on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    submissions: int = typer.Option(
        settings.seed_submissions_per_event,
        "--submissions",
        min=0,
        help="Form submissions to attach to each event",
    ),
    tickets: int = typer.Option(
        settings.seed_tickets_per_event,
        "--tickets",
        min=0,
        help="Standalone tickets to issue for each event",
    ),
    reviews: int = typer.Option(
        settings.seed_reviews_per_event,
        "--reviews",
        min=0,
        help="Maximum reviews to attach to each event",
    ),
):
    """Populate the database with fake events for testing."""
    stats = seed_fake_data(
        event_count=events,
        submissions_per_event=submissions,
        tickets_per_event=tickets,
        reviews_per_event=reviews,
    )
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['submissions']} submissions, "
        f"{stats['tickets']} tickets, {stats['reviews']} reviews created."
    )


@app.command("send-reminders")
def send_reminders() -> None:
    """Email approved attendees of events starting soon."""
    init_db()
    stats = run_reminder_cycle()
    typer.echo(f"Reminders complete: {stats}")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventgate.toml (default: ./eventgate.toml)"
    ),
    database_url: str | None = typer.Option(
        None, "--database-url", help="SQLAlchemy database URL"
    ),
    submissions_per_page: int | None = typer.Option(
        None, "--submissions-per-page", min=1, help="Default listing page size"
    ),
    max_page_size: int | None = typer.Option(
        None, "--max-page-size", min=1, help="Largest page size a caller may request"
    ),
    count_tickets_in_stats: bool | None = typer.Option(
        None,
        "--count-tickets-in-stats/--ignore-tickets-in-stats",
        help="Include standalone tickets in attendance statistics",
    ),
    mail_transport: str | None = typer.Option(
        None, "--mail-transport", help="Mail transport: log or smtp"
    ),
    smtp_host: str | None = typer.Option(None, "--smtp-host"),
    smtp_port: int | None = typer.Option(None, "--smtp-port"),
    smtp_username: str | None = typer.Option(None, "--smtp-username"),
    smtp_password: str | None = typer.Option(None, "--smtp-password"),
    mail_from: str | None = typer.Option(None, "--mail-from", help="Sender address"),
    mail_concurrency: int | None = typer.Option(
        None, "--mail-concurrency", min=1, help="Parallel sends per batch"
    ),
    reminder_window_hours: int | None = typer.Option(
        None, "--reminder-window-hours", min=1, help="Reminder look-ahead in hours"
    ),
    reminder_interval_minutes: int | None = typer.Option(
        None,
        "--reminder-interval-minutes",
        min=0,
        help="Minutes between background reminder cycles (0 disables them)",
    ),
    app_url: str | None = typer.Option(
        None, "--app-url", help="Public base URL used in email links"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "app_host": host,
        "app_port": port,
        "database_url": database_url,
        "submissions_per_page": submissions_per_page,
        "max_page_size": max_page_size,
        "count_tickets_in_stats": count_tickets_in_stats,
        "mail_transport": mail_transport,
        "smtp_host": smtp_host,
        "smtp_port": smtp_port,
        "smtp_username": smtp_username,
        "smtp_password": smtp_password,
        "mail_from": mail_from,
        "mail_concurrency": mail_concurrency,
        "reminder_window_hours": reminder_window_hours,
        "reminder_interval_minutes": reminder_interval_minutes,
        "app_url": app_url,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
