"""Database initialization and account bootstrap helpers."""

from __future__ import annotations

import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, select

from .config import settings
from .database import engine, get_session
from .models import User
from .policy import ROLE_SUPER_ADMIN, VALID_ROLES


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_super_admin()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    # configparser interpolates "%", so percent-encoded URLs must be escaped.
    url = engine.url.render_as_string(hide_password=False)
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and engine.dialect.name == "sqlite" and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def ensure_super_admin() -> str:
    """Create the super-admin account if missing and return its API token."""
    with get_session() as session:
        user = session.scalar(
            select(User).where(User.email == settings.super_admin_email)
        )
        if user:
            if user.role != ROLE_SUPER_ADMIN:
                user.role = ROLE_SUPER_ADMIN
            return user.api_token
        user = User(
            email=settings.super_admin_email,
            first_name="Super",
            last_name="Admin",
            role=ROLE_SUPER_ADMIN,
            api_token=generate_token(),
        )
        session.add(user)
        return user.api_token


def rotate_super_admin_token() -> str:
    ensure_super_admin()
    token = generate_token()
    with get_session() as session:
        user = session.scalar(
            select(User).where(User.email == settings.super_admin_email)
        )
        user.api_token = token
    return token


def fetch_super_admin_token() -> str:
    with get_session() as session:
        user = session.scalar(
            select(User).where(User.email == settings.super_admin_email)
        )
        if user:
            return user.api_token
    return ensure_super_admin()


def create_user(
    *,
    email: str,
    role: str,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role {role!r}")
    with get_session() as session:
        user = User(
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            role=role,
            api_token=generate_token(),
        )
        session.add(user)
    return user
