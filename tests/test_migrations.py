from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from eventgate import database, storage
from eventgate.models import Base


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(
        database, "DATABASE_URL", engine.url.render_as_string(hide_password=False)
    )
    fake_settings = types.SimpleNamespace(database_path=db_path)
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        try:
            return conn.execute(
                text("select version_num from alembic_version")
            ).scalar()
        except OperationalError:
            return None


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == "0001_initial"


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
    inspector = inspect(engine)
    for table in (
        "users",
        "events",
        "event_forms",
        "form_submissions",
        "tickets",
        "check_ins",
        "reviews",
        "sent_emails",
    ):
        assert inspector.has_table(table)
    index_names = {index["name"] for index in inspector.get_indexes("form_submissions")}
    assert "uq_form_submissions_live" in index_names


def test_upgrade_database_backs_up_and_reapplies(monkeypatch, tmp_path):
    db_path = tmp_path / "backup.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    actions = storage.upgrade_database(make_backup=True)

    assert f"Backup created at {db_path}.bak" in actions
    assert "Applied Alembic migrations to head" in actions
    assert (tmp_path / "backup.sqlite.bak").exists()


def test_upgrade_database_handles_percent_in_url(monkeypatch, tmp_path):
    db_path = tmp_path / "attendance%20report.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    config = storage._alembic_config()
    actions = storage.upgrade_database(make_backup=False)

    rendered = engine.url.render_as_string(hide_password=False)
    assert config.get_main_option("sqlalchemy.url") == rendered
    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
