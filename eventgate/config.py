"""Global configuration for EventGate."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "database_url": "",
    "store_timeout_seconds": 5.0,
    "submissions_per_page": 20,
    "max_page_size": 100,
    "recent_check_ins_limit": 10,
    "count_tickets_in_stats": True,
    "mail_transport": "log",
    "smtp_host": "localhost",
    "smtp_port": 587,
    "smtp_username": "",
    "smtp_password": "",
    "smtp_use_tls": True,
    "mail_from": "EventGate <no-reply@localhost>",
    "mail_timeout_seconds": 10.0,
    "mail_concurrency": 4,
    "reminder_window_hours": 24,
    "reminder_interval_minutes": 60,
    "app_url": "http://localhost:8000",
    "seed_events": 3,
    "seed_submissions_per_event": 8,
    "seed_tickets_per_event": 2,
    "seed_reviews_per_event": 3,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "database_url": str,
    "store_timeout_seconds": float,
    "submissions_per_page": int,
    "max_page_size": int,
    "recent_check_ins_limit": int,
    "count_tickets_in_stats": bool,
    "mail_transport": str,
    "smtp_host": str,
    "smtp_port": int,
    "smtp_username": str,
    "smtp_password": str,
    "smtp_use_tls": bool,
    "mail_from": str,
    "mail_timeout_seconds": float,
    "mail_concurrency": int,
    "reminder_window_hours": int,
    "reminder_interval_minutes": int,
    "app_url": str,
    "seed_events": int,
    "seed_submissions_per_event": int,
    "seed_tickets_per_event": int,
    "seed_reviews_per_event": int,
    "app_host": str,
    "app_port": int,
}

# Never echoed back by `eventgate config --show`.
SECRET_KEYS = {"smtp_password"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    database_url: str
    store_timeout_seconds: float
    submissions_per_page: int
    max_page_size: int
    recent_check_ins_limit: int
    count_tickets_in_stats: bool
    mail_transport: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    mail_from: str
    mail_timeout_seconds: float
    mail_concurrency: int
    reminder_window_hours: int
    reminder_interval_minutes: int
    app_url: str
    seed_events: int
    seed_submissions_per_event: int
    seed_tickets_per_event: int
    seed_reviews_per_event: int
    super_admin_email: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def reminder_window(self) -> timedelta:
        return timedelta(hours=self.reminder_window_hours)

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.database_path}"


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTGATE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "eventgate.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTGATE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTGATE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventgate.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("EVENTGATE_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("EVENTGATE_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        super_admin_email=os.getenv(
            "EVENTGATE_SUPER_ADMIN_EMAIL",
            toml_config.get("super_admin_email", "admin@localhost"),
        ),
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "super_admin_email": settings.super_admin_email,
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        payload[key] = "********" if key in SECRET_KEYS and value else value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventGate configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
