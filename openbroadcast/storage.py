"""Schema management and the root admin token."""

from __future__ import annotations

import logging
import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from .config import settings
from .database import engine, get_session
from .models import Meta
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

SCHEMA_FRESH = "fresh"
SCHEMA_UNTRACKED = "untracked"
SCHEMA_TRACKED = "tracked"


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_root_token()


def config_safe_url(url) -> str:
    """Render ``url`` for Alembic's configparser, which treats % as interpolation."""
    return url.render_as_string(hide_password=False).replace("%", "%%")


def _alembic_config() -> Config:
    script_location = Path(__file__).resolve().parent / "alembic"
    config = Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", config_safe_url(engine.url))
    return config


def schema_state() -> str:
    """Classify the database as fresh, created without Alembic, or tracked."""
    inspector = inspect(engine)
    if inspector.has_table("alembic_version"):
        return SCHEMA_TRACKED
    if inspector.has_table("messages"):
        return SCHEMA_UNTRACKED
    return SCHEMA_FRESH


def backup_database(db_path: Path) -> Path | None:
    if not db_path.exists():
        return None
    backup_path = db_path.with_suffix(db_path.suffix + ".bak")
    shutil.copy(db_path, backup_path)
    return backup_path


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Bring the schema to the Alembic head and describe what was done."""
    actions: list[str] = []
    if make_backup:
        backup_path = backup_database(Path(settings.database_path))
        if backup_path:
            actions.append(f"Backup created at {backup_path}")

    state = schema_state()
    config = _alembic_config()
    if state == SCHEMA_UNTRACKED:
        # Tables came from metadata.create_all; record them as current.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        if state == SCHEMA_FRESH:
            actions.append("Ran Alembic upgrade to head (fresh database)")
        else:
            actions.append("Applied Alembic migrations to head")

    logger.debug("Schema upgrade (%s): %s", state, "; ".join(actions))
    return actions


def _read_meta(session: Session, key: str) -> str | None:
    meta = session.get(Meta, key)
    return meta.value if meta else None


def _write_meta(session: Session, key: str, value: str) -> None:
    session.merge(Meta(key=key, value=value, updated_at=utcnow()))


def ensure_root_token() -> str:
    with get_session() as session:
        existing = _read_meta(session, settings.root_token_key)
        if existing:
            return existing
        token = secrets.token_urlsafe(32)
        _write_meta(session, settings.root_token_key, token)
        return token


def rotate_root_token() -> str:
    token = secrets.token_urlsafe(32)
    with get_session() as session:
        _write_meta(session, settings.root_token_key, token)
    logger.info("Root admin token rotated")
    return token


def fetch_root_token() -> str:
    with get_session() as session:
        token = _read_meta(session, settings.root_token_key)
    return token or ensure_root_token()
