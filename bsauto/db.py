import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine, make_url
from sqlmodel import Session, SQLModel, create_engine

from .models import AdminSession, Lead, Vehicle
from .settings import settings

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        database = make_url(url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = make_engine(settings.database_url)


def ensure_columns(bind: Engine):
    """Idempotently add columns missing from databases created by older releases (SQLite)."""
    if bind.dialect.name != "sqlite":
        return
    wanted = {
        "status": "TEXT NOT NULL DEFAULT 'available'",
        "images_json": "TEXT NOT NULL DEFAULT '[]'",
        "updated_at": "DATETIME",
    }
    with Session(bind) as s:
        have = {r["name"] for r in s.exec(text("PRAGMA table_info(vehicles)")).mappings().all()}
        for col, typ in wanted.items():
            if col not in have:
                s.exec(text(f"ALTER TABLE vehicles ADD COLUMN {col} {typ}"))
                logger.info("migration: added %s column to vehicles", col)
        s.commit()


def init_db(bind: Engine | None = None):
    bind = bind or engine
    SQLModel.metadata.create_all(
        bind,
        tables=[Vehicle.__table__, Lead.__table__, AdminSession.__table__],
    )
    ensure_columns(bind)
