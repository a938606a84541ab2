"""
Engine, session and schema-revision plumbing.

The engine and session factory live on ``DB`` so tests and the app lifespan
can swap them without re-importing services.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

import deskmem.config as config

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    engine = None
    SessionLocal = None


def alembic_config(database_url: Optional[str] = None):
    """Alembic Config pointed at the bundled migrations and ``database_url``."""
    from alembic.config import Config

    cfg = Config(os.path.join(PROJECT_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url or config.DATABASE_URL)
    return cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """Return ``(applied, head)`` revision ids for ``engine``."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(alembic_config()).get_current_head()
    with engine.connect() as conn:
        applied = MigrationContext.configure(conn).get_current_revision()
    return applied, head


def migrate_to_head(engine) -> None:
    """Upgrade when allowed, otherwise refuse to start on a stale schema."""
    from alembic import command

    applied, head = schema_revisions(engine)
    if applied == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"schema at revision {applied!r} but code expects {head!r}; "
            "run 'alembic upgrade head' or enable AUTO_MIGRATE_ON_STARTUP"
        )

    config.logger.info("Upgrading schema", extra={"from_revision": applied, "to_revision": head})
    command.upgrade(alembic_config(), "head")
    if schema_revisions(engine)[0] != head:
        raise RuntimeError(f"schema upgrade stopped short of {head!r}")


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def build_engine(database_url: str, backend: str):
    """Engine tuned for ``backend``: busy timeout and FKs on sqlite, pre-ping on postgres."""
    if backend != "sqlite":
        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_timeout=config.DB_POOL_TIMEOUT_SECONDS,
        )
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def init_db() -> None:
    config.validate_and_prepare_config()
    config.logger.info("Opening database", extra={"backend": config.DB_BACKEND})
    DB.engine = build_engine(config.DATABASE_URL, config.DB_BACKEND)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    migrate_to_head(DB.engine)
    config.logger.info("Database ready")


def get_session():
    if DB.SessionLocal is None:
        raise RuntimeError("init_db() has not run")
    return DB.SessionLocal()
