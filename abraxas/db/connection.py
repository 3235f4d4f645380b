"""Database connection management for Abraxas.

Provides synchronous database access using SQLAlchemy. SQLite is the
default for development; any SQLAlchemy-supported engine can be selected
with DATABASE_URL.

Usage:
    from abraxas.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from abraxas.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. ABRAXAS_DATABASE_URL (same as Settings.database_url)
    3. ABRAXAS_DB_PATH (converted to sqlite URL)
    4. sqlite:///<user data dir>/abraxas.db (the directory is created)
    """
    for var in ("DATABASE_URL", "ABRAXAS_DATABASE_URL"):
        database_url = os.environ.get(var, "").strip()
        if database_url:
            return database_url

    db_path = os.environ.get("ABRAXAS_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from abraxas.utils.paths import ensure_dirs_exist, get_default_db_path

    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


# Engine creation
DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)


# Enable foreign keys for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas.

    Enables:
    - foreign_keys=ON: cascading deletes of a task's comments and sessions.
    - journal_mode=WAL: concurrent readers alongside a single writer.
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.close()


# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for a single request.

    Intended for use with FastAPI's Depends().

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            task = db.query(Task).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _ensure_columns_exist(conn: Any) -> None:
    """Add columns introduced after a table was first created (SQLite only).

    Uses PRAGMA table_info to introspect columns and ALTER TABLE to add
    missing ones. Idempotent; safe to call on every startup.

    Raises:
        OperationalError: For DDL failures other than a concurrent add.
    """
    if conn.dialect.name != "sqlite":
        return

    migrations: dict[str, list[tuple[str, str]]] = {
        "manifests": [
            ("prd_name", "ALTER TABLE manifests ADD COLUMN prd_name VARCHAR(255)"),
        ],
    }
    for table, columns in migrations.items():
        exists = conn.execute(
            text("SELECT 1 FROM sqlite_master WHERE type='table' AND name=:name LIMIT 1"),
            {"name": table},
        ).fetchone()
        if not exists:
            continue
        existing = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})")).fetchall()}
        for col_name, ddl in columns:
            if col_name in existing:
                continue
            try:
                conn.execute(text(ddl))
                logger.info("Added column %s.%s", table, col_name)
            except OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise
                logger.debug("Column %s.%s already exists (concurrent add)", table, col_name)


def init_db() -> None:
    """Create all database tables.

    Safe to call multiple times - will not recreate existing tables.
    Adds columns that older databases are missing.
    """
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        _ensure_columns_exist(conn)


def close_db() -> None:
    """Dispose of the engine's connection pool."""
    engine.dispose()
