"""
core/database.py -- Engine construction shared by every store.

SQLAlchemy provides the database-agnostic layer: the same Core queries run on
SQLite (development, tests) and PostgreSQL (production). Swapping backends is
a DATABASE_URL change, not a rewrite.

SQLite specifics are applied per connection because PRAGMAs are not inherited
by new connections from the pool:
  journal_mode=WAL  -- readers proceed without blocking during writes.
  foreign_keys=ON   -- ON DELETE CASCADE is ignored by SQLite without it.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str) -> Engine:
    """Return an Engine for db_url with backend-specific connection setup."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=not db_url.startswith("sqlite"))
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def is_unique_violation(exc: Exception) -> bool:
    """Return True if a DB-API IntegrityError was caused by a UNIQUE constraint.

    SQLite reports "UNIQUE constraint failed"; PostgreSQL uses SQLSTATE 23505.
    """
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505" or getattr(orig, "sqlstate", None) == "23505":
        return True
    return "unique" in str(orig or exc).lower()
