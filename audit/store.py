"""
audit/store.py -- Append-only audit log.

Every identity- or security-relevant action (login, logout, register,
approve, reject, delete, credential rename/delete, ...) appends one row to
audit_logs. Downstream CRUD handlers call record() after their own writes.

Guarantees:
  - Append-only. AuditRecorder exposes record() and query() and nothing else:
    there is no update or delete path for existing entries.
  - Best effort. A failing audit write is logged and swallowed; it never fails
    the operation being audited.
  - Attribution is by username string (soft reference, no foreign key), so
    entries survive deletion of the acting identity. Actions with no known
    username are not recorded.

Layer rule: audit/ imports only core/ and third-party libraries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from audit.models import AuditEntry
from core.database import create_db_engine

logger = logging.getLogger("enisi.audit")

DEFAULT_QUERY_LIMIT = 200

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity", String(64)),
    Column("entity_id", Integer),
    Column("action", String(64), index=True),
    Column("username", String(255)),
    Column("username_key", String(255), index=True),  # casefold() of username
    Column("info", Text),
    Column("ts", String(32), nullable=False),
)


class AuditRecorder:
    """Writes and reads the audit trail.

    Usage:
        audit = AuditRecorder(db_url)
        audit.record("user", 42, "approve", "admin")
        entries = audit.query(action="approve", limit=50)
    """

    def __init__(self, db_url: str, max_rows: int = 1000) -> None:
        self.engine: Engine = create_db_engine(db_url)
        self.max_rows = max_rows
        _metadata.create_all(self.engine)

    def record(
        self,
        entity: str,
        entity_id: int | None,
        action: str,
        username: str | None,
        info: str | None = None,
    ) -> None:
        """Append one entry. Never raises."""
        if not username:
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        entity=entity,
                        entity_id=entity_id,
                        action=action,
                        username=username,
                        username_key=username.casefold(),
                        info=info,
                        ts=datetime.now(timezone.utc).isoformat(),
                    )
                )
        except Exception:
            logger.exception("Audit insert failed (entity=%s action=%s)", entity, action)

    def query(
        self,
        entity: str | None = None,
        action: str | None = None,
        username: str | None = None,
        search: str | None = None,
        limit: int | None = DEFAULT_QUERY_LIMIT,
    ) -> list[AuditEntry]:
        """Return matching entries, newest first.

        username matches case-insensitively; search is a substring match on
        info. limit is clamped to [1, max_rows].
        """
        limit = min(max(int(limit or DEFAULT_QUERY_LIMIT), 1), self.max_rows)
        stmt = _audit_logs.select()
        if entity:
            stmt = stmt.where(_audit_logs.c.entity == entity)
        if action:
            stmt = stmt.where(_audit_logs.c.action == action)
        if username:
            stmt = stmt.where(_audit_logs.c.username_key == username.casefold())
        if search:
            stmt = stmt.where(_audit_logs.c.info.contains(search, autoescape=True))
        stmt = stmt.order_by(_audit_logs.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        entity=row.entity,
        entity_id=row.entity_id,
        action=row.action,
        username=row.username,
        info=row.info,
        ts=row.ts,
    )
