"""
audit/models.py -- Audit entry dataclass.

Frozen: an entry is never modified after it is written.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class AuditEntry:
    entity: str | None
    entity_id: int | None
    action: str
    username: str
    info: str | None = None
    ts: str | None = None
    id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)
