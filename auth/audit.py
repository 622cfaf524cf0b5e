"""
auth/audit.py -- Append-only audit trail for security-relevant events.

Services record logins, logouts, password changes and administrative
mutations here. Rows are never updated except to detach a deleted user
(user_id -> NULL, done by UserStore.delete_user).

Old/new values are serialized to JSON text. Callers must never pass password
hashes, reset tokens or full session ids.
"""

from __future__ import annotations

import json
import logging

from auth.models import AuditEntry, ClientInfo
from auth.schema import Database, audit_logs, now_iso

logger = logging.getLogger("crewgate.audit")


class AuditStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def record(
        self,
        action: str,
        user_id: int | None = None,
        table_name: str | None = None,
        record_id: int | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        client: ClientInfo | None = None,
    ) -> int:
        client = client or ClientInfo()
        with self.db.connect() as conn:
            result = conn.execute(
                audit_logs.insert().values(
                    user_id=user_id,
                    action=action,
                    table_name=table_name,
                    record_id=record_id,
                    old_values=json.dumps(old_values) if old_values is not None else None,
                    new_values=json.dumps(new_values) if new_values is not None else None,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            entry_id = result.inserted_primary_key[0]
        logger.debug("audit %s user=%s table=%s record=%s", action, user_id, table_name, record_id)
        return entry_id

    def list_recent(self, limit: int = 100, user_id: int | None = None) -> list[AuditEntry]:
        """Return the newest entries first, optionally filtered to one acting user."""
        stmt = audit_logs.select()
        if user_id is not None:
            stmt = stmt.where(audit_logs.c.user_id == user_id)
        stmt = stmt.order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc()).limit(limit)
        with self.db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        table_name=row.table_name,
        record_id=row.record_id,
        old_values=row.old_values,
        new_values=row.new_values,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
