"""
auth/session_store.py -- Persistence for server-side session records.

Sessions are never deleted on invalidation: is_valid flips to 0 and the row
stays for audit. Every invalidation is a single UPDATE statement, so a
concurrent reader sees a session either fully valid or fully invalid, and
invalidate_user() cannot leave some of a user's sessions alive.

Expiry is compared in Python (see auth/service.py) rather than in SQL so the
service can run against an injected clock in tests.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import select

from auth.models import Session
from auth.schema import Database, now_iso, sessions


class SessionStore:
    """Repository for Session records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, session: Session) -> None:
        """Insert a new session. The id is the primary key, so a reused id raises IntegrityError."""
        now = now_iso()
        with self.db.connect() as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    is_valid=1 if session.is_valid else 0,
                    expires_at=session.expires_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()

    def get(self, session_id: str) -> Session | None:
        """Return the session row regardless of validity. Returns None if not found."""
        with self.db.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_valid(self, session_id: str) -> Session | None:
        """Return the session only if its validity flag is set. Expiry is not checked here."""
        with self.db.connect() as conn:
            row = conn.execute(
                sessions.select().where((sessions.c.id == session_id) & (sessions.c.is_valid == 1))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_valid_for_user(self, user_id: int) -> list[Session]:
        """Return the user's sessions with is_valid set, newest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where((sessions.c.user_id == user_id) & (sessions.c.is_valid == 1))
                .order_by(sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def is_owned_by(self, user_id: int, session_id: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                select(sessions.c.id).where((sessions.c.id == session_id) & (sessions.c.user_id == user_id))
            ).fetchone()
        return row is not None

    def invalidate(self, session_id: str) -> bool:
        """Mark one session invalid. Returns True if a valid session was flipped.

        A missing or already-invalid id matches no row; that is not an error.
        """
        with self.db.connect() as conn:
            result = conn.execute(
                sessions.update()
                .where((sessions.c.id == session_id) & (sessions.c.is_valid == 1))
                .values(is_valid=0, updated_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def invalidate_user(self, user_id: int, except_session_id: str | None = None) -> int:
        """Mark every valid session of a user invalid in one statement. Returns the row count.

        except_session_id keeps a single session (the caller's own) alive.
        """
        condition = (sessions.c.user_id == user_id) & (sessions.c.is_valid == 1)
        if except_session_id is not None:
            condition = condition & (sessions.c.id != except_session_id)
        with self.db.connect() as conn:
            result = conn.execute(sessions.update().where(condition).values(is_valid=0, updated_at=now_iso()))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_valid=bool(row.is_valid),
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
