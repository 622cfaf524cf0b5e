"""
auth/service.py -- Credential checks and the session lifecycle.

AuthService is the only component that creates or invalidates sessions. It
receives every collaborator at construction (stores, password capability,
settings, clock); nothing is looked up from module globals.

Security design decisions:
  Timing equalization: authenticate() always runs exactly one bcrypt
       verification. An unknown email is checked against a dummy hash so
       response time does not reveal whether an account exists. Inactive
       accounts and wrong passwords return the same INVALID_CREDENTIALS.

  Session ids: secrets.token_urlsafe(32) -- 256 bits, URL-safe, never
       reused (primary key). The server-side row is the only source of
       validity; the id itself carries no claims.

  validate_session() returns None for unknown, revoked and expired ids
       alike. Callers must not try to tell those apart.

  Password replacement (change and reset) goes through
       UserStore.replace_password(), which swaps the hash, records history
       and revokes every session of the user in one transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from auth.audit import AuditStore
from auth.models import ClientInfo, Session, User
from auth.passwords import PasswordHasher, generate_reset_token, hash_reset_token
from auth.session_store import SessionStore
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("crewgate.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(session_id: str) -> str:
    # Log-safe prefix; a full id in a log file is a usable credential.
    return session_id[:8]


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------


class AuthError(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"


@dataclass
class AuthResult:
    """Outcome of a login attempt. Exactly one of (user+session) or error is set."""

    user: User | None = None
    session: Session | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthServiceError(Exception):
    """Base class for password-management failures the routes map to 4xx responses."""


class InvalidCurrentPassword(AuthServiceError):
    pass


class PasswordPolicyError(AuthServiceError):
    def __init__(self, feedback: list[str], score: int) -> None:
        super().__init__("Password does not meet security requirements")
        self.feedback = feedback
        self.score = score


class PasswordReuseError(AuthServiceError):
    def __init__(self) -> None:
        super().__init__("Password was used recently")


class InvalidResetToken(AuthServiceError):
    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    """Validates credentials and issues, validates and invalidates sessions."""

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        hasher: PasswordHasher,
        settings: Settings,
        audit: AuditStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.settings = settings
        self.audit = audit
        self.clock = clock
        # Computed once so the first failed login is not measurably slower.
        self._dummy_hash = hasher.hash("crewgate_timing_dummy")

    # ------------------------------------------------------------------
    # Login / sessions
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str, client: ClientInfo | None = None) -> AuthResult:
        """Check email + password and open a session on success.

        Email matching is exact: no trimming, no case folding.
        """
        client = client or ClientInfo()
        user = self.users.get_by_email(email)
        credentials = self.users.get_credentials(user.id) if user is not None else None

        if user is None or credentials is None:
            # Do NOT return before running bcrypt.
            self.hasher.verify(password, self._dummy_hash)
            logger.info("Login failed: unknown account")
            return AuthResult(error=AuthError.INVALID_CREDENTIALS)
        if not self.hasher.verify(password, credentials.password_hash) or not user.is_active:
            logger.info("Login failed for user_id=%s", user.id)
            self._record("login_failed", user.id, client)
            return AuthResult(error=AuthError.INVALID_CREDENTIALS)

        session = self.create_session(user.id, client)
        self.users.update_last_login(user.id)
        self._record("login", user.id, client)
        logger.info("Login succeeded for user_id=%s session=%s", user.id, _short(session.id))
        refreshed = self.users.get_by_id(user.id) or user
        return AuthResult(user=refreshed, session=session)

    def create_session(self, user_id: int, client: ClientInfo | None = None) -> Session:
        client = client or ClientInfo()
        expires_at = self.clock() + timedelta(seconds=self.settings.session_lifetime_seconds)
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            is_valid=True,
            expires_at=expires_at.isoformat(),
        )
        self.sessions.create(session)
        return session

    def validate_session(self, session_id: str) -> Session | None:
        """Return the session if it exists, is valid, and has not expired; otherwise None."""
        session = self.sessions.get_valid(session_id)
        if session is None:
            return None
        if self.clock() >= datetime.fromisoformat(session.expires_at):
            return None
        return session

    def invalidate_session(self, session_id: str) -> None:
        """Revoke one session. Unknown or already-invalid ids are a silent no-op."""
        if self.sessions.invalidate(session_id):
            logger.info("Session invalidated session=%s", _short(session_id))

    def invalidate_all_sessions(self, user_id: int) -> None:
        count = self.sessions.invalidate_user(user_id)
        logger.info("Invalidated %d session(s) for user_id=%s", count, user_id)

    def invalidate_other_sessions(self, user_id: int, keep_session_id: str) -> int:
        count = self.sessions.invalidate_user(user_id, except_session_id=keep_session_id)
        logger.info("Invalidated %d other session(s) for user_id=%s", count, user_id)
        return count

    def list_active_sessions(self, user_id: int) -> list[Session]:
        now = self.clock()
        return [s for s in self.sessions.list_valid_for_user(user_id) if now < datetime.fromisoformat(s.expires_at)]

    def is_session_owned_by(self, user_id: int, session_id: str) -> bool:
        return self.sessions.is_owned_by(user_id, session_id)

    def logout(self, session_id: str, user_id: int, client: ClientInfo | None = None) -> None:
        self.invalidate_session(session_id)
        self._record("logout", user_id, client)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(
        self, user_id: int, current_password: str, new_password: str, client: ClientInfo | None = None
    ) -> None:
        """Replace a user's password after verifying the current one.

        Every session of the user, including the caller's, is invalidated.
        Raises InvalidCurrentPassword, PasswordPolicyError or PasswordReuseError.
        """
        credentials = self.users.get_credentials(user_id)
        if credentials is None or not self.hasher.verify(current_password, credentials.password_hash):
            raise InvalidCurrentPassword("Current password is incorrect")
        self._replace_password(user_id, credentials.password_hash, new_password)
        self._record("password_change", user_id, client)

    def request_password_reset(self, email: str) -> str | None:
        """Issue a reset token for the account, or return None for an unknown email.

        The raw token is returned to the caller exactly once; only its HMAC
        digest is stored.
        """
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            return None
        token = generate_reset_token()
        expires_at = self.clock() + timedelta(seconds=self.settings.reset_token_lifetime_seconds)
        self.users.save_reset_token(user.id, hash_reset_token(token, self.settings.secret_key), expires_at.isoformat())
        self._record("password_reset_request", user.id)
        return token

    def reset_password(self, token: str, new_password: str, client: ClientInfo | None = None) -> None:
        """Set a new password using a reset token. Raises InvalidResetToken for unknown or expired tokens."""
        found = self.users.get_by_reset_token(hash_reset_token(token, self.settings.secret_key))
        if found is None:
            raise InvalidResetToken()
        user, credentials = found
        if credentials.reset_expires_at is None or self.clock() >= datetime.fromisoformat(
            credentials.reset_expires_at
        ):
            raise InvalidResetToken()
        self._replace_password(user.id, credentials.password_hash, new_password)
        self._record("password_reset", user.id, client)

    def _replace_password(self, user_id: int, current_hash: str, new_password: str) -> None:
        strength = self.hasher.validate_strength(new_password)
        if not strength.valid:
            raise PasswordPolicyError(strength.feedback, strength.score)
        previous = [current_hash, *self.users.get_password_history(user_id, self.settings.password_history_size)]
        if any(self.hasher.verify(new_password, old) for old in previous):
            raise PasswordReuseError()
        revoked = self.users.replace_password(
            user_id, self.hasher.hash(new_password), self.settings.password_history_size
        )
        logger.info("Password replaced for user_id=%s; %d session(s) revoked", user_id, revoked)

    def _record(self, action: str, user_id: int | None, client: ClientInfo | None = None) -> None:
        if self.audit is not None:
            self.audit.record(action, user_id=user_id, table_name="users", record_id=user_id, client=client)
