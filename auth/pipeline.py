"""
auth/pipeline.py -- The per-request authorization chain.

    Unauthenticated --authenticate()--> Authenticated --check_*()--> Admitted

Each checkpoint returns an Outcome (auth/outcomes.py). A terminal outcome
(Unauthenticated / Forbidden / InfrastructureFailure) ends the request; no
later checkpoint runs. No checkpoint other than authenticate() accepts a
request without an Identity.

Permission snapshot protocol (check_permission):
  1. Hit: the Identity's snapshot already lists (resource, action) -> admit
     without touching the Permission Service.
  2. Miss: ask the source of truth (has_permission). A grant made after the
     snapshot was taken must not cause a false denial.
       - True: re-fetch the full set into the Identity in place, then admit.
       - False: Forbidden "Permission denied".
  A cached "yes" is trusted for the life of the snapshot (one request), so a
  revocation committed after authentication is not seen by step 1.
  Settings.recheck_cached_permissions closes that window by re-verifying
  hits too, at one query per check.

Failure policy:
  authenticate() converts ANY exception into Unauthenticated("Authentication
  failed") -- identity errors never surface as server faults. Past that
  point a store exception is not a security decision and is returned as
  InfrastructureFailure (HTTP 500).

Layer rule: no imports from api/ or fastapi. The FastAPI adapter lives in
auth/dependencies.py.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from auth.models import Identity
from auth.outcomes import Admitted, Forbidden, InfrastructureFailure, Outcome, Unauthenticated
from auth.permissions import PermissionService
from auth.service import AuthService
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("crewgate.pipeline")

# Matches ids produced by secrets.token_urlsafe(); anything else is "missing".
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")

AUTH_REQUIRED = "Authentication required"
INVALID_SESSION = "Invalid or expired session"
USER_NOT_FOUND = "User not found"
AUTH_FAILED = "Authentication failed"


class AuthorizationChain:
    """Authenticate, then gate by role, permission, organization or admin label.

    Usage:
        chain = AuthorizationChain(auth_service, permission_service, user_store, settings)
        outcome = chain.authenticate(cookie_value)
        if isinstance(outcome, Admitted):
            outcome = chain.check_permission(outcome.identity, "users", "read")
    """

    def __init__(
        self,
        auth_service: AuthService,
        permission_service: PermissionService,
        users: UserStore,
        settings: Settings,
    ) -> None:
        self.auth_service = auth_service
        self.permission_service = permission_service
        self.users = users
        self.settings = settings

    # ------------------------------------------------------------------
    # Checkpoint 1 -- authenticate
    # ------------------------------------------------------------------

    def authenticate(self, session_id: str | None) -> Outcome:
        if not session_id or not _SESSION_ID_RE.match(session_id):
            return Unauthenticated(AUTH_REQUIRED)
        try:
            session = self.auth_service.validate_session(session_id)
            if session is None:
                return Unauthenticated(INVALID_SESSION)

            user = self.users.get_by_id(session.user_id)
            if user is None:
                # Live session pointing at a deleted user.
                logger.warning("Session %s references missing user_id=%s", session_id[:8], session.user_id)
                return Unauthenticated(USER_NOT_FOUND)
            if not user.is_active:
                return Unauthenticated(INVALID_SESSION)

            permissions = self.permission_service.get_user_permissions(user.id)
            identity = Identity(
                user=user,
                role=user.role_name or self.settings.fallback_role_name,
                session_id=session_id,
                permissions=permissions,
            )
        except Exception as exc:
            logger.exception("Authentication checkpoint failed")
            return Unauthenticated(AUTH_FAILED, detail=str(exc) if self.settings.debug else None)
        return Admitted(identity)

    # ------------------------------------------------------------------
    # Checkpoint 2 -- role
    # ------------------------------------------------------------------

    def check_role(self, identity: Identity | None, allowed_roles: Iterable[str]) -> Outcome:
        allowed = list(allowed_roles)
        if identity is None:
            return Unauthenticated(AUTH_REQUIRED)
        if identity.role in allowed:
            return Admitted(identity)
        return Forbidden("Access denied", required={"roles": allowed})

    # ------------------------------------------------------------------
    # Checkpoint 3 -- permission (snapshot first, source of truth on miss)
    # ------------------------------------------------------------------

    def check_permission(self, identity: Identity | None, resource: str, action: str) -> Outcome:
        if identity is None:
            return Unauthenticated(AUTH_REQUIRED)
        required = {"resource": resource, "action": action}

        if identity.holds(resource, action):
            if not self.settings.recheck_cached_permissions:
                return Admitted(identity)
            try:
                still_held = self.permission_service.has_permission(identity.user_id, resource, action)
                if still_held:
                    return Admitted(identity)
                identity.permissions = self.permission_service.get_user_permissions(identity.user_id)
            except Exception as exc:
                return InfrastructureFailure(exc)
            logger.info("Cached grant %s:%s revoked for user_id=%s", resource, action, identity.user_id)
            return Forbidden("Permission denied", required=required)

        try:
            granted = self.permission_service.has_permission(identity.user_id, resource, action)
            if not granted:
                return Forbidden("Permission denied", required=required)
            identity.permissions = self.permission_service.get_user_permissions(identity.user_id)
        except Exception as exc:
            return InfrastructureFailure(exc)
        logger.debug("Permission snapshot refreshed for user_id=%s after miss on %s:%s", identity.user_id, resource, action)
        return Admitted(identity)

    # ------------------------------------------------------------------
    # Supplementary checks
    # ------------------------------------------------------------------

    def check_permission_token(self, identity: Identity | None, token: str) -> Outcome:
        """Snapshot-only check of a combined "resource:action" token. Never queries the store."""
        envelope = {"success": False}
        if identity is None:
            return Unauthenticated(AUTH_REQUIRED, envelope=envelope)
        if identity.holds_token(token):
            return Admitted(identity)
        return Forbidden("Insufficient permissions", envelope=envelope)

    def check_organization(
        self,
        identity: Identity | None,
        route_organization_id: int | None = None,
        body_organization_id: int | None = None,
    ) -> Outcome:
        """Admit members of the requested organization, and administrators.

        The route value wins over the body value. A request that names no
        organization at all is admitted.
        """
        if identity is None:
            return Unauthenticated(AUTH_REQUIRED)
        organization_id = route_organization_id if route_organization_id else body_organization_id
        if not organization_id:
            return Admitted(identity)
        if identity.role == self.settings.admin_role_name or identity.organization_id == organization_id:
            return Admitted(identity)
        return Forbidden("Access restricted to organization members")

    def check_admin(self, identity: Identity | None) -> Outcome:
        if identity is None:
            return Unauthenticated(AUTH_REQUIRED)
        if identity.role == self.settings.admin_role_name:
            return Admitted(identity)
        return Forbidden("Administrator access required")
