"""
auth/dependencies.py -- FastAPI Depends() adapters for the authorization chain.

Every adapter reads the AuthorizationChain from request.app.state.chain, runs
one checkpoint, and turns its Outcome into either a return value or an
HTTPException whose detail is the exact response body:

  Admitted              -> the Identity is returned to the route
  Unauthenticated       -> HTTP 401
  Forbidden             -> HTTP 403
  InfrastructureFailure -> the original exception is re-raised (HTTP 500
                           via the generic handler in api/main.py)

authentication_outcome() is the single place the session cookie is read.
FastAPI caches a dependency's value for the duration of one request, so
every adapter used by a route shares one Identity object: a snapshot
refreshed by require_permission() is visible to the checks that follow it.

Usage:
    @router.get("/users")
    def list_users(identity: Identity = Depends(require_permission("users", "read"))): ...

Layer rule: may import from fastapi (it is the framework boundary); no
imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import ClientInfo, Identity
from auth.outcomes import Admitted, InfrastructureFailure, Outcome
from auth.pipeline import AuthorizationChain


def _chain(request: Request) -> AuthorizationChain:
    return request.app.state.chain


def _admit(outcome: Outcome) -> Identity:
    if isinstance(outcome, Admitted):
        return outcome.identity
    if isinstance(outcome, InfrastructureFailure):
        raise outcome.error
    raise HTTPException(status_code=outcome.status_code, detail=outcome.body())


def _as_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Checkpoint 1
# ---------------------------------------------------------------------------


def authentication_outcome(request: Request) -> Outcome:
    """Run the authenticate checkpoint against the session cookie."""
    chain = _chain(request)
    session_id = request.cookies.get(chain.settings.session_cookie_name)
    return chain.authenticate(session_id)


def authenticate(outcome: Outcome = Depends(authentication_outcome)) -> Identity:
    """Require a valid session. Raises HTTP 401 otherwise."""
    return _admit(outcome)


def optional_identity(outcome: Outcome = Depends(authentication_outcome)) -> Identity | None:
    """Soft variant: the Identity, or None when the request is not authenticated."""
    if isinstance(outcome, Admitted):
        return outcome.identity
    return None


# ---------------------------------------------------------------------------
# Checkpoints 2 and 3, and the supplementary checks
# ---------------------------------------------------------------------------


def require_roles(*roles: str, include_admin: bool = False) -> Callable[..., Identity]:
    """Admit only identities whose role label is one of roles (exact match).

    include_admin adds the configured administrator label, read from the
    chain's settings on each request.
    """
    named = list(roles)

    def dependency(request: Request, identity: Identity = Depends(authenticate)) -> Identity:
        chain = _chain(request)
        allowed = [chain.settings.admin_role_name, *named] if include_admin else named
        return _admit(chain.check_role(identity, allowed))

    return dependency


def require_permission(resource: str, action: str) -> Callable[..., Identity]:
    """Admit only identities holding (resource, action). May refresh the snapshot."""

    def dependency(request: Request, identity: Identity = Depends(authenticate)) -> Identity:
        return _admit(_chain(request).check_permission(identity, resource, action))

    return dependency


def authorize(token: str) -> Callable[..., Identity]:
    """Snapshot-only check of a "resource:action" token.

    Does not demand a session itself: an unauthenticated request gets the
    {"success": false, ...} envelope of this check, not the authenticate
    checkpoint's message.
    """

    def dependency(request: Request, identity: Identity | None = Depends(optional_identity)) -> Identity:
        return _admit(_chain(request).check_permission_token(identity, token))

    return dependency


async def belongs_to_organization(request: Request, identity: Identity = Depends(authenticate)) -> Identity:
    """Admit administrators and members of the organization the request names.

    The organization is taken from the path (organization_id, then org_id) and
    otherwise from a JSON body's organization_id field.
    """
    params = request.path_params
    route_id = _as_int(params.get("organization_id", params.get("org_id")))
    body_id = None
    if route_id is None and "json" in request.headers.get("content-type", ""):
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if isinstance(payload, dict):
            body_id = _as_int(payload.get("organization_id"))
    return _admit(_chain(request).check_organization(identity, route_id, body_id))


def require_admin(request: Request, identity: Identity = Depends(authenticate)) -> Identity:
    """Admit only the administrator role label. 401 without a session, 403 otherwise."""
    return _admit(_chain(request).check_admin(identity))


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
