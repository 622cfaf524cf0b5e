"""
api/main.py -- FastAPI application entry point for Crewgate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (schema, default roles, bootstrap admin, service
wiring) and shutdown (dispose the engine) symmetrically. Every collaborator
is built once in init_state() and stored on app.state; routes and the
auth/dependencies.py adapters read it from there.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.audit import AuditStore
from auth.org_store import OrganizationStore
from auth.passwords import PasswordHasher
from auth.permissions import PermissionService
from auth.pipeline import AuthorizationChain
from auth.role_store import RoleStore
from auth.schema import Database
from auth.seed import bootstrap_admin, seed_roles
from auth.service import AuthService
from auth.session_store import SessionStore
from auth.store import UserStore
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crewgate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, settings: Settings, db: Database) -> None:
    """Build every store and service on top of db and attach them to app.state.

    The lifespan calls this with the configured database; tests call it with
    an in-memory one and their own Settings.
    """
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    user_store = UserStore(db)
    session_store = SessionStore(db)
    role_store = RoleStore(db)
    audit = AuditStore(db)

    auth_service = AuthService(user_store, session_store, hasher, settings, audit=audit)
    permission_service = PermissionService(role_store)

    app.state.settings = settings
    app.state.db = db
    app.state.hasher = hasher
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.role_store = role_store
    app.state.org_store = OrganizationStore(db)
    app.state.audit = audit
    app.state.auth_service = auth_service
    app.state.permission_service = permission_service
    app.state.chain = AuthorizationChain(auth_service, permission_service, user_store, settings)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Database -- creates the schema if missing.
      2. Seed roles -- the bootstrap admin needs the administrator role.
      3. Services -- built last, on the seeded database.
    """
    logger.info("Crewgate API starting up")
    db = Database(settings.database_url)
    seed_roles(db, settings)
    init_state(app, settings, db)
    if bootstrap_admin(app.state.user_store, db, app.state.hasher, settings) is None and not app.state.user_store.has_users():
        logger.warning("No users exist and BOOTSTRAP_ADMIN_EMAIL is unset -- nobody can log in")

    yield

    db.close()
    logger.info("Crewgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Crewgate API",
    description="Session authentication with role- and permission-based authorization.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack -- registered in the order a request meets them.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # The session travels in a cookie, so browsers must be allowed to send it.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles & Permissions"])
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Authorization failures arrive as HTTPException whose detail is the complete
# response body (see auth/dependencies.py); it is returned verbatim.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(message="Too many requests.", detail=str(exc.detail)).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with a structured error when request body or params fail validation."""
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(message="Request validation failed.", detail=errors).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return the dict detail as the body; wrap plain-string details in {"message": ...}."""
    content = exc.detail if isinstance(exc.detail, dict) else {"message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """A uniqueness or foreign-key violation that a route did not map itself."""
    logger.warning("Integrity violation on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"code": "conflict", "message": "The request conflicts with existing data."},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The exception text reaches the client only when DEBUG is on.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    debug = getattr(getattr(request.app.state, "settings", settings), "debug", False)
    body = ErrorResponse(message="Internal server error", detail=str(exc) if debug else None)
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness plus a database round-trip. 503 when the database is unreachable."""
    db_ok = request.app.state.db.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
