#!/usr/bin/env python3
"""
Crewgate -- session authentication and RBAC service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py init-db
  python main.py init-db --database-url sqlite:///./crewgate.db

Environment variables (see core/config.py for the full list):
  DATABASE_URL               SQLAlchemy URL of the user/session store
  SECRET_KEY                 Required unless DEBUG=true
  BOOTSTRAP_ADMIN_EMAIL      First administrator, created when no users exist
  BOOTSTRAP_ADMIN_PASSWORD
"""

import argparse
from typing import Optional

import uvicorn

from auth.passwords import PasswordHasher
from auth.schema import Database
from auth.seed import bootstrap_admin, seed_roles
from auth.store import UserStore
from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _init_db(args: argparse.Namespace) -> int:
    """Create the schema, seed default roles and the bootstrap administrator."""
    settings = get_settings()
    url = args.database_url or settings.database_url
    db = Database(url)
    try:
        seeded = seed_roles(db, settings)
        print(f"  Database ready: {url}")
        print("  Default roles and permissions created." if seeded else "  Roles already present, left unchanged.")
        try:
            admin_id = bootstrap_admin(UserStore(db), db, PasswordHasher(settings.bcrypt_rounds), settings)
        except ValueError as e:
            print(f"  [!] {e}")
            return 1
        if admin_id is not None:
            print(f"  Bootstrap administrator created (user_id={admin_id}).")
    finally:
        db.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="crewgate",
        description="Session authentication with role- and permission-based authorization.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  DEBUG=true python main.py init-db
  BOOTSTRAP_ADMIN_EMAIL=admin@example.com BOOTSTRAP_ADMIN_PASSWORD=... python main.py init-db
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = commands.add_parser("serve", help="Run the API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    serve.set_defaults(handler=_serve)

    init_db = commands.add_parser("init-db", help="Create tables, seed roles and the bootstrap administrator")
    init_db.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this run",
    )
    init_db.set_defaults(handler=_init_db)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
