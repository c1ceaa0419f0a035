"""
Dentalization Session Core Entry Point.

Bootstraps the entire dependency graph via constructor injection,
initialises the local SQLite schema, and runs one session command.
Every subsystem is wired here; no module-level globals.

Usage::

    python main.py status
    python main.py login patient@example.com
    python main.py logout
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import getpass
import sys
from pathlib import Path
from typing import Optional, Sequence

from dentalization.auth import SessionManager
from dentalization.config import AppConfig, get_config
from dentalization.database import DatabaseManager
from dentalization.exceptions import DentalizationError
from dentalization.logger import StructuredLogger, get_logger
from dentalization.schema import initialize_schema
from dentalization.services import create_services


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dentalization-session",
        description="Inspect and manage the locally stored Dentalization session.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Verify the stored session against the backend.")

    login = commands.add_parser("login", help="Sign in and persist the session.")
    login.add_argument("email")
    login.add_argument(
        "--password",
        help="Password (prompted for when omitted).",
    )

    commands.add_parser("logout", help="Sign out and clear stored credentials.")
    return parser


async def _run(args: argparse.Namespace, config: AppConfig, db: DatabaseManager) -> int:
    session = SessionManager()
    services = create_services(
        db=db,
        config=config,
        session=session,
        logger=StructuredLogger(name="services"),
    )
    auth_service = services["auth_service"]
    exit_code = 0

    try:
        if args.command == "status":
            await auth_service.check_auth_status()
        elif args.command == "login":
            password: Optional[str] = args.password or getpass.getpass("Password: ")
            result = await auth_service.login(args.email, password)
            exit_code = 0 if result.success else 1
        elif args.command == "logout":
            await auth_service.logout()
    finally:
        await services["request_pipeline"].close()

    print(session.snapshot().model_dump_json(indent=2))
    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point: wire dependencies and run one command."""
    args = _build_parser().parse_args(argv)
    logger: StructuredLogger = get_logger("main")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (local encrypted credential store)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        sqlite_path=Path(config.CREDENTIAL_DB_PATH),
        logger=StructuredLogger(name="database"),
    )
    # close() is idempotent; this covers unclean exits.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. SQLite Schema Initialization (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    # ------------------------------------------------------------------
    # 4. Services + command
    # ------------------------------------------------------------------
    try:
        return asyncio.run(_run(args, config, db))
    except DentalizationError as exc:
        logger.error("Command failed: %s", exc)
        sys.stderr.write(f"error: {exc}\n")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
