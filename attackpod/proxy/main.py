from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
from typing import NoReturn

import uvicorn
from pydantic import ValidationError

from .api.main import create_app
from .config import Settings
from .metrics import ProxyMetrics
from .storage import AttackRepository, Database, MigrationError, apply_migrations
from .storage.repository import REPORT_VIEWS

logger = logging.getLogger("attackpod.proxy.main")


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------

def load_settings() -> Settings:
    """Read settings from the environment; configuration errors are fatal."""
    try:
        return Settings()
    except ValidationError as exc:
        print(f"[FATAL] Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(1)


def open_database(settings: Settings) -> Database:
    """Open the store and migrate it; a failed migration is fatal."""
    try:
        db = Database(settings.DB_PATH)
    except (OSError, sqlite3.Error) as exc:
        logger.critical("Could not open database %r: %s", settings.DB_PATH, exc)
        sys.exit(1)
    try:
        apply_migrations(db)
    except MigrationError as exc:
        logger.critical("Database migration failed: %s", exc)
        db.close()
        sys.exit(1)
    return db


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def run(settings: Settings, db: Database) -> None:
    metrics = ProxyMetrics()
    app = create_app(settings, db, metrics=metrics)
    host, port = settings.listen_host_port()

    uv_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
        server_header=False,
        date_header=False,
    )
    uv_server = uvicorn.Server(uv_config)

    logger.info(
        "Attack Pod Proxy started. Listening on %s. Forwarding to %s.",
        settings.LISTEN_ADDRESS, settings.COLLECTOR_PROXIED_URL,
    )
    if settings.DO_NOT_SUBMIT_ATTACKS:
        logger.info("Attack submissions are answered locally and not sent upstream")

    await uv_server.serve()
    logger.info("Final stats — %s", metrics.as_dict())


def print_report(db: Database, name: str, limit: int | None) -> int:
    repo = AttackRepository(db)
    try:
        rows = repo.get_report(name, limit=limit)
    except KeyError:
        print(f"ERROR: unknown report {name!r}; choose from: {', '.join(REPORT_VIEWS)}", file=sys.stderr)
        return 2
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))
    return 0


def _parse_args(settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Transparent recording proxy for SSH AttackPod sensors"
    )
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument(
        "--migrate-only", action="store_true",
        help="apply pending database migrations and exit",
    )
    parser.add_argument(
        "--report", metavar="NAME",
        help="print one report view as JSON lines and exit",
    )
    parser.add_argument("--limit", type=int, default=None, help="row limit for --report")
    return parser.parse_args()


def main() -> NoReturn:
    settings = load_settings()
    args = _parse_args(settings)
    level = "DEBUG" if settings.DEBUG_LOG else args.log_level
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    db = open_database(settings)
    try:
        if args.migrate_only:
            logger.info("Migrations complete; exiting (--migrate-only)")
            sys.exit(0)
        if args.report:
            sys.exit(print_report(db, args.report, args.limit))
        asyncio.run(run(settings, db))
    finally:
        db.close()
    sys.exit(0)


if __name__ == "__main__":
    main()
