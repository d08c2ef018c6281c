"""
storage/migrations.py

Versioned schema migrations for the attack store.

The schema version lives in the database header (PRAGMA user_version) and
is written in the same transaction as the step it records, so a crash
mid-migration leaves the file at the last fully applied version and the
next start resumes from there.

History:
  v1  flat "attacks" table, lookup indexes, summary views
  v2  collapse duplicate rows, unique index on the full attack tuple
  v3  time-bucket, credential and per-source analysis views + reports
  v4  top logins report
  v5  strip surrounding whitespace from stored evidence
  v6  dictionary normalisation: _dict_* tables + _attacks fact table,
      "attacks" becomes a view joining them back together
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Iterator, Sequence

from .database import Database

logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """A migration step could not be applied; the database is left at the previous version."""


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[sqlite3.Cursor], None]


# ---------------------------------------------------------------------------
# Script helpers
# ---------------------------------------------------------------------------

def iter_statements(script: str) -> Iterator[str]:
    """
    Yield the complete SQL statements of *script* one at a time.

    Statements are executed individually because Cursor.executescript()
    commits any open transaction before it runs.
    """
    buf: list[str] = []
    for line in script.splitlines(keepends=True):
        buf.append(line)
        candidate = "".join(buf)
        if sqlite3.complete_statement(candidate):
            yield candidate.strip()
            buf = []
    leftover = [
        ln for ln in "".join(buf).splitlines()
        if ln.strip() and not ln.strip().startswith("--")
    ]
    if leftover:
        raise MigrationError(f"incomplete SQL statement: {' '.join(leftover)[:80]!r}")


def run_script(cur: sqlite3.Cursor, script: str) -> None:
    for statement in iter_statements(script):
        cur.execute(statement)


def _create_views(cur: sqlite3.Cursor, views: Sequence[tuple[str, str]], ts: str) -> None:
    """(Re)create report views; *ts* is the name of the millisecond timestamp column."""
    for name, select in views:
        cur.execute(f'DROP VIEW IF EXISTS "{name}"')
        cur.execute(f'CREATE VIEW "{name}" AS {select.format(ts=ts)}')


def _drop_views(cur: sqlite3.Cursor, views: Sequence[tuple[str, str]]) -> None:
    for name, _ in reversed(views):
        cur.execute(f'DROP VIEW IF EXISTS "{name}"')


# ---------------------------------------------------------------------------
# Report views
#
# Templates take the timestamp column name: "attack_timestamp" on the flat
# v1–v5 table, "timestamp" on the v6 attacks view.
# ---------------------------------------------------------------------------

SUMMARY_VIEWS: list[tuple[str, str]] = [
    ("view_usernames", """
        SELECT "username", COUNT(1) AS "count"
        FROM "attacks"
        GROUP BY "username"
        ORDER BY "count" DESC, "username" ASC
    """),
    ("view_passwords", """
        SELECT "password", COUNT(1) AS "count"
        FROM "attacks"
        GROUP BY "password"
        ORDER BY "count" DESC, "password" ASC
    """),
    ("view_source_ips", """
        SELECT "source_ip", COUNT(1) AS "count"
        FROM "attacks"
        GROUP BY "source_ip"
        ORDER BY "count" DESC, "source_ip" ASC
    """),
    ("view_log", """
        SELECT
            strftime('%F %T', strftime('%F %T', "{ts}" / 1000, 'unixepoch'), 'localtime') AS "time",
            "source_ip" AS "source",
            "username",
            "password"
        FROM "attacks"
        ORDER BY "{ts}" DESC
    """),
    ("view_daily_attacks", """
        SELECT
            strftime('%F', strftime('%F %T', "{ts}" / 1000, 'unixepoch'), 'localtime') AS "date",
            COUNT(*) AS "count"
        FROM "attacks"
        GROUP BY "date"
        ORDER BY "date" DESC
    """),
    ("view_daily_usernames", """
        SELECT
            strftime('%F', strftime('%F %T', "{ts}" / 1000, 'unixepoch'), 'localtime') AS "date",
            "username",
            COUNT(*) AS "count"
        FROM "attacks"
        GROUP BY "date", "username"
        ORDER BY "date" DESC, "count" DESC, "username" ASC
    """),
    ("view_daily_passwords", """
        SELECT
            strftime('%F', strftime('%F %T', "{ts}" / 1000, 'unixepoch'), 'localtime') AS "date",
            "password",
            COUNT(*) AS "count"
        FROM "attacks"
        GROUP BY "date", "password"
        ORDER BY "date" DESC, "count" DESC, "password" ASC
    """),
    ("view_daily_source_ips", """
        SELECT
            strftime('%F', strftime('%F %T', "{ts}" / 1000, 'unixepoch'), 'localtime') AS "date",
            "source_ip",
            COUNT(*) AS "count"
        FROM "attacks"
        GROUP BY "date", "source_ip"
        ORDER BY "date" DESC, "count" DESC, "source_ip" ASC
    """),
]

ANALYSIS_VIEWS: list[tuple[str, str]] = [
    # Per-minute buckets with calendar components, for weekday/hour patterns.
    ("view_attacks_by_time", """
        SELECT
            strftime('%Y-%m-%d', "{ts}" / 1000, 'unixepoch', 'localtime') AS "date",
            strftime('%m', "{ts}" / 1000, 'unixepoch', 'localtime') AS "month",
            strftime('%W', "{ts}" / 1000, 'unixepoch', 'localtime') AS "week_of_year",
            strftime('%w', "{ts}" / 1000, 'unixepoch', 'localtime') AS "weekday",
            strftime('%d', "{ts}" / 1000, 'unixepoch', 'localtime') AS "day_of_month",
            strftime('%H', "{ts}" / 1000, 'unixepoch', 'localtime') AS "hour_of_day",
            strftime('%M', "{ts}" / 1000, 'unixepoch', 'localtime') AS "minute_of_hour",
            COUNT(1) AS "count"
        FROM "attacks"
        GROUP BY "date", "hour_of_day", "minute_of_hour"
        ORDER BY "date" ASC, "hour_of_day" ASC, "minute_of_hour" ASC
    """),
    ("view_logins", """
        SELECT "username", "password", COUNT(1) AS "count"
        FROM "attacks"
        GROUP BY "username", "password"
        ORDER BY "count" DESC, "username" ASC, "password" ASC
    """),
    # Separates broad automated scans from narrower, targeted attackers.
    ("view_attack_patterns_by_source", """
        SELECT
            "source_ip",
            COUNT(1) AS "total_attacks",
            COUNT(DISTINCT "username") AS "unique_usernames",
            COUNT(DISTINCT "password") AS "unique_passwords",
            COUNT(DISTINCT ("username" || ' <-| username @ password |-> ' || "password")) AS "unique_logins",
            MIN(strftime('%Y-%m-%d %H:%M:%S', "{ts}" / 1000, 'unixepoch', 'localtime')) AS "first_seen",
            MAX(strftime('%Y-%m-%d %H:%M:%S', "{ts}" / 1000, 'unixepoch', 'localtime')) AS "last_seen"
        FROM "attacks"
        GROUP BY "source_ip"
        ORDER BY "total_attacks" DESC, "source_ip" ASC
    """),
    # A credential pair used by a single source IP points at a private list
    # or a targeted attack; pairs shared by many IPs come from public lists.
    ("view_credential_fingerprints", """
        SELECT
            "username",
            "password",
            COUNT(1) AS "total_uses",
            COUNT(DISTINCT "source_ip") AS "distinct_source_ips",
            MIN(strftime('%Y-%m-%d %H:%M:%S', "{ts}" / 1000, 'unixepoch', 'localtime')) AS "first_seen",
            MAX(strftime('%Y-%m-%d %H:%M:%S', "{ts}" / 1000, 'unixepoch', 'localtime')) AS "last_seen",
            GROUP_CONCAT(DISTINCT "source_ip") AS "source_ips"
        FROM "attacks"
        GROUP BY "username", "password"
        ORDER BY
            "distinct_source_ips" ASC,
            "total_uses" DESC,
            "last_seen" DESC,
            "username" ASC,
            "password" ASC
    """),
    ("report_top_attackers_last_24_hours", """
        SELECT "source_ip", COUNT(1) AS "count"
        FROM "attacks"
        WHERE "{ts}" >= (strftime('%s', 'now', '-1 day') * 1000)
        GROUP BY "source_ip"
        ORDER BY "count" DESC, "source_ip" ASC
        LIMIT 20
    """),
    ("report_top_usernames_last_7_days", """
        SELECT "username", COUNT(1) AS "count"
        FROM "attacks"
        WHERE "{ts}" >= (strftime('%s', 'now', '-7 days') * 1000)
        GROUP BY "username"
        ORDER BY "count" DESC, "username" ASC
        LIMIT 20
    """),
    ("report_top_passwords_last_7_days", """
        SELECT "password", COUNT(1) AS "count"
        FROM "attacks"
        WHERE "{ts}" >= (strftime('%s', 'now', '-7 days') * 1000)
        GROUP BY "password"
        ORDER BY "count" DESC, "password" ASC
        LIMIT 20
    """),
    ("report_new_credential_fingerprints_last_7_days", """
        SELECT *
        FROM "view_credential_fingerprints"
        WHERE
            "distinct_source_ips" = 1 AND
            "first_seen" >= strftime('%Y-%m-%d %H:%M:%S', 'now', '-7 days', 'localtime')
    """),
    ("view_attack_spread_by_username", """
        SELECT
            "username",
            COUNT(1) AS "total_attempts",
            COUNT(DISTINCT "source_ip") AS "distinct_attackers"
        FROM "attacks"
        GROUP BY "username"
        ORDER BY "total_attempts" DESC, "distinct_attackers" DESC, "username" ASC
    """),
    ("report_hourly_attacks_last_7_days", """
        SELECT
            "time" AS "from_time",
            strftime('%F %T', "time", '+1 hour') AS "to_time",
            "total_attacks"
        FROM (
            SELECT
                "date" || ' ' || "hour_of_day" || ':00:00' AS "time",
                SUM("count") AS "total_attacks"
            FROM "view_attacks_by_time"
            WHERE "time" >= strftime('%F %H:00:00', 'now', '-7 days', 'localtime')
            GROUP BY "date", "hour_of_day"
            ORDER BY "time" ASC
        ) AS hourly_data
    """),
    ("report_daily_attacks_last_90_days", """
        SELECT
            "time" AS "from_time",
            strftime('%F %T', "time", '+1 day') AS "to_time",
            "total_attacks"
        FROM (
            SELECT
                "date" || ' 00:00:00' AS "time",
                SUM("count") AS "total_attacks"
            FROM "view_attacks_by_time"
            WHERE "time" >= strftime('%F 00:00:00', 'now', '-90 days', 'localtime')
            GROUP BY "date"
            ORDER BY "time" ASC
        ) AS daily_data
    """),
]

LOGIN_REPORT_VIEWS: list[tuple[str, str]] = [
    ("report_top_logins_last_7_days", """
        SELECT "username", "password", COUNT(1) AS "count"
        FROM "attacks"
        WHERE "{ts}" >= (strftime('%s', 'now', '-7 days') * 1000)
        GROUP BY "username", "password"
        ORDER BY "count" DESC, "username" ASC, "password" ASC
        LIMIT 20
    """),
]

ALL_VIEWS: list[tuple[str, str]] = SUMMARY_VIEWS + ANALYSIS_VIEWS + LOGIN_REPORT_VIEWS


# ---------------------------------------------------------------------------
# Migration steps
# ---------------------------------------------------------------------------

_FLAT_INDEXES = (
    "idx_attacks_source_ip",
    "idx_attacks_destination_ip",
    "idx_attacks_source_destination",
    "idx_attacks_attack_type",
    "idx_attacks_evidence",
    "idx_attacks_attack_timestamp",
    "idx_attacks_username",
    "idx_attacks_password",
    "idx_attacks_username_password",
    "idx_attacks_unique_attack",
)


def migration_1(cur: sqlite3.Cursor) -> None:
    """Flat attacks table with lookup indexes and the summary views."""
    run_script(cur, """
        CREATE TABLE IF NOT EXISTS "attacks" (
            "id" INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
            "source_ip" TEXT,
            "destination_ip" TEXT,
            "username" TEXT,
            "password" TEXT,
            "attack_timestamp" INTEGER,
            "evidence" TEXT,
            "attack_type" TEXT
        );
        CREATE INDEX IF NOT EXISTS "idx_attacks_source_ip" ON "attacks" ("source_ip", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_destination_ip" ON "attacks" ("destination_ip", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_source_destination" ON "attacks" ("source_ip", "destination_ip", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_attack_type" ON "attacks" ("attack_type", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_evidence" ON "attacks" ("evidence", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_attack_timestamp" ON "attacks" ("attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_username" ON "attacks" ("username", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_password" ON "attacks" ("password", "attack_timestamp");
        CREATE INDEX IF NOT EXISTS "idx_attacks_username_password" ON "attacks" ("username", "password", "attack_timestamp");
    """)
    _create_views(cur, SUMMARY_VIEWS, ts="attack_timestamp")


def migration_2(cur: sqlite3.Cursor) -> None:
    """Drop duplicate rows (lowest id wins) and forbid new ones."""
    run_script(cur, """
        DELETE FROM "attacks"
        WHERE "id" NOT IN (
            SELECT MIN("id")
            FROM "attacks"
            GROUP BY "source_ip", "destination_ip", "username", "password",
                     "attack_timestamp", "evidence", "attack_type"
        );
        CREATE UNIQUE INDEX IF NOT EXISTS "idx_attacks_unique_attack" ON "attacks" (
            "source_ip", "destination_ip", "username", "password",
            "attack_timestamp", "evidence", "attack_type"
        );
    """)


def migration_3(cur: sqlite3.Cursor) -> None:
    """Time-bucket, credential and per-source analysis views."""
    _create_views(cur, ANALYSIS_VIEWS, ts="attack_timestamp")


def migration_4(cur: sqlite3.Cursor) -> None:
    """Top logins of the last seven days."""
    _create_views(cur, LOGIN_REPORT_VIEWS, ts="attack_timestamp")


def migration_5(cur: sqlite3.Cursor) -> None:
    """Trim spaces, tabs, CR and LF around stored evidence."""
    # Rows that only differ by surrounding whitespace collapse into the
    # lowest id first, otherwise the UPDATE would trip the v2 unique index.
    run_script(cur, """
        DELETE FROM "attacks"
        WHERE "evidence" IS NOT NULL AND "id" NOT IN (
            SELECT MIN("id")
            FROM "attacks"
            WHERE "evidence" IS NOT NULL
            GROUP BY "source_ip", "destination_ip", "username", "password",
                     "attack_timestamp", "attack_type",
                     TRIM("evidence", ' ' || CHAR(9) || CHAR(10) || CHAR(13))
        );
        UPDATE "attacks"
        SET "evidence" = TRIM("evidence", ' ' || CHAR(9) || CHAR(10) || CHAR(13))
        WHERE "evidence" IS NOT NULL;
    """)


def migration_6(cur: sqlite3.Cursor) -> None:
    """Move the flat table into dictionary tables plus an _attacks fact table."""
    for index in _FLAT_INDEXES:
        cur.execute(f'DROP INDEX IF EXISTS "{index}"')
    _drop_views(cur, ALL_VIEWS)

    run_script(cur, """
        ALTER TABLE "attacks" RENAME TO "attacks_old";

        CREATE TABLE "_dict_source_ips" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE TABLE "_dict_destination_ips" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE TABLE "_dict_usernames" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE TABLE "_dict_passwords" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE TABLE "_dict_attack_types" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE TABLE "_dict_evidences" (
            "id" INTEGER NOT NULL UNIQUE,
            "value" TEXT NOT NULL UNIQUE,
            PRIMARY KEY("id" AUTOINCREMENT)
        );

        CREATE TABLE "_attacks" (
            "id" INTEGER NOT NULL UNIQUE,
            "timestamp" INTEGER NOT NULL,
            "source_ip" INTEGER NOT NULL,
            "destination_ip" INTEGER NOT NULL,
            "username" INTEGER NOT NULL,
            "password" INTEGER NOT NULL,
            "attack_type" INTEGER NOT NULL,
            "evidence" INTEGER NOT NULL,
            FOREIGN KEY("source_ip") REFERENCES "_dict_source_ips"("id"),
            FOREIGN KEY("destination_ip") REFERENCES "_dict_destination_ips"("id"),
            FOREIGN KEY("username") REFERENCES "_dict_usernames"("id"),
            FOREIGN KEY("password") REFERENCES "_dict_passwords"("id"),
            FOREIGN KEY("attack_type") REFERENCES "_dict_attack_types"("id"),
            FOREIGN KEY("evidence") REFERENCES "_dict_evidences"("id"),
            PRIMARY KEY("id" AUTOINCREMENT)
        );
        CREATE UNIQUE INDEX "idx_attacks_unique" ON "_attacks" (
            "timestamp", "source_ip", "destination_ip",
            "username", "password", "attack_type", "evidence"
        );

        CREATE VIEW "attacks" AS
            SELECT
                "_attacks"."id",
                "_attacks"."timestamp",
                "_dict_source_ips"."value" AS "source_ip",
                "_dict_destination_ips"."value" AS "destination_ip",
                "_dict_usernames"."value" AS "username",
                "_dict_passwords"."value" AS "password",
                "_dict_attack_types"."value" AS "attack_type",
                "_dict_evidences"."value" AS "evidence"
            FROM "_attacks"
            JOIN "_dict_source_ips" ON "_attacks"."source_ip" = "_dict_source_ips"."id"
            JOIN "_dict_destination_ips" ON "_attacks"."destination_ip" = "_dict_destination_ips"."id"
            JOIN "_dict_usernames" ON "_attacks"."username" = "_dict_usernames"."id"
            JOIN "_dict_passwords" ON "_attacks"."password" = "_dict_passwords"."id"
            JOIN "_dict_attack_types" ON "_attacks"."attack_type" = "_dict_attack_types"."id"
            JOIN "_dict_evidences" ON "_attacks"."evidence" = "_dict_evidences"."id";

        -- Rows missing any part of the dedup key cannot be represented.
        DELETE FROM "attacks_old"
        WHERE
            "attack_timestamp" IS NULL OR
            "source_ip" IS NULL OR
            "destination_ip" IS NULL OR
            "username" IS NULL OR
            "password" IS NULL OR
            "attack_type" IS NULL OR
            "evidence" IS NULL;

        INSERT INTO "_dict_source_ips" ("value") SELECT DISTINCT "source_ip" FROM "attacks_old";
        INSERT INTO "_dict_destination_ips" ("value") SELECT DISTINCT "destination_ip" FROM "attacks_old";
        INSERT INTO "_dict_usernames" ("value") SELECT DISTINCT "username" FROM "attacks_old";
        INSERT INTO "_dict_passwords" ("value") SELECT DISTINCT "password" FROM "attacks_old";
        INSERT INTO "_dict_attack_types" ("value") SELECT DISTINCT "attack_type" FROM "attacks_old";
        INSERT INTO "_dict_evidences" ("value") SELECT DISTINCT "evidence" FROM "attacks_old";

        INSERT OR IGNORE INTO "_attacks" (
            "timestamp", "source_ip", "destination_ip",
            "username", "password", "attack_type", "evidence"
        )
        SELECT
            "attack_timestamp",
            (SELECT "id" FROM "_dict_source_ips" WHERE "value" = "attacks_old"."source_ip"),
            (SELECT "id" FROM "_dict_destination_ips" WHERE "value" = "attacks_old"."destination_ip"),
            (SELECT "id" FROM "_dict_usernames" WHERE "value" = "attacks_old"."username"),
            (SELECT "id" FROM "_dict_passwords" WHERE "value" = "attacks_old"."password"),
            (SELECT "id" FROM "_dict_attack_types" WHERE "value" = "attacks_old"."attack_type"),
            (SELECT "id" FROM "_dict_evidences" WHERE "value" = "attacks_old"."evidence")
        FROM "attacks_old"
        ORDER BY "attacks_old"."id";

        DROP TABLE "attacks_old";
    """)
    _create_views(cur, ALL_VIEWS, ts="timestamp")


MIGRATIONS: list[Migration] = [
    Migration(1, "flat attacks table", migration_1),
    Migration(2, "deduplicate attacks", migration_2),
    Migration(3, "analysis views and reports", migration_3),
    Migration(4, "top logins report", migration_4),
    Migration(5, "trim evidence", migration_5),
    Migration(6, "dictionary-normalised storage", migration_6),
]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def validate_chain(migrations: Sequence[Migration]) -> None:
    """Raise MigrationError unless versions are positive and strictly increasing."""
    previous = 0
    for migration in migrations:
        if migration.version <= previous:
            raise MigrationError(
                f"migration versions must be positive and strictly increasing "
                f"(v{migration.version} follows v{previous})"
            )
        previous = migration.version


def latest_version(migrations: Sequence[Migration] | None = None) -> int:
    chain = MIGRATIONS if migrations is None else migrations
    return chain[-1].version if chain else 0


def current_version(db: Database) -> int:
    with db.lock:
        return db.user_version


def apply_migrations(
    db: Database, migrations: Sequence[Migration] | None = None
) -> list[int]:
    """
    Bring *db* up to the newest migration; return the versions applied.

    Each step is one transaction that also advances user_version. The first
    failing step is rolled back and raised as MigrationError; steps before
    it stay committed. Runs single-threaded before the server starts.
    """
    chain = MIGRATIONS if migrations is None else migrations
    validate_chain(chain)

    version = current_version(db)
    logger.info("Current DB version: %d", version)
    if version > latest_version(chain):
        logger.warning(
            "Database version %d is newer than this release knows (%d)",
            version, latest_version(chain),
        )

    applied: list[int] = []
    for migration in chain:
        if migration.version <= version:
            continue
        logger.info("Migrating database to version %d (%s) …", migration.version, migration.description)
        try:
            with db.lock, db.transaction() as cur:
                migration.apply(cur)
                db.set_user_version(cur, migration.version)
        except Exception as exc:
            logger.error("Migration v%d FAILED: %s — rolled back", migration.version, exc)
            raise MigrationError(
                f"could not apply migration to version {migration.version}: {exc}"
            ) from exc
        logger.info("Successfully migrated database to version %d", migration.version)
        version = migration.version
        applied.append(migration.version)

    if not applied:
        logger.debug("No pending migrations (current schema version=%d)", version)
        return applied

    logger.info("Running VACUUM to shrink the database file …")
    try:
        with db.lock:
            db.vacuum()
    except sqlite3.Error as exc:
        logger.error("Failed to run VACUUM: %s", exc)
    return applied
