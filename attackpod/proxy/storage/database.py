"""
storage/database.py

SQLite connection handling for the attack store.

Design decisions:
  - Autocommit mode (isolation_level=None): every transaction is opened
    explicitly with BEGIN IMMEDIATE through transaction(), so migration steps
    and attack inserts are exactly one atomic unit each.
  - check_same_thread=False: the interceptor writes from worker threads. All
    access goes through Database.lock, so the one connection is never used by
    two threads at once.
  - WAL journal mode for concurrent external readers (sqlite3 CLI, notebooks)
    while the proxy writes.
  - busy_timeout=5000ms: spin-wait instead of failing with SQLITE_BUSY when an
    external reader holds a lock.
  - Foreign keys ON: _attacks rows reference the dictionary tables.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class Database:
    """
    Thin wrapper around a sqlite3 connection.

    Usage:
        db = Database("data/attacks.db")
        apply_migrations(db)
        with db.lock, db.transaction() as cur:
            cur.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = "data/attacks.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row  # rows behave like dicts
        self.lock = threading.Lock()
        self._configure()
        logger.info("Database opened — path=%r", db_path)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _configure(self) -> None:
        """Apply performance and safety PRAGMAs."""
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA synchronous=NORMAL")  # safe with WAL

    # ------------------------------------------------------------------
    # Schema version
    # ------------------------------------------------------------------

    @property
    def user_version(self) -> int:
        """Schema version stored in the database header."""
        row = self.conn.execute("PRAGMA user_version").fetchone()
        return int(row[0]) if row else 0

    def set_user_version(self, cur: sqlite3.Cursor, version: int) -> None:
        """Write the schema version on *cur* (inside the caller's transaction)."""
        # PRAGMA arguments cannot be bound parameters
        cur.execute(f"PRAGMA user_version = {int(version)}")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run the block inside BEGIN IMMEDIATE … COMMIT.

        Any exception rolls the whole block back and is re-raised. Callers
        that share the connection across threads must hold self.lock.
        """
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
            cur.execute("COMMIT")
        except BaseException:
            if self.conn.in_transaction:
                self.conn.rollback()
            raise
        finally:
            cur.close()

    def vacuum(self) -> None:
        """Rebuild the file to reclaim space; must run outside a transaction."""
        self.conn.execute("VACUUM")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the SQLite connection."""
        try:
            self.conn.close()
            logger.info("Database closed — path=%r", self.db_path)
        except sqlite3.Error as exc:
            logger.warning("Error closing database: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single parameterized statement."""
        return self.conn.execute(sql, params)

    def object_names(self, kind: str) -> set[str]:
        """Names of schema objects of one type ('table', 'view', 'index')."""
        rows = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = ?", (kind,)
        ).fetchall()
        return {r[0] for r in rows}
