"""
storage/repository.py

Read-only access to recorded attacks.

Everything here reads the "attacks" view (the fact table joined back to the
dictionaries) or one of the report views created by the migrations, so
results always reflect the underlying tables at query time.
"""

from __future__ import annotations

import logging
from typing import Any

from .database import Database
from .migrations import ALL_VIEWS

logger = logging.getLogger(__name__)

REPORT_VIEWS: tuple[str, ...] = tuple(name for name, _ in ALL_VIEWS)


class AttackRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ==================================================================
    # Attacks
    # ==================================================================

    def count_attacks(self) -> int:
        with self._db.lock:
            row = self._db.execute('SELECT COUNT(*) FROM "_attacks"').fetchone()
        return row[0] if row else 0

    def get_attacks(
        self,
        limit: int = 100,
        offset: int = 0,
        source_ip: str | None = None,
        username: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict]:
        """Return reconstituted attack rows, newest first."""
        where, params = self._build_where(
            source_ip=source_ip, username=username, since_ms=since_ms
        )
        sql = f"""
            SELECT * FROM "attacks"
            {where}
            ORDER BY "timestamp" DESC, "id" DESC
            LIMIT ? OFFSET ?
        """
        params.extend([min(limit, 500), offset])
        with self._db.lock:
            rows = self._db.execute(sql, tuple(params)).fetchall()
        return [dict(r) for r in rows]

    # ==================================================================
    # Reports
    # ==================================================================

    def list_reports(self) -> list[str]:
        """Report views present in this database, in creation order."""
        with self._db.lock:
            present = self._db.object_names("view")
        return [name for name in REPORT_VIEWS if name in present]

    def get_report(self, name: str, limit: int | None = None) -> list[dict]:
        """Return the rows of report view *name*."""
        if name not in REPORT_VIEWS:
            raise KeyError(f"unknown report {name!r}")
        sql = f'SELECT * FROM "{name}"'
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._db.lock:
            rows = self._db.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    # ==================================================================
    # Internal helpers
    # ==================================================================

    @staticmethod
    def _build_where(
        source_ip: str | None,
        username: str | None,
        since_ms: int | None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if source_ip is not None:
            clauses.append('"source_ip" = ?')
            params.append(source_ip)
        if username is not None:
            clauses.append('"username" = ?')
            params.append(username)
        if since_ms is not None:
            clauses.append('"timestamp" >= ?')
            params.append(since_ms)
        where = "WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params
