"""
storage/dictionary.py

Dictionary encoding for the categorical attack fields.

Every distinct source IP, username, password, … is stored once in its own
_dict_* table and referenced from _attacks by a surrogate id. Ids come from
AUTOINCREMENT columns, so an id is never handed out twice even if rows are
later removed by a migration.
"""

from __future__ import annotations

import sqlite3

# Field name → dictionary table. Identifiers cannot be bound as parameters,
# so only names from this mapping ever reach an SQL string.
DICTIONARY_TABLES: dict[str, str] = {
    "source_ip": "_dict_source_ips",
    "destination_ip": "_dict_destination_ips",
    "username": "_dict_usernames",
    "password": "_dict_passwords",
    "attack_type": "_dict_attack_types",
    "evidence": "_dict_evidences",
}


def dictionary_table(field: str) -> str:
    try:
        return DICTIONARY_TABLES[field]
    except KeyError:
        raise KeyError(f"no dictionary table for field {field!r}") from None


class DictionaryStore:
    """
    Resolves categorical values to stable integer ids.

    resolve() writes, so it must run on a cursor inside the caller's open
    transaction; DedupGuard does this while holding the write lock.
    """

    def __init__(self, cur: sqlite3.Cursor) -> None:
        self._cur = cur

    def resolve(self, field: str, value: str) -> int:
        """Return the id for *value*, inserting it on first sight."""
        table = dictionary_table(field)
        self._cur.execute(
            f'INSERT OR IGNORE INTO "{table}" ("value") VALUES (?)', (value,)
        )
        if self._cur.rowcount == 1:
            return int(self._cur.lastrowid)
        found = self.lookup(field, value)
        if found is None:
            # INSERT OR IGNORE only skips on a conflicting value
            raise sqlite3.IntegrityError(
                f"value vanished from {table} during resolution"
            )
        return found

    def lookup(self, field: str, value: str) -> int | None:
        """Return the id for *value* without inserting, or None."""
        table = dictionary_table(field)
        row = self._cur.execute(
            f'SELECT "id" FROM "{table}" WHERE "value" = ?', (value,)
        ).fetchone()
        return int(row[0]) if row else None
