"""
storage/dedup.py

Exactly-once persistence of attacks.

Sensors retry submissions, so the same attack can arrive several times. An
attack is a duplicate when its 7-tuple (timestamp + six dictionary ids)
already exists in _attacks. Two guards enforce this:

  - Database.lock serialises the whole resolve → lookup → insert sequence
    inside one BEGIN IMMEDIATE transaction, so two requests in this process
    can never both see "no existing row".
  - The UNIQUE index idx_attacks_unique is the authoritative guard; a
    violation (e.g. another process writing the same file) is reported as a
    duplicate, not an error.
"""

from __future__ import annotations

import logging
import sqlite3

from ..ingest.timestamps import to_epoch_millis
from ..models import CATEGORICAL_FIELDS, Attack, SubmitOutcome
from .database import Database
from .dictionary import DictionaryStore

logger = logging.getLogger(__name__)

_FIND_SQL = """
    SELECT "id" FROM "_attacks"
    WHERE "timestamp" = ?
      AND "source_ip" = ?
      AND "destination_ip" = ?
      AND "username" = ?
      AND "password" = ?
      AND "attack_type" = ?
      AND "evidence" = ?
    LIMIT 1
"""

_INSERT_SQL = """
    INSERT INTO "_attacks" (
        "timestamp", "source_ip", "destination_ip",
        "username", "password", "attack_type", "evidence"
    ) VALUES (?, ?, ?, ?, ?, ?, ?)
"""

# Column order of the dedup key after the timestamp
_KEY_FIELDS = ("source_ip", "destination_ip", "username", "password", "attack_type", "evidence")


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


class DedupGuard:
    def __init__(self, db: Database) -> None:
        self._db = db

    def submit_if_new(self, attack: Attack) -> SubmitOutcome:
        """
        Store *attack* unless an identical one is already recorded.

        Raises ValueError for test-mode attacks, which are never stored, and
        sqlite3.Error for storage failures; in both cases nothing is written.
        """
        if attack.test_mode:
            raise ValueError("test-mode attacks are not persisted")

        timestamp_ms = to_epoch_millis(attack.attack_timestamp)

        with self._db.lock:
            try:
                with self._db.transaction() as cur:
                    store = DictionaryStore(cur)
                    ids = {f: store.resolve(f, getattr(attack, f)) for f in CATEGORICAL_FIELDS}
                    key = (timestamp_ms, *(ids[f] for f in _KEY_FIELDS))

                    if cur.execute(_FIND_SQL, key).fetchone() is not None:
                        return SubmitOutcome.DUPLICATE
                    cur.execute(_INSERT_SQL, key)
            except sqlite3.IntegrityError as exc:
                if not _is_unique_violation(exc):
                    raise
                logger.debug("Unique index rejected attack from %s", attack.source_ip)
                return SubmitOutcome.DUPLICATE

        return SubmitOutcome.INSERTED
