"""storage/__init__.py"""
from .database import Database
from .dedup import DedupGuard
from .dictionary import DICTIONARY_TABLES, DictionaryStore
from .migrations import MigrationError, apply_migrations
from .repository import AttackRepository

__all__ = [
    "Database",
    "DedupGuard",
    "DictionaryStore",
    "DICTIONARY_TABLES",
    "MigrationError",
    "apply_migrations",
    "AttackRepository",
]
