"""
ingest/__init__.py

Public API for the ingest sub-package. The interceptor is imported from
ingest.interceptor directly because it depends on the storage layer.
"""

from .decoder import AttackPayload, decode_attack
from .timestamps import TimestampError, parse_attack_timestamp, to_epoch_millis

__all__ = [
    "AttackPayload",
    "decode_attack",
    "TimestampError",
    "parse_attack_timestamp",
    "to_epoch_millis",
]
