"""
proxy/models.py

Shared types passed between the interceptor, the storage layer and the app.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class KnownEndpoint(str, Enum):
    """Collector endpoints the AttackPod monitor calls."""

    CHECK_IP = "/check_ip"
    ADD_ATTACK = "/add_attack"


# Instant recorded for submissions whose attack_timestamp is null or absent.
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

# Categorical attack fields, each backed by its own dictionary table.
CATEGORICAL_FIELDS: tuple[str, ...] = (
    "source_ip",
    "destination_ip",
    "username",
    "password",
    "attack_type",
    "evidence",
)


@dataclass(frozen=True, slots=True)
class Attack:
    """One credential-harvesting attempt decoded from a submission body."""

    source_ip: str = ""
    destination_ip: str = ""
    username: str = ""
    password: str = ""
    attack_timestamp: datetime = ZERO_TIME
    """Timezone-aware instant; ZERO_TIME when the sensor sent null or nothing."""

    evidence: str = ""
    """Evidence text with surrounding whitespace stripped."""

    attack_type: str = ""
    test_mode: bool = False


class SubmitOutcome(str, Enum):
    """Result of DedupGuard.submit_if_new()."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


class IngestOutcome(str, Enum):
    """What the interceptor did with one submission body."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    TEST_MODE = "test_mode"
    DECODE_ERROR = "decode_error"
    STORAGE_ERROR = "storage_error"
