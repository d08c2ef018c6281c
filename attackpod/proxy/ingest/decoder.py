"""
ingest/decoder.py

Decodes a raw /add_attack request body into an Attack.

The payload schema is the one the AttackPod monitor posts:

    {"source_ip": "1.2.3.4", "destination_ip": "5.6.7.8",
     "username": "root", "password": "123456",
     "attack_timestamp": "2024-01-01T10:00:00Z",
     "evidence": "SSH-2.0-test", "attack_type": "ssh-bruteforce",
     "test_mode": false}

Strings are not coerced from other JSON types; a number where a string is
expected is a decode error. Missing fields fall back to their defaults (a null or absent
attack_timestamp becomes ZERO_TIME) and unknown keys are ignored.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from ..models import ZERO_TIME, Attack
from .timestamps import parse_attack_timestamp


class AttackPayload(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)

    source_ip: str = ""
    destination_ip: str = ""
    username: str = ""
    password: str = ""
    attack_timestamp: datetime | None = None
    evidence: str = ""
    attack_type: str = ""
    test_mode: bool = False

    @field_validator("attack_timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        if isinstance(v, datetime):
            return v
        return parse_attack_timestamp(v)

    @field_validator("evidence")
    @classmethod
    def strip_evidence(cls, v: str) -> str:
        return v.strip()

    def to_attack(self) -> Attack:
        return Attack(
            source_ip=self.source_ip,
            destination_ip=self.destination_ip,
            username=self.username,
            password=self.password,
            attack_timestamp=(
                ZERO_TIME if self.attack_timestamp is None else self.attack_timestamp
            ),
            evidence=self.evidence,
            attack_type=self.attack_type,
            test_mode=self.test_mode,
        )


def decode_attack(body: bytes) -> Attack:
    """
    Parse *body* as an attack submission.

    Raises pydantic.ValidationError on malformed JSON, wrong field types or
    an unparseable timestamp.
    """
    return AttackPayload.model_validate_json(body).to_attack()
