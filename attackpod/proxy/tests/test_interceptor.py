"""
tests/test_interceptor.py

Tests for ingest/interceptor.py — route matching and submission outcomes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from attackpod.proxy.ingest.interceptor import AttackInterceptor
from attackpod.proxy.metrics import ProxyMetrics
from attackpod.proxy.models import IngestOutcome
from attackpod.proxy.storage.database import Database
from attackpod.proxy.storage.dedup import DedupGuard
from attackpod.proxy.storage.migrations import apply_migrations


@pytest.fixture
def db():
    d = Database(":memory:")
    apply_migrations(d)
    yield d
    d.close()


@pytest.fixture
def metrics():
    return ProxyMetrics()


@pytest.fixture
def interceptor(db, metrics):
    return AttackInterceptor(DedupGuard(db), metrics=metrics)


def body(**overrides) -> bytes:
    data = {
        "source_ip": "1.2.3.4",
        "destination_ip": "10.0.0.1",
        "username": "root",
        "password": "123456",
        "attack_timestamp": "2024-01-01T10:00:00Z",
        "evidence": "SSH-2.0-test",
        "attack_type": "ssh-bruteforce",
        "test_mode": False,
    }
    data.update(overrides)
    return json.dumps(data).encode()


def stored(db: Database) -> int:
    return db.execute('SELECT COUNT(*) FROM "_attacks"').fetchone()[0]


class TestMatches:

    def test_submission_route(self):
        assert AttackInterceptor.matches("POST", "/add_attack")

    @pytest.mark.parametrize("method,path", [
        ("GET", "/add_attack"),
        ("PUT", "/add_attack"),
        ("post", "/add_attack"),
        ("POST", "/add_attack/"),
        ("POST", "/Add_Attack"),
        ("POST", "/api/add_attack"),
        ("POST", "/check_ip"),
    ])
    def test_everything_else(self, method, path):
        assert not AttackInterceptor.matches(method, path)


class TestHandle:

    def test_new_attack_inserted(self, db, metrics, interceptor):
        assert interceptor.handle(body()) is IngestOutcome.INSERTED
        assert stored(db) == 1
        assert metrics.attacks_inserted.value == 1

    def test_duplicate(self, db, metrics, interceptor):
        interceptor.handle(body())
        assert interceptor.handle(body()) is IngestOutcome.DUPLICATE
        assert stored(db) == 1
        assert metrics.attacks_duplicate.value == 1

    def test_evidence_trimmed_before_dedup(self, db, interceptor):
        interceptor.handle(body(evidence="SSH-2.0-test"))
        assert interceptor.handle(body(evidence=" SSH-2.0-test\r\n")) is IngestOutcome.DUPLICATE
        assert stored(db) == 1

    def test_test_mode_not_recorded(self, db, metrics, interceptor):
        assert interceptor.handle(body(test_mode=True)) is IngestOutcome.TEST_MODE
        assert stored(db) == 0
        assert metrics.attacks_test_mode.value == 1

    @pytest.mark.parametrize("raw", [
        body(attack_timestamp=None),
        json.dumps({"source_ip": "1.2.3.4", "username": "root"}).encode(),
    ])
    def test_missing_timestamp_recorded_at_zero_time(self, db, interceptor, raw):
        assert interceptor.handle(raw) is IngestOutcome.INSERTED
        ts = db.execute('SELECT "timestamp" FROM "_attacks"').fetchone()[0]
        assert ts == -62135596800000

    def test_timestamp_at_end_of_range(self, db, interceptor):
        raw = body(attack_timestamp="9999-12-31T23:59:59-05:00")
        assert interceptor.handle(raw) is IngestOutcome.INSERTED
        ts = db.execute('SELECT "timestamp" FROM "_attacks"').fetchone()[0]
        assert ts == 253402318799000

    @pytest.mark.parametrize("stamp", ["0001-01-01T00:00:00", "9999-12-31T23:59:59"])
    def test_naive_timestamp_at_range_edges(self, interceptor, stamp):
        outcome = interceptor.handle(body(attack_timestamp=stamp))
        assert outcome in (IngestOutcome.INSERTED, IngestOutcome.DECODE_ERROR)

    def test_unexpected_error_swallowed(self, metrics, interceptor):
        with patch(
            "attackpod.proxy.ingest.interceptor.decode_attack",
            side_effect=OverflowError("date value out of range"),
        ):
            assert interceptor.handle(body()) is IngestOutcome.STORAGE_ERROR
        assert metrics.storage_errors.value == 1

    @pytest.mark.parametrize("raw", [b"", b"{not json", body(username=7), body(attack_timestamp="soon")])
    def test_malformed_body(self, db, metrics, interceptor, raw):
        assert interceptor.handle(raw) is IngestOutcome.DECODE_ERROR
        assert stored(db) == 0
        assert metrics.decode_errors.value == 1

    def test_storage_error_swallowed(self, metrics):
        guard = MagicMock()
        guard.submit_if_new.side_effect = sqlite3.OperationalError("disk I/O error")
        interceptor = AttackInterceptor(guard, metrics=metrics)
        assert interceptor.handle(body()) is IngestOutcome.STORAGE_ERROR
        assert metrics.storage_errors.value == 1


class TestLogging:

    def test_insert_logged(self, interceptor, caplog):
        with caplog.at_level(logging.INFO, logger="attackpod.proxy.ingest.interceptor"):
            interceptor.handle(body())
        assert "From: 1.2.3.4" in caplog.text
        assert "User: root" in caplog.text
        assert "Pass: 123456" in caplog.text

    def test_duplicate_silent_by_default(self, interceptor, caplog):
        interceptor.handle(body())
        with caplog.at_level(logging.DEBUG, logger="attackpod.proxy.ingest.interceptor"):
            interceptor.handle(body())
        assert "duplicate" not in caplog.text

    def test_duplicate_logged_in_debug_mode(self, db, caplog):
        interceptor = AttackInterceptor(DedupGuard(db), debug_log=True)
        interceptor.handle(body())
        with caplog.at_level(logging.DEBUG, logger="attackpod.proxy.ingest.interceptor"):
            interceptor.handle(body())
        assert "Skipping duplicate attack entry from 1.2.3.4" in caplog.text

    def test_decode_error_logged(self, interceptor, caplog):
        with caplog.at_level(logging.ERROR, logger="attackpod.proxy.ingest.interceptor"):
            interceptor.handle(b"{")
        assert "Failed to decode attack data" in caplog.text
