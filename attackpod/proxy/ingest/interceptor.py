"""
ingest/interceptor.py

Records attack submissions as they pass through the proxy.

The interceptor sees the same buffered body the forwarder sends upstream and
never raises: a malformed payload or a storage failure is logged and counted,
and the sensor still gets whatever the upstream answers.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from ..metrics import ProxyMetrics
from ..models import Attack, IngestOutcome, KnownEndpoint, SubmitOutcome
from ..storage.dedup import DedupGuard
from .decoder import decode_attack

logger = logging.getLogger(__name__)


class AttackInterceptor:
    """
    Args:
        guard:     DedupGuard writing into the attack store
        metrics:   counters shared with the rest of the app
        debug_log: log duplicate submissions (they are silent otherwise)
    """

    def __init__(
        self,
        guard: DedupGuard,
        metrics: ProxyMetrics | None = None,
        debug_log: bool = False,
    ) -> None:
        self._guard = guard
        self._metrics = metrics or ProxyMetrics()
        self._debug_log = debug_log

    @staticmethod
    def matches(method: str, path: str) -> bool:
        """True only for the exact submission route (case-sensitive)."""
        return method == "POST" and path == KnownEndpoint.ADD_ATTACK.value

    def handle(self, body: bytes) -> IngestOutcome:
        """Decode *body* and store the attack if it is new. Never raises."""
        try:
            return self._handle(body)
        except Exception:
            self._metrics.storage_errors.inc()
            logger.exception("Unexpected error while recording attack submission")
            return IngestOutcome.STORAGE_ERROR

    def _handle(self, body: bytes) -> IngestOutcome:
        try:
            attack = decode_attack(body)
        except ValidationError as exc:
            self._metrics.decode_errors.inc()
            logger.error(
                "Failed to decode attack data: %s",
                "; ".join(e["msg"] for e in exc.errors()),
            )
            return IngestOutcome.DECODE_ERROR

        if attack.test_mode:
            self._metrics.attacks_test_mode.inc()
            logger.debug("Test-mode attack from %s not recorded", attack.source_ip)
            return IngestOutcome.TEST_MODE

        try:
            outcome = self._guard.submit_if_new(attack)
        except Exception:
            self._metrics.storage_errors.inc()
            logger.exception("Failed to save attack from %s", attack.source_ip)
            return IngestOutcome.STORAGE_ERROR

        if outcome is SubmitOutcome.DUPLICATE:
            self._metrics.attacks_duplicate.inc()
            if self._debug_log:
                logger.debug("Skipping duplicate attack entry from %s", attack.source_ip)
            return IngestOutcome.DUPLICATE

        self._metrics.attacks_inserted.inc()
        _log_attack(attack)
        return IngestOutcome.INSERTED


def _log_attack(attack: Attack) -> None:
    moment = attack.attack_timestamp
    try:
        moment = moment.astimezone()
    except (OverflowError, OSError):
        pass  # outside the local zone's range; keep the sensor's offset
    when = moment.strftime("%d.%m. %H:%M:%S")
    logger.info(
        "%s | From: %-15s | User: %-22s | Pass: %s",
        when, attack.source_ip, attack.username, attack.password,
    )
