"""
proxy/metrics.py

Lightweight thread-safe counters for the proxy and the attack recorder.
No external dependencies — uses Python's threading.Lock.

One ProxyMetrics instance is created per application and passed to the
components that update it:

    metrics = ProxyMetrics()
    metrics.attacks_inserted.inc()
    print(metrics.as_dict())
"""

import threading


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class ProxyMetrics:
    """Counters for one running proxy instance."""

    def __init__(self) -> None:
        # --- Forwarding ---
        self.requests_total: Counter = Counter()
        """Inbound requests seen by the catch-all route."""

        self.forwarded: Counter = Counter()
        """Requests that received a response from the upstream."""

        self.forward_errors: Counter = Counter()
        """Requests answered with 502 because the upstream failed."""

        self.suppressed: Counter = Counter()
        """Submissions answered locally in suppressed-submission mode."""

        # --- Recording ---
        self.attacks_inserted: Counter = Counter()
        self.attacks_duplicate: Counter = Counter()
        self.attacks_test_mode: Counter = Counter()
        self.decode_errors: Counter = Counter()
        self.storage_errors: Counter = Counter()

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            name: attr.value
            for name, attr in vars(self).items()
            if isinstance(attr, Counter)
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()
