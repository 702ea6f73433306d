"""Storage circuit breaker.

The gateway relies on storage for idempotency, install gating and the review
catalog. If SQLite becomes locked or unresponsive we stop serving from it for a
short window instead of letting requests pile up behind `busy_timeout`.
Callers see `StorageLockdownError`, which the HTTP layer reports as a
retryable 503. There is no "pretend success" path.

Env:
- TOOLSPEC_DB_FAILURE_THRESHOLD: failures required to trip (default 3).
- TOOLSPEC_DB_LOCKDOWN_SECONDS: duration of the lockdown window (default 15).
- TOOLSPEC_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect/busy timeout (default 5).
- TOOLSPEC_DB_ERROR_STRICT: if '1', treat any OperationalError as failure.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional


class StorageLockdownError(RuntimeError):
    """Raised while the store is in LOCKDOWN due to degraded storage."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0
    error_strict: bool = False

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        failures = _get_int("TOOLSPEC_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _get_int("TOOLSPEC_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _get_float("TOOLSPEC_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        strict = os.getenv("TOOLSPEC_DB_ERROR_STRICT", "0").strip() in ("1", "true", "yes")

        # Clamp
        failures = max(1, failures)
        lockdown = max(1, lockdown)
        if timeout <= 0:
            timeout = 0.01

        return cls(
            failure_threshold=failures,
            lockdown_seconds=lockdown,
            connect_timeout_seconds=timeout,
            error_strict=strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and opens a lockdown window past a threshold."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until = 0.0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._lockdown_until = time.monotonic() + float(self.config.lockdown_seconds)
                self._failure_count = 0

    def should_treat_operational_error_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "locked" in msg or "busy" in msg or "unable to open" in msg or "disk i/o" in msg
