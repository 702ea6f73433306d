"""Operational statistics for the gateway.

Lightweight in-memory counters behind `GET /stats`. Counters reset on process
restart and are not a record of submissions; the store is.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    installs_created_total: int = 0
    installs_revoked_total: int = 0

    submissions_total: int = 0
    submissions_by_status: Dict[str, int] = field(default_factory=dict)  # submitted/duplicate/rejected

    access_checks_total: int = 0
    access_checks_by_outcome: Dict[str, int] = field(default_factory=dict)

    storage_unavailable_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_install_created(self) -> None:
        with self._lock:
            self._c.installs_created_total += 1

    def record_install_revoked(self) -> None:
        with self._lock:
            self._c.installs_revoked_total += 1

    def record_submission(self, status: str) -> None:
        with self._lock:
            self._c.submissions_total += 1
            self._inc_map(self._c.submissions_by_status, status or "unknown")

    def record_access_check(self, outcome: str) -> None:
        with self._lock:
            self._c.access_checks_total += 1
            self._inc_map(self._c.access_checks_by_outcome, outcome or "unknown")

    def record_storage_unavailable(self) -> None:
        with self._lock:
            self._c.storage_unavailable_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "installs_created_total": c.installs_created_total,
                "installs_revoked_total": c.installs_revoked_total,
                "submissions_total": c.submissions_total,
                "submissions_by_status": dict(c.submissions_by_status),
                "access_checks_total": c.access_checks_total,
                "access_checks_by_outcome": dict(c.access_checks_by_outcome),
                "storage_unavailable_total": c.storage_unavailable_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
