"""
ToolSpec gateway store.

SQLite persistence for installs, review submissions and the read-only review
catalog.

Storage properties:
- WAL mode plus `busy_timeout` so concurrent requests queue instead of failing.
- Every connection goes through `DbCircuitBreaker`; repeated OperationalErrors
  open a lockdown window and callers get `TransientStorageError` (503,
  retryable). Nothing in this module fabricates a success result.
- Idempotency is enforced by the UNIQUE constraint on
  `review_submissions.idempotency_key` and a single conditional insert. There
  is no read-then-write path.
- `installs.revoked_at` and `installs.first_meaningful_submission_at` are
  written with `... WHERE <col> IS NULL`, so concurrent writers converge on
  the first value.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .errors import TransientStorageError
from .lockdown import DbCircuitBreaker, StorageLockdownError
from .validation import ReviewSubmission

logger = logging.getLogger("toolspec_gateway.store")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def new_review_id() -> str:
    return f"rev_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class InstallRecord:
    install_id: str
    secret_sha256: str
    secret_version: int
    created_at: str
    revoked_at: Optional[str] = None
    first_meaningful_submission_at: Optional[str] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass(frozen=True)
class StoreResult:
    review_id: str
    validated_tool_use_count: int
    duplicate: bool


class ToolSpecStore:
    """Persistent storage for gateway state."""

    def __init__(self, db_path: str = "toolspec_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = "DEFERRED"):
        """Connection wrapper with circuit breaker.

        Commits on clean exit, rolls back on error. OperationalErrors count
        against the breaker and surface as TransientStorageError.
        """
        try:
            self.circuit.raise_if_lockdown()
        except StorageLockdownError as e:
            raise TransientStorageError(details={"reason": "lockdown_active", "op": op_name}) from e

        timeout = float(self.circuit.config.connect_timeout_seconds)
        try:
            conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=isolation_level)
            try:
                conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
                with conn:
                    yield conn
            finally:
                conn.close()
            self.circuit.record_success()
        except sqlite3.OperationalError as e:
            if self.circuit.should_treat_operational_error_as_failure(str(e)):
                self.circuit.record_failure(e)
            logger.warning("store operation %s failed: %s", op_name, e)
            raise TransientStorageError(details={"reason": "operational_error", "op": op_name}) from e

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS installs (
                install_id TEXT PRIMARY KEY,
                secret_sha256 TEXT NOT NULL,
                secret_version INTEGER NOT NULL DEFAULT 1,
                created_at_utc TEXT NOT NULL,
                revoked_at_utc TEXT,
                first_meaningful_submission_at_utc TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS review_submissions (
                review_id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL UNIQUE,
                install_id TEXT,
                tool_slug TEXT NOT NULL,
                agent_model TEXT NOT NULL,
                submission_scope TEXT,
                observed_tool_count INTEGER NOT NULL DEFAULT 0,
                validated_tool_use_count INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'submitted',
                submission_json TEXT NOT NULL,
                submitted_at_utc TEXT NOT NULL
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_review_submissions_install ON review_submissions (install_id)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS tool_reviews (
                tool_slug TEXT PRIMARY KEY,
                review_json TEXT NOT NULL,
                is_synthetic INTEGER NOT NULL DEFAULT 0,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Installs
    # ---------------------------

    def insert_install(self, install_id: str, secret_sha256: str, secret_version: int = 1) -> InstallRecord:
        created = _iso(_now_utc())
        with self._db("insert_install") as conn:
            conn.execute(
                "INSERT INTO installs (install_id, secret_sha256, secret_version, created_at_utc) VALUES (?, ?, ?, ?)",
                (install_id, secret_sha256, int(secret_version), created),
            )
        return InstallRecord(
            install_id=install_id,
            secret_sha256=secret_sha256,
            secret_version=int(secret_version),
            created_at=created,
        )

    def get_install(self, install_id: str) -> Optional[InstallRecord]:
        with self._db("get_install") as conn:
            row = conn.execute(
                "SELECT install_id, secret_sha256, secret_version, created_at_utc, revoked_at_utc, "
                "first_meaningful_submission_at_utc FROM installs WHERE install_id = ?",
                (install_id,),
            ).fetchone()
        if not row:
            return None
        return InstallRecord(
            install_id=row[0],
            secret_sha256=row[1],
            secret_version=int(row[2]),
            created_at=row[3],
            revoked_at=row[4],
            first_meaningful_submission_at=row[5],
        )

    def revoke_install(self, install_id: str) -> bool:
        """Set `revoked_at` once. Returns whether the install exists."""
        with self._db("revoke_install", isolation_level="IMMEDIATE") as conn:
            cur = conn.execute(
                "UPDATE installs SET revoked_at_utc = ? WHERE install_id = ? AND revoked_at_utc IS NULL",
                (_iso(_now_utc()), install_id),
            )
            if cur.rowcount == 1:
                return True
            row = conn.execute("SELECT 1 FROM installs WHERE install_id = ?", (install_id,)).fetchone()
            return row is not None

    def has_any_submission(self, install_id: str) -> bool:
        with self._db("has_any_submission") as conn:
            row = conn.execute(
                "SELECT 1 FROM review_submissions WHERE install_id = ? LIMIT 1",
                (install_id,),
            ).fetchone()
        return row is not None

    # ---------------------------
    # Submissions
    # ---------------------------

    def store_submission(self, submission: ReviewSubmission) -> StoreResult:
        """Persist a validated submission exactly once per idempotency key.

        The first writer under a key is authoritative: later calls with the
        same key get the winner's review_id and count with duplicate=True and
        never touch the install row.
        """
        review_id = new_review_id()
        now = _iso(_now_utc())
        count = submission.validated_tool_use_count

        with self._db("store_submission", isolation_level="IMMEDIATE") as conn:
            cur = conn.execute(
                """
                INSERT INTO review_submissions (
                    review_id, idempotency_key, install_id, tool_slug, agent_model,
                    submission_scope, observed_tool_count, validated_tool_use_count,
                    status, submission_json, submitted_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'submitted', ?, ?)
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (
                    review_id,
                    submission.idempotency_key,
                    submission.install_id,
                    submission.tool_slug,
                    submission.agent_model,
                    submission.submission_scope,
                    len(submission.observed_tool_slugs),
                    count,
                    json.dumps(submission.to_dict(), sort_keys=True),
                    now,
                ),
            )

            if cur.rowcount == 1:
                if submission.install_id and submission.is_meaningful:
                    conn.execute(
                        "UPDATE installs SET first_meaningful_submission_at_utc = ? "
                        "WHERE install_id = ? AND first_meaningful_submission_at_utc IS NULL",
                        (now, submission.install_id),
                    )
                return StoreResult(review_id=review_id, validated_tool_use_count=count, duplicate=False)

            row = conn.execute(
                "SELECT review_id, validated_tool_use_count FROM review_submissions WHERE idempotency_key = ?",
                (submission.idempotency_key,),
            ).fetchone()

        if row is None:
            # Conflict reported but no winner visible: refuse to guess.
            raise TransientStorageError(details={"reason": "idempotency_winner_missing"})

        logger.info("duplicate submission for idempotency key; returning %s", row[0])
        return StoreResult(review_id=row[0], validated_tool_use_count=int(row[1]), duplicate=True)

    def get_submission_by_key(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        with self._db("get_submission_by_key") as conn:
            row = conn.execute(
                "SELECT review_id, install_id, validated_tool_use_count, submission_json, submitted_at_utc "
                "FROM review_submissions WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        if not row:
            return None
        return {
            "review_id": row[0],
            "install_id": row[1],
            "validated_tool_use_count": int(row[2]),
            "submission": json.loads(row[3]),
            "submitted_at_utc": row[4],
        }

    def count_submissions(self, install_id: Optional[str] = None) -> int:
        with self._db("count_submissions") as conn:
            if install_id is None:
                row = conn.execute("SELECT COUNT(*) FROM review_submissions").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM review_submissions WHERE install_id = ?",
                    (install_id,),
                ).fetchone()
        return int(row[0])

    # ---------------------------
    # Review catalog (read side)
    # ---------------------------

    def seed_reviews(self, reviews: Iterable[Dict[str, Any]]) -> int:
        """Insert catalog rows that do not exist yet. Returns rows inserted."""
        now = _iso(_now_utc())
        inserted = 0
        with self._db("seed_reviews", isolation_level="IMMEDIATE") as conn:
            for review in reviews:
                cur = conn.execute(
                    "INSERT INTO tool_reviews (tool_slug, review_json, is_synthetic, created_at_utc, updated_at_utc) "
                    "VALUES (?, ?, 1, ?, ?) ON CONFLICT (tool_slug) DO NOTHING",
                    (review["tool_slug"], json.dumps(review, sort_keys=True), now, now),
                )
                inserted += cur.rowcount
        return inserted

    def list_reviews(self) -> List[Dict[str, Any]]:
        with self._db("list_reviews") as conn:
            rows = conn.execute("SELECT review_json FROM tool_reviews ORDER BY tool_slug ASC").fetchall()
        return [json.loads(r[0]) for r in rows]

    def get_review(self, tool_slug: str) -> Optional[Dict[str, Any]]:
        with self._db("get_review") as conn:
            row = conn.execute(
                "SELECT review_json FROM tool_reviews WHERE tool_slug = ? LIMIT 1",
                (tool_slug,),
            ).fetchone()
        return json.loads(row[0]) if row else None
