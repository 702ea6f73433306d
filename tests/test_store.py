import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

import toolspec_gateway.store as store_mod
from toolspec_gateway.errors import TransientStorageError
from toolspec_gateway.store import ToolSpecStore
from toolspec_gateway.validation import ReviewSubmission


def _submission(key="session_a", install_id=None, observed=("github",), evidence_count=2):
    return ReviewSubmission(
        tool_slug="__session__",
        agent_model="claude-sonnet-4.5",
        review_window_start_utc="2026-10-01T12:00:00.000Z",
        review_window_end_utc="2026-10-01T12:00:00.000Z",
        recommendation="caution",
        confidence="low",
        idempotency_key=key,
        install_id=install_id,
        submission_scope="all_observed",
        observed_tool_slugs=list(observed),
        reliable_tools=list(observed),
        unreliable_tools=[],
        hallucinated_tools=[],
        never_used_tools=[],
        behavioral_notes=["submitted_via_toolspec_cli"],
        failure_modes=[],
        evidence=[
            {"tool_call_id": f"{key}_{i}", "timestamp_utc": "2026-10-01T12:00:00.000Z"}
            for i in range(evidence_count)
        ],
    )


@pytest.fixture()
def store(tmp_path):
    return ToolSpecStore(db_path=str(tmp_path / "gw.db"))


def test_first_writer_wins_under_an_idempotency_key(store):
    first = store.store_submission(_submission(evidence_count=2))
    second = store.store_submission(_submission(evidence_count=5))

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.review_id == first.review_id
    assert second.validated_tool_use_count == 2
    assert store.count_submissions() == 1

    stored = store.get_submission_by_key("session_a")
    assert stored["review_id"] == first.review_id
    assert len(stored["submission"]["evidence"]) == 2


def test_concurrent_submissions_store_exactly_once(store):
    def _submit(_):
        return store.store_submission(_submission(key="session_race"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_submit, range(16)))

    assert sum(1 for r in results if not r.duplicate) == 1
    assert len({r.review_id for r in results}) == 1
    assert store.count_submissions() == 1


def test_first_meaningful_submission_is_set_once(store, monkeypatch):
    store.insert_install("ins_a", "digest")
    assert store.get_install("ins_a").first_meaningful_submission_at is None

    t0 = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(store_mod, "_now_utc", lambda: t0)
    store.store_submission(_submission(key="k1", install_id="ins_a"))
    assert store.get_install("ins_a").first_meaningful_submission_at == "2026-10-01T12:00:00Z"

    monkeypatch.setattr(store_mod, "_now_utc", lambda: t0 + timedelta(days=1))
    store.store_submission(_submission(key="k2", install_id="ins_a"))
    assert store.get_install("ins_a").first_meaningful_submission_at == "2026-10-01T12:00:00Z"
    assert store.count_submissions("ins_a") == 2


def test_placeholder_submission_does_not_activate(store):
    store.insert_install("ins_a", "digest")
    store.store_submission(_submission(key="k1", install_id="ins_a", observed=()))

    assert store.has_any_submission("ins_a")
    assert store.get_install("ins_a").first_meaningful_submission_at is None


def test_duplicate_never_runs_activation(store):
    store.insert_install("ins_a", "digest")
    store.store_submission(_submission(key="k1", install_id="ins_a", observed=()))

    replay = store.store_submission(_submission(key="k1", install_id="ins_a", observed=("github",)))
    assert replay.duplicate
    assert store.get_install("ins_a").first_meaningful_submission_at is None


def test_anonymous_and_unknown_install_submissions_are_stored(store):
    assert not store.store_submission(_submission(key="k1")).duplicate
    assert not store.store_submission(_submission(key="k2", install_id="ins_ghost")).duplicate
    assert store.get_install("ins_ghost") is None
    assert store.count_submissions() == 2


def test_revoke_is_set_once(store, monkeypatch):
    store.insert_install("ins_a", "digest")

    t0 = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(store_mod, "_now_utc", lambda: t0)
    assert store.revoke_install("ins_a") is True

    monkeypatch.setattr(store_mod, "_now_utc", lambda: t0 + timedelta(hours=1))
    assert store.revoke_install("ins_a") is True
    record = store.get_install("ins_a")
    assert record.revoked
    assert record.revoked_at == "2026-10-01T12:00:00Z"

    assert store.revoke_install("ins_missing") is False


def test_duplicate_install_id_is_rejected(store):
    store.insert_install("ins_a", "digest")
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_install("ins_a", "other")


def test_seed_reviews_is_idempotent(store):
    reviews = [
        {"tool_slug": "zeta", "tool_name": "Zeta"},
        {"tool_slug": "alpha", "tool_name": "Alpha"},
    ]
    assert store.seed_reviews(reviews) == 2
    assert store.seed_reviews(reviews + [{"tool_slug": "beta"}]) == 1
    assert [r["tool_slug"] for r in store.list_reviews()] == ["alpha", "beta", "zeta"]
    assert store.get_review("alpha")["tool_name"] == "Alpha"
    assert store.get_review("missing") is None


def test_storage_failure_trips_lockdown(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOLSPEC_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("TOOLSPEC_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("TOOLSPEC_DB_LOCKDOWN_SECONDS", "60")

    store = ToolSpecStore(db_path=str(tmp_path / "gw.db"))

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(TransientStorageError) as exc_info:
        store.store_submission(_submission())
    assert exc_info.value.details["reason"] == "operational_error"
    assert exc_info.value.http_status == 503
    assert exc_info.value.retryable

    # Once tripped, every store op fails closed for the lockdown window.
    with pytest.raises(TransientStorageError) as exc_info:
        store.get_install("ins_a")
    assert exc_info.value.details["reason"] == "lockdown_active"
    assert store.circuit.is_lockdown_active()
