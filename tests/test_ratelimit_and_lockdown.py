from types import SimpleNamespace

import pytest

from toolspec_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker, StorageLockdownError
from toolspec_gateway.ratelimit import RateLimiter, parse_rate_limit


@pytest.mark.parametrize(
    "spec,expected",
    [("10/s", (10.0, 10.0)), ("60/m", (60.0, 1.0)), ("3600/h", (3600.0, 1.0))],
)
def test_parse_rate_limit(spec, expected):
    assert parse_rate_limit(spec) == expected


@pytest.mark.parametrize("spec", ["", "10", "0/m", "5/fortnight"])
def test_parse_rate_limit_rejects_bad_specs(spec):
    with pytest.raises(ValueError):
        parse_rate_limit(spec)


def test_rate_limiter_is_per_key():
    limiter = RateLimiter(capacity=2, refill_rate_per_sec=0.001)
    assert limiter.allow("ip:a")
    assert limiter.allow("ip:a")
    assert not limiter.allow("ip:a")
    assert limiter.allow("ip:b")


def test_rate_limiter_key_table_is_capped():
    limiter = RateLimiter(capacity=1, refill_rate_per_sec=1, max_keys=1)
    assert limiter.allow("ip:a")
    assert not limiter.allow("ip:b")


def test_full_key_table_admits_new_key_once_old_buckets_refill(monkeypatch):
    import toolspec_gateway.ratelimit as ratelimit_mod

    clock = [1000.0]
    monkeypatch.setattr(ratelimit_mod, "time", SimpleNamespace(monotonic=lambda: clock[0]))

    limiter = RateLimiter(capacity=1, refill_rate_per_sec=1, max_keys=2)
    assert limiter.allow("ip:a")
    assert limiter.allow("ip:b")
    assert not limiter.allow("ip:c")

    clock[0] += 5.0
    assert limiter.allow("ip:c")
    assert len(limiter) == 2


def test_full_key_table_keeps_limited_buckets(monkeypatch):
    import toolspec_gateway.ratelimit as ratelimit_mod

    clock = [1000.0]
    monkeypatch.setattr(ratelimit_mod, "time", SimpleNamespace(monotonic=lambda: clock[0]))

    limiter = RateLimiter(capacity=2, refill_rate_per_sec=1, max_keys=2)
    assert limiter.allow("ip:a")
    assert limiter.allow("ip:a")
    assert limiter.allow("ip:b")

    clock[0] += 1.0
    # ip:b is back to capacity, ip:a is not.
    assert limiter.allow("ip:c")
    assert limiter.allow("ip:a")
    assert not limiter.allow("ip:a")


def test_breaker_trips_after_threshold():
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=2, lockdown_seconds=60))
    breaker.record_failure()
    assert not breaker.is_lockdown_active()
    breaker.record_failure()
    assert breaker.is_lockdown_active()
    with pytest.raises(StorageLockdownError):
        breaker.raise_if_lockdown()


def test_breaker_ignores_unrelated_operational_errors():
    breaker = DbCircuitBreaker(CircuitBreakerConfig())
    assert breaker.should_treat_operational_error_as_failure("database is locked")
    assert not breaker.should_treat_operational_error_as_failure("no such table: installs")

    strict = DbCircuitBreaker(CircuitBreakerConfig(error_strict=True))
    assert strict.should_treat_operational_error_as_failure("no such table: installs")


def test_breaker_config_from_env(monkeypatch):
    monkeypatch.setenv("TOOLSPEC_DB_FAILURE_THRESHOLD", "0")
    monkeypatch.setenv("TOOLSPEC_DB_LOCKDOWN_SECONDS", "junk")
    monkeypatch.setenv("TOOLSPEC_DB_CONNECT_TIMEOUT_SECONDS", "-1")
    config = CircuitBreakerConfig.from_env()
    assert config.failure_threshold == 1
    assert config.lockdown_seconds == CircuitBreakerConfig.lockdown_seconds
    assert config.connect_timeout_seconds == 0.01
