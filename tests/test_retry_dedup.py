"""
Tests for the bounded retry policy and the DR de-duplication cache
"""

from datetime import timedelta

import pytest

from common.config import DedupSettings, RetrySettings
from common.dedup import TTLDedupCache
from common.exceptions import ConfigurationError, PersistenceTimeout
from common.retry import RetryPolicy

from conftest import FixedClock, at, run


class FlakyOperation:
    """Fails a fixed number of times, then succeeds"""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ============================================
# RetryPolicy
# ============================================

def test_backoff_sequence_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay_s=1.0, multiplier=2.0, max_delay_s=5.0)
    assert policy.delays() == [1.0, 2.0, 4.0, 5.0]


def test_from_settings():
    policy = RetryPolicy.from_settings(RetrySettings(max_attempts=4, backoff_base_s=0.5))
    assert policy.max_attempts == 4
    assert policy.base_delay_s == 0.5


def test_recovers_after_transient_failures():
    operation = FlakyOperation(2, PersistenceTimeout("save schedule", 5.0))
    sleep = RecordingSleep()
    result = run(RetryPolicy().run(operation, "save schedule", sleep=sleep))

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


def test_gives_up_after_max_attempts():
    operation = FlakyOperation(5, PersistenceTimeout("save schedule", 5.0))
    sleep = RecordingSleep()
    with pytest.raises(PersistenceTimeout):
        run(RetryPolicy(max_attempts=3).run(operation, "save schedule", sleep=sleep))
    assert operation.calls == 3


def test_non_recoverable_error_not_retried():
    operation = FlakyOperation(1, ConfigurationError("bad tariff"))
    sleep = RecordingSleep()
    with pytest.raises(ConfigurationError):
        run(RetryPolicy().run(operation, "load tariff", sleep=sleep))
    assert operation.calls == 1
    assert sleep.delays == []


# ============================================
# TTLDedupCache
# ============================================

def test_entries_expire_after_ttl():
    clock = FixedClock(at(12))
    cache = TTLDedupCache(ttl_s=3600, clock=clock)
    cache.put("evt-1", "result")

    clock.advance(minutes=59)
    assert cache.get("evt-1") == "result"
    assert "evt-1" in cache

    clock.advance(minutes=2)
    assert cache.get("evt-1") is None
    assert len(cache) == 0


def test_oldest_entry_evicted_when_full():
    clock = FixedClock(at(12))
    cache = TTLDedupCache(max_entries=2, clock=clock)
    for n in range(3):
        cache.put(f"evt-{n}", n)
        clock.advance(seconds=1)

    assert cache.get("evt-0") is None
    assert cache.get("evt-1") == 1
    assert cache.get("evt-2") == 2


def test_put_refreshes_entry():
    clock = FixedClock(at(12))
    cache = TTLDedupCache(ttl_s=60, clock=clock)
    cache.put("evt-1", "first")
    clock.advance(seconds=50)
    cache.put("evt-1", "second")
    clock.advance(seconds=50)
    assert cache.get("evt-1") == "second"


def test_cache_from_settings():
    cache = TTLDedupCache.from_settings(DedupSettings(ttl_s=10, max_entries=1))
    cache.put("a", 1)
    cache.put("b", 2)
    assert len(cache) == 1
    assert cache._ttl == timedelta(seconds=10)
