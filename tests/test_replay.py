# tests/test_replay.py
"""Replay cache: check-and-set atomicity, expiry, capacity."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from dpop_guard.replay import ReplayCache

from tests.conftest import FakeClock


class TestCheckAndSet:
    def test_first_wins_second_fails(self):
        cache = ReplayCache(capacity=10)
        assert cache.check_and_set("jti-1") is True
        assert cache.check_and_set("jti-1") is False
        assert cache.seen("jti-1")
        assert not cache.seen("jti-2")

    def test_record_then_seen(self):
        cache = ReplayCache(capacity=10)
        cache.record("a")
        assert cache.seen("a")
        assert cache.check_and_set("a") is False

    def test_concurrent_same_jti_single_winner(self):
        cache = ReplayCache(capacity=1000)
        barrier = threading.Barrier(32)

        def attempt(_):
            barrier.wait()
            return cache.check_and_set("contested")

        with ThreadPoolExecutor(max_workers=32) as pool:
            results = list(pool.map(attempt, range(32)))

        assert results.count(True) == 1
        assert results.count(False) == 31

    def test_concurrent_distinct_jti_all_accepted(self):
        cache = ReplayCache(capacity=10000)
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda i: cache.check_and_set(f"jti-{i}"), range(2000)))
        assert all(results)
        assert len(cache) == 2000


class TestExpiry:
    def test_entry_expires_after_ttl_from_issuance(self):
        clock = FakeClock()
        cache = ReplayCache(capacity=10, ttl_seconds=600, clock=clock)
        cache.record("x", issued_at=clock() - 100)

        clock.advance(500)
        # still live at exactly iat + ttl
        assert cache.seen("x")

        clock.advance(1)
        assert not cache.seen("x")

    def test_future_issued_at_counts_from_issuance(self):
        clock = FakeClock()
        cache = ReplayCache(capacity=10, ttl_seconds=600, clock=clock)
        cache.record("x", issued_at=clock() + 300)

        # the proof still verifies at now + 600 (iat + skew), so the jti must be held
        clock.advance(600)
        assert cache.check_and_set("x", issued_at=clock() - 300) is False

        clock.advance(300)
        assert cache.seen("x")
        clock.advance(1)
        assert not cache.seen("x")

    def test_purge_expired(self):
        clock = FakeClock()
        cache = ReplayCache(capacity=10, ttl_seconds=60, clock=clock)
        cache.record("old")
        clock.advance(30)
        cache.record("new")
        clock.advance(30)
        assert cache.purge_expired() == 0

        clock.advance(1)
        assert cache.purge_expired() == 1
        assert len(cache) == 1
        assert cache.seen("new")


class TestCapacity:
    def test_evict_drops_oldest(self):
        cache = ReplayCache(capacity=3, overflow="evict")
        for jti in ("a", "b", "c", "d"):
            cache.record(jti)

        assert len(cache) == 3
        assert not cache.seen("a")
        assert all(cache.seen(j) for j in ("b", "c", "d"))

    def test_clear_mode_keeps_only_trigger(self):
        cache = ReplayCache(capacity=3, overflow="clear")
        for jti in ("a", "b", "c", "d"):
            cache.record(jti)

        assert len(cache) == 1
        assert cache.seen("d")
        assert not cache.seen("a")

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            ReplayCache(capacity=0)
        with pytest.raises(ValueError):
            ReplayCache(capacity=10, overflow="lru")
