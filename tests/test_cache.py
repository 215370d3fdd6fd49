"""Tests for the in-process cache layer."""

from __future__ import annotations

import os
import threading

import pytest

from ctxstore.cache import CacheLayer, Sweeper, process_memory_utilization


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(**kwargs) -> CacheLayer:
    kwargs.setdefault("cleanup_interval", 0)
    kwargs.setdefault("compression_interval", 0)
    kwargs.setdefault("memory_probe", lambda: 0.1)
    return CacheLayer(**kwargs)


class TestCacheBasics:
    def test_set_get_roundtrip_by_codec(self):
        cache = _cache()
        cache.set("b", b"\x00\x01")
        cache.set("s", "text")
        cache.set("j", {"a": [1, 2]})
        assert cache.get("b") == b"\x00\x01"
        assert cache.get("s") == "text"
        assert cache.get("j") == {"a": [1, 2]}

    def test_cached_values_are_copies(self):
        cache = _cache()
        value = {"a": [1]}
        cache.set("k", value)
        value["a"].append(2)
        assert cache.get("k") == {"a": [1]}

    def test_miss_returns_default(self):
        cache = _cache()
        assert cache.get("nope", "dflt") == "dflt"
        assert cache.misses == 1

    def test_delete_and_clear(self):
        cache = _cache()
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.clear() == 1
        assert cache.size() == 0
        assert cache.total_bytes == 0

    def test_rejects_unknown_priority(self):
        with pytest.raises(ValueError):
            _cache().set("k", 1, priority="urgent")


class TestEviction:
    def test_entry_cap_holds_under_overflow(self):
        cache = _cache(max_entries=10)
        for i in range(60):
            cache.set(f"k{i}", i)
        assert cache.size() == 10
        assert cache.evictions == 50
        assert cache.keys() == [f"k{i}" for i in range(50, 60)]

    def test_low_priority_evicted_first(self):
        cache = _cache(max_entries=3)
        cache.set("a", 1)
        cache.set("b", 2, priority="low")
        cache.set("c", 3)
        cache.set("d", 4)
        assert cache.keys() == ["a", "c", "d"]

    def test_high_priority_protected(self):
        cache = _cache(max_entries=3)
        cache.set("a", 1, priority="high")
        cache.set("b", 2)
        cache.set("c", 3)
        cache.set("d", 4)
        assert "a" in cache.keys()
        assert "b" not in cache.keys()

    def test_get_refreshes_recency(self):
        cache = _cache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.keys() == ["a", "c"]

    def test_byte_budget(self):
        cache = _cache(max_bytes=1000, compression_threshold=10_000)
        cache.set("a", b"x" * 600)
        cache.set("b", b"y" * 600)
        assert cache.keys() == ["b"]
        assert cache.total_bytes <= 1000

    def test_oversized_value_refused(self):
        cache = _cache(max_bytes=100, compression_threshold=10_000)
        assert cache.set("big", os.urandom(500)) is False
        assert cache.size() == 0


class TestCompression:
    def test_large_compressible_value_roundtrips(self):
        cache = _cache()
        payload = b"context line repeated " * 60_000
        assert len(payload) > 1024 * 1024
        cache.set("big", payload)
        assert cache.entry("big").compressed is True
        assert cache.entry("big").size < len(payload)
        assert cache.get("big") == payload

    def test_incompressible_value_stored_raw(self):
        cache = _cache(compression_threshold=1024)
        payload = os.urandom(64 * 1024)
        cache.set("rand", payload)
        assert cache.entry("rand").compressed is False
        assert cache.get("rand") == payload

    def test_sweep_compresses_uncompressed_entries(self):
        cache = _cache(compression_threshold=1024)
        text = "abc " * 10_000
        cache.set("k", text, compress=False)
        before = cache.total_bytes
        assert cache.sweep_compression() == 1
        assert cache.entry("k").compressed is True
        assert cache.total_bytes < before
        assert cache.get("k") == text


class TestExpiry:
    def test_ttl_expires_lazily(self):
        clock = FakeClock()
        cache = _cache(clock=clock)
        cache.set("k", 1, ttl=10)
        clock.now += 5
        assert cache.get("k") == 1
        clock.now += 6
        assert cache.get("k") is None
        assert cache.expirations == 1

    def test_sweep_expired(self):
        clock = FakeClock()
        cache = _cache(clock=clock, default_ttl=10)
        cache.set("a", 1)
        cache.set("b", 2, ttl=0)
        clock.now += 11
        assert cache.sweep_expired() == 1
        assert cache.keys() == ["b"]

    def test_sweep_skips_when_busy(self):
        cache = _cache()
        cache.set("k", 1, ttl=0.001)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with cache._lock:
                acquired.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        acquired.wait(5)
        try:
            assert cache.sweep_expired() == 0
        finally:
            release.set()
            t.join()


class TestTelemetry:
    def test_optimize_promotes_hot_and_demotes_idle(self):
        clock = FakeClock()
        cache = _cache(clock=clock)
        cache.set("hot", 1)
        cache.set("idle", 2)
        for _ in range(3):
            cache.get("hot")
        clock.now += 3601
        result = cache.optimize_cache()
        assert result == {"promoted": ["hot"], "demoted": ["idle"]}
        assert cache.entry("hot").priority == "high"
        assert cache.entry("idle").priority == "low"

    def test_force_cleanup_clears_under_pressure(self):
        cache = _cache(memory_probe=lambda: 0.95)
        cache.set("a", 1)
        cache.set("b", 2)
        result = cache.force_cleanup()
        assert result["cleared"] == 2
        assert cache.size() == 0

    def test_force_cleanup_keeps_entries_otherwise(self):
        cache = _cache(memory_probe=lambda: 0.5)
        cache.set("a", 1)
        assert cache.force_cleanup()["cleared"] == 0
        assert cache.size() == 1

    def test_performance_metrics(self):
        cache = _cache()
        cache.set("a", 1)
        for _ in range(9):
            cache.get("a")
        cache.get("missing")
        metrics = cache.get_performance_metrics()
        assert metrics["hit_rate"]["value"] == 0.9
        assert metrics["hit_rate"]["passed"] is True
        assert metrics["memory_footprint_mb"]["passed"] is True
        assert set(metrics) == {"hit_rate", "memory_footprint_mb", "retrieval_p95_ms", "all_passed"}

    def test_access_patterns(self):
        cache = _cache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        patterns = cache.access_patterns()
        assert patterns["hot"] == ["a"]
        assert patterns["cold"] == ["b"]

    def test_misses_on_unknown_keys_are_not_tracked(self):
        cache = _cache(max_entries=10)
        for i in range(5000):
            cache.get(f"missing-{i}")
        assert cache.misses == 5000
        assert cache.access_patterns()["tracked_keys"] == 0

    def test_tracked_patterns_stay_bounded(self):
        cache = _cache(max_entries=10)
        for i in range(500):
            cache.set(f"k{i}", i)
            cache.get(f"k{i}")
        assert cache.size() == 10
        assert cache.access_patterns()["tracked_keys"] <= cache.pattern_limit
        live = set(cache.keys())
        assert live <= set(cache.access_patterns()["patterns"])

    def test_miss_after_eviction_counts_against_key(self):
        cache = _cache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.access_patterns()["patterns"]["a"]["misses"] == 1

    def test_delete_forgets_pattern(self):
        cache = _cache()
        cache.set("a", 1)
        cache.get("a")
        cache.delete("a")
        assert "a" not in cache.access_patterns()["patterns"]

    def test_memory_limit_makes_cleanup_reachable(self):
        cache = _cache(memory_probe=None, memory_limit_mb=0.001)
        cache.set("a", 1)
        result = cache.force_cleanup()
        assert result["memory_utilization"] > 0.9
        assert result["cleared"] == 1

    def test_utilization_against_limit(self):
        assert process_memory_utilization(1) > 1.0
        assert 0.0 < process_memory_utilization() < 1.0


class TestSweeper:
    def test_runs_until_stopped(self):
        ran = threading.Event()
        sweeper = Sweeper("test", 0.01, ran.set)
        sweeper.start()
        try:
            assert ran.wait(2)
            assert sweeper.running
        finally:
            sweeper.stop()
        assert not sweeper.running

    def test_zero_interval_disables(self):
        sweeper = Sweeper("test", 0, lambda: None)
        sweeper.start()
        assert not sweeper.running

    def test_cache_start_stop(self):
        cache = CacheLayer(cleanup_interval=0.01, compression_interval=0.01, memory_probe=lambda: 0.1)
        cache.start()
        assert cache.running
        cache.stop()
        assert not cache.running
