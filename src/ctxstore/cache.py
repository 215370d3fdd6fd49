"""CacheLayer: bounded in-process cache in front of the record stores.

Entries are serialized on write (bytes stay bytes, str is UTF-8, anything
else is JSON), so cached values are detached copies and the byte budget is
exact. Values larger than the compression threshold are gzip-compressed
when that saves at least 20%.

Eviction is approximate-priority LRU: look at the oldest EVICTION_WINDOW
entries, evict the first "low" one, else the first that is not "high",
else the oldest.

Two background sweepers (TTL expiry, re-compression) run on their own
threads between start() and stop(). A sweep that finds the cache busy
skips that cycle.
"""

from __future__ import annotations

import gzip
import json
import logging
import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import psutil

if TYPE_CHECKING:
    from collections.abc import Callable

    from ctxstore.config import CacheConfig

logger = logging.getLogger("ctxstore.cache")

EVICTION_WINDOW = 10
MIN_COMPRESSION_SAVING = 0.2
HISTORY_LIMIT = 100
IDLE_DEMOTE_SECONDS = 3600
HOT_KEYS = 10
PATTERN_RETENTION = 4   # access patterns kept per cache slot
CLEAR_UTILIZATION = 0.9
PRIORITIES = ("low", "normal", "high")
_MB = 1024 * 1024


def process_memory_utilization(limit_bytes: int = 0) -> float:
    """Resident set size of this process as a fraction of limit_bytes.

    With no limit the denominator is total system memory, which a single
    process rarely approaches; set a limit to make the 90% escalation in
    force_cleanup reachable.
    """
    rss = psutil.Process().memory_info().rss
    return rss / (limit_bytes or psutil.virtual_memory().total)


def _encode(value: Any) -> tuple[bytes, str]:
    if isinstance(value, bytes | bytearray):
        return bytes(value), "bytes"
    if isinstance(value, str):
        return value.encode(), "text"
    return json.dumps(value, separators=(",", ":")).encode(), "json"


def _decode(data: bytes, codec: str) -> Any:
    if codec == "bytes":
        return data
    if codec == "text":
        return data.decode()
    return json.loads(data)


@dataclass
class CacheEntry:
    data: bytes
    codec: str
    compressed: bool
    original_size: int
    priority: str
    created: float
    expires_at: float | None = None
    hits: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    def payload(self) -> bytes:
        return gzip.decompress(self.data) if self.compressed else self.data


@dataclass
class AccessPattern:
    first_access: float
    last_access: float
    reads: int = 0
    writes: int = 0
    misses: int = 0
    history: deque[tuple[float, str]] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))

    def touch(self, now: float, op: str) -> None:
        self.last_access = now
        self.history.append((now, op))


class Sweeper:
    """Runs fn every interval seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]) -> None:
        self.name = name
        self.interval = interval
        self.fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running or self.interval <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                logger.exception("%s sweep failed", self.name)


class CacheLayer:
    def __init__(
        self,
        *,
        max_entries: int = 100,
        max_bytes: int = 500 * _MB,
        compression_threshold: int = _MB,
        default_ttl: float = 0.0,
        cleanup_interval: float = 60.0,
        compression_interval: float = 300.0,
        target_retrieval_ms: float = 100.0,
        target_memory_mb: float = 500.0,
        target_hit_rate: float = 0.8,
        memory_limit_mb: float = 0.0,
        memory_probe: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.compression_threshold = compression_threshold
        self.default_ttl = default_ttl
        self.targets = {
            "retrieval_ms": target_retrieval_ms,
            "memory_mb": target_memory_mb,
            "hit_rate": target_hit_rate,
        }
        self.memory_limit_bytes = int(memory_limit_mb * _MB)
        self.memory_probe = memory_probe or (lambda: process_memory_utilization(self.memory_limit_bytes))
        self.pattern_limit = max(max_entries * PATTERN_RETENTION, HOT_KEYS)
        self.clock = clock

        self._lock = threading.RLock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._patterns: OrderedDict[str, AccessPattern] = OrderedDict()
        self._latencies: deque[float] = deque(maxlen=1000)
        self.total_bytes = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0
        self.compressions = 0

        self._sweepers = [
            Sweeper("ctxstore-cache-ttl", cleanup_interval, self.sweep_expired),
            Sweeper("ctxstore-cache-compress", compression_interval, self.sweep_compression),
        ]

    @classmethod
    def from_config(cls, cfg: CacheConfig, **kwargs: Any) -> CacheLayer:
        return cls(
            max_entries=cfg.max_entries,
            max_bytes=cfg.max_bytes,
            compression_threshold=cfg.compression_threshold,
            default_ttl=cfg.default_ttl,
            cleanup_interval=cfg.cleanup_interval,
            compression_interval=cfg.compression_interval,
            target_retrieval_ms=cfg.target_retrieval_ms,
            target_memory_mb=cfg.target_memory_mb,
            target_hit_rate=cfg.target_hit_rate,
            memory_limit_mb=cfg.memory_limit_mb,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        for sweeper in self._sweepers:
            sweeper.start()

    def stop(self) -> None:
        for sweeper in self._sweepers:
            sweeper.stop()

    @property
    def running(self) -> bool:
        return any(s.running for s in self._sweepers)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pattern(self, key: str, now: float) -> AccessPattern:
        p = self._patterns.get(key)
        if p is None:
            p = self._patterns[key] = AccessPattern(first_access=now, last_access=now)
            self._trim_patterns()
        else:
            self._patterns.move_to_end(key)
        return p

    def _trim_patterns(self) -> None:
        """Forget the least recently touched patterns of keys no longer cached."""
        excess = len(self._patterns) - self.pattern_limit
        if excess <= 0:
            return
        stale = [k for k in self._patterns if k not in self._entries][:excess]
        for key in stale:
            del self._patterns[key]

    def _drop(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self.total_bytes -= entry.size
        return entry

    def _eviction_candidate(self) -> str:
        window = []
        for key in self._entries:
            window.append(key)
            if len(window) >= EVICTION_WINDOW:
                break
        for wanted in ("low", "normal"):
            for key in window:
                if self._entries[key].priority == wanted:
                    return key
        return window[0]

    def _evict_for(self, incoming: int) -> None:
        while self._entries and (
            len(self._entries) >= self.max_entries or self.total_bytes + incoming > self.max_bytes
        ):
            key = self._eviction_candidate()
            self._drop(key)
            self.evictions += 1
            logger.debug("evicted %s", key)

    def _maybe_compress(self, data: bytes) -> tuple[bytes, bool]:
        if len(data) <= self.compression_threshold:
            return data, False
        packed = gzip.compress(data, compresslevel=6)
        if len(packed) <= len(data) * (1 - MIN_COMPRESSION_SAVING):
            self.compressions += 1
            return packed, True
        return data, False

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set(
        self, key: str, value: Any, *, ttl: float | None = None,
        priority: str = "normal", compress: bool = True,
    ) -> bool:
        """Store value under key. Returns False if it can never fit."""
        if priority not in PRIORITIES:
            msg = f"priority must be one of {PRIORITIES}: {priority!r}"
            raise ValueError(msg)
        raw, codec = _encode(value)
        data, compressed = self._maybe_compress(raw) if compress else (raw, False)
        if len(data) > self.max_bytes:
            logger.warning("cache entry %s (%d bytes) exceeds cache budget", key, len(data))
            return False

        now = self.clock()
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._drop(key)
            self._evict_for(len(data))
            self._entries[key] = CacheEntry(
                data=data,
                codec=codec,
                compressed=compressed,
                original_size=len(raw),
                priority=priority,
                created=now,
                expires_at=now + ttl if ttl and ttl > 0 else None,
            )
            self.total_bytes += len(data)
            p = self._pattern(key, now)
            p.writes += 1
            p.touch(now, "write")
        return True

    def get(self, key: str, default: Any = None) -> Any:
        started = time.perf_counter()
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._expired(entry, now):
                self._drop(key)
                self.expirations += 1
                entry = None
            if entry is None:
                self.misses += 1
                # Misses are tracked only for keys that were cached before.
                p = self._patterns.get(key)
                if p is not None:
                    p.misses += 1
                    p.touch(now, "miss")
                return default
            p = self._pattern(key, now)
            self._entries.move_to_end(key)
            entry.hits += 1
            self.hits += 1
            p.reads += 1
            p.touch(now, "read")
            value = _decode(entry.payload(), entry.codec)
        self._latencies.append((time.perf_counter() - started) * 1000)
        return value

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry, self.clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            self._patterns.pop(key, None)
            return self._drop(key) is not None

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            self.total_bytes = 0
        return n

    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def set_priority(self, key: str, priority: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.priority = priority
            return True

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Drop expired entries. Skips (returns 0) when the cache is busy."""
        if not self._lock.acquire(blocking=False):
            return 0
        try:
            now = self.clock()
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in expired:
                self._drop(key)
            self.expirations += len(expired)
        finally:
            self._lock.release()
        if expired:
            logger.info("cache: expired %d entries", len(expired))
        return len(expired)

    def sweep_compression(self) -> int:
        """Compress large entries that were stored uncompressed."""
        if not self._lock.acquire(blocking=False):
            return 0
        count = 0
        try:
            for entry in self._entries.values():
                if entry.compressed or entry.size <= self.compression_threshold:
                    continue
                packed, compressed = self._maybe_compress(entry.data)
                if compressed:
                    self.total_bytes -= entry.size - len(packed)
                    entry.data = packed
                    entry.compressed = True
                    count += 1
        finally:
            self._lock.release()
        if count:
            logger.info("cache: compressed %d entries", count)
        return count

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def optimize_cache(self) -> dict[str, list[str]]:
        """Promote the hottest keys to high priority, demote idle ones to low."""
        now = self.clock()
        promoted: list[str] = []
        demoted: list[str] = []
        with self._lock:
            def frequency(key: str) -> float:
                p = self._patterns[key]
                return p.reads / max(1.0, now - p.first_access)

            live = [k for k in self._entries if k in self._patterns and self._patterns[k].reads > 0]
            for key in sorted(live, key=frequency, reverse=True)[:HOT_KEYS]:
                self._entries[key].priority = "high"
                promoted.append(key)
            for key, entry in self._entries.items():
                p = self._patterns.get(key)
                if p is None or key in promoted:
                    continue
                if now - p.last_access > IDLE_DEMOTE_SECONDS and p.reads < 2:
                    entry.priority = "low"
                    demoted.append(key)
        return {"promoted": promoted, "demoted": demoted}

    def access_patterns(self) -> dict[str, Any]:
        with self._lock:
            by_reads = sorted(self._patterns.items(), key=lambda kv: kv[1].reads, reverse=True)
            return {
                "tracked_keys": len(self._patterns),
                "hot": [k for k, p in by_reads[:HOT_KEYS] if p.reads > 0],
                "cold": [k for k, p in by_reads if p.reads == 0 and k in self._entries],
                "patterns": {
                    k: {"reads": p.reads, "writes": p.writes, "misses": p.misses,
                        "last_access": p.last_access, "history": len(p.history)}
                    for k, p in self._patterns.items()
                },
            }

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def p95_retrieval_ms(self) -> float:
        samples = sorted(self._latencies)
        if not samples:
            return 0.0
        return samples[min(len(samples) - 1, math.ceil(0.95 * len(samples)) - 1)]

    def get_performance_metrics(self) -> dict[str, Any]:
        hit_rate = self.hit_rate()
        memory_mb = self.total_bytes / _MB
        p95 = self.p95_retrieval_ms()
        metrics = {
            "hit_rate": {"value": round(hit_rate, 4), "target": self.targets["hit_rate"],
                         "passed": hit_rate >= self.targets["hit_rate"]},
            "memory_footprint_mb": {"value": round(memory_mb, 3), "target": self.targets["memory_mb"],
                                    "passed": memory_mb <= self.targets["memory_mb"]},
            "retrieval_p95_ms": {"value": round(p95, 3), "target": self.targets["retrieval_ms"],
                                 "passed": p95 <= self.targets["retrieval_ms"]},
        }
        return {**metrics, "all_passed": all(m["passed"] for m in metrics.values())}

    def force_cleanup(self) -> dict[str, Any]:
        """Expire what can be expired; clear everything under memory pressure."""
        expired = self.sweep_expired()
        utilization = self.memory_probe()
        cleared = 0
        if utilization > CLEAR_UTILIZATION:
            cleared = self.clear()
            logger.warning("cache cleared under memory pressure (%.0f%% used)", utilization * 100)
        return {"expired": expired, "memory_utilization": utilization, "cleared": cleared}

    def stats(self) -> dict[str, Any]:
        with self._lock:
            compressed = [e for e in self._entries.values() if e.compressed]
            saved = sum(e.original_size - e.size for e in compressed)
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "bytes": self.total_bytes,
                "max_bytes": self.max_bytes,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hit_rate(), 4),
                "evictions": self.evictions,
                "expirations": self.expirations,
                "compressed_entries": len(compressed),
                "compression_saved_bytes": saved,
            }

    def reset_metrics(self) -> None:
        with self._lock:
            self.hits = self.misses = self.evictions = self.expirations = self.compressions = 0
            self._patterns.clear()
            self._latencies.clear()
