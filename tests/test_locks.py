"""Tests for the per-id lock registry."""

from __future__ import annotations

import threading
import time

import pytest

from ctxstore.errors import StorageError
from ctxstore.locks import LockRegistry


class TestLockRegistry:
    def test_released_on_error(self, tmp_path):
        locks = LockRegistry(tmp_path, timeout=0.5)
        with pytest.raises(RuntimeError):
            with locks.hold("r1"):
                assert locks.is_locked("r1")
                raise RuntimeError("boom")
        assert not locks.is_locked("r1")
        with locks.hold("r1"):
            pass

    def test_idle_thread_locks_are_dropped(self, tmp_path):
        locks = LockRegistry(tmp_path)
        for i in range(50):
            with locks.hold(f"r{i}"):
                assert locks.tracked() == 1
        assert locks.tracked() == 0

    def test_contention_times_out(self, tmp_path):
        locks = LockRegistry(tmp_path, timeout=0.1)
        held = threading.Event()
        done = threading.Event()

        def holder():
            with locks.hold("r1"):
                held.set()
                done.wait(2)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(2)
            with pytest.raises(StorageError):
                with locks.hold("r1"):
                    pass
        finally:
            done.set()
            t.join()
        assert locks.tracked() == 0

    def test_discard_removes_lock_file(self, tmp_path):
        locks = LockRegistry(tmp_path)
        with locks.hold("r1"):
            pass
        assert locks.lock_path("r1").exists()
        with locks.hold("r1", discard=True):
            pass
        assert not locks.lock_path("r1").exists()

    def test_waiter_on_discarded_file_keeps_exclusion(self, tmp_path):
        first = LockRegistry(tmp_path, timeout=2.0)
        second = LockRegistry(tmp_path, timeout=2.0)
        third = LockRegistry(tmp_path, timeout=0.1)
        entered = threading.Event()
        release = threading.Event()

        def waiter():
            with second.hold("r1"):
                entered.set()
                release.wait(2)

        t = threading.Thread(target=waiter)
        try:
            with first.hold("r1", discard=True):
                t.start()
                time.sleep(0.05)
                assert not entered.is_set()
            assert entered.wait(2)
            with pytest.raises(StorageError):
                with third.hold("r1"):
                    pass
        finally:
            release.set()
            t.join()
