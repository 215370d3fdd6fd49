"""Named per-id locks.

A LockRegistry hands out exclusive locks keyed by record id. Each lock is a
threading.Lock (for writers in this process) plus an fcntl.flock on
``<locks_dir>/<md5(id)>.lock`` (for writers in other processes). The OS
drops the flock when its holder dies, so there is no stale-lock sweep.

Thread locks are reference counted and dropped once no caller holds or waits
on them. ``hold(id, discard=True)`` also unlinks the lock file before the
flock is released; a waiter that then wins the flock on the unlinked inode
notices the path no longer points at it and retries on a fresh file.
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import os
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from ctxstore.errors import StorageError

if TYPE_CHECKING:
    from collections.abc import Iterator

_POLL_INTERVAL = 0.01


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class LockRegistry:
    def __init__(self, locks_dir: Path | str, timeout: float = 5.0) -> None:
        self.locks_dir = Path(locks_dir)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def _checkout(self, resource_id: str) -> _Slot:
        with self._guard:
            slot = self._slots.get(resource_id)
            if slot is None:
                slot = self._slots[resource_id] = _Slot()
            slot.users += 1
            return slot

    def _checkin(self, resource_id: str, slot: _Slot) -> None:
        with self._guard:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(resource_id) is slot:
                del self._slots[resource_id]

    def lock_path(self, resource_id: str) -> Path:
        digest = hashlib.md5(resource_id.encode()).hexdigest()
        return self.locks_dir / f"{digest}.lock"

    def is_locked(self, resource_id: str) -> bool:
        with self._guard:
            slot = self._slots.get(resource_id)
            return slot is not None and slot.lock.locked()

    def tracked(self) -> int:
        """Number of ids with a live in-process lock."""
        with self._guard:
            return len(self._slots)

    @contextlib.contextmanager
    def hold(self, resource_id: str, *, discard: bool = False) -> Iterator[None]:
        """Hold the exclusive lock for resource_id; released on every exit path.

        With discard=True the lock file is removed on exit, for ids whose
        resource no longer exists.
        """
        slot = self._checkout(resource_id)
        try:
            if not slot.lock.acquire(timeout=self.timeout):
                msg = f"Timed out waiting for lock on {resource_id}"
                raise StorageError(msg)
            try:
                with self._flock(resource_id, discard=discard):
                    yield
            finally:
                slot.lock.release()
        finally:
            self._checkin(resource_id, slot)

    @contextlib.contextmanager
    def _flock(self, resource_id: str, *, discard: bool) -> Iterator[None]:
        path = self.lock_path(resource_id)
        deadline = time.monotonic() + self.timeout
        while True:
            f = path.open("a")
            try:
                self._acquire(f, resource_id, deadline)
            except BaseException:
                f.close()
                raise
            if self._same_file(f, path):
                break
            # Lock file was discarded while we waited; retry on the new one.
            fcntl.flock(f, fcntl.LOCK_UN)
            f.close()
        try:
            yield
        finally:
            if discard:
                path.unlink(missing_ok=True)
            fcntl.flock(f, fcntl.LOCK_UN)
            f.close()

    @staticmethod
    def _acquire(f, resource_id: str, deadline: float) -> None:
        while True:
            try:
                fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    msg = f"Timed out waiting for file lock on {resource_id}"
                    raise StorageError(msg) from None
                time.sleep(_POLL_INTERVAL)

    @staticmethod
    def _same_file(f, path: Path) -> bool:
        try:
            on_disk = path.stat()
        except FileNotFoundError:
            return False
        held = os.fstat(f.fileno())
        return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)
