from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

from core.errors import TurnTimeoutError


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockManager:
    """Process-local exclusive locks, one per key.

    Entries are reference counted and dropped when no thread holds or
    waits for them, so the table only grows with concurrently busy keys.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        entry = self._checkout(key)
        if timeout is None:
            acquired = entry.lock.acquire()
        else:
            acquired = entry.lock.acquire(timeout=max(0.0, float(timeout)))
        if not acquired:
            self._checkin(key, entry)
            raise TurnTimeoutError(f"timed out waiting for session lock key={key}")
        try:
            yield
        finally:
            entry.lock.release()
            self._checkin(key, entry)

    def busy_keys(self) -> list[Hashable]:
        with self._guard:
            return list(self._entries)

    def _checkout(self, key: Hashable) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: Hashable, entry: _LockEntry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders <= 0 and self._entries.get(key) is entry:
                del self._entries[key]
