"""
Resolved-path cache for the binary resolver.

The cache holds a single path. Reads happen on every scheduler tick and
writes only on (re)detection, so it is guarded by a read/write lock. Lock
sections are short and never span an await.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime


class ReadWriteLock:
    """
    Writer-preferring read/write lock.

    Any number of readers may hold the lock at once; a writer holds it
    exclusively. Waiting writers block new readers.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of the cached path."""

    path: str
    method: str
    validated_at: datetime


class PathCache:
    """
    Process-wide cache of the resolved binary path.

    Owned by the process root and passed to the resolver and orchestrator.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._entry: CacheEntry | None = None

    def get(self) -> CacheEntry | None:
        """Return the cached entry, or None when invalid."""
        with self._lock.read():
            return self._entry

    def set(self, path: str, method: str) -> CacheEntry:
        """Store a freshly validated path."""
        entry = CacheEntry(path=path, method=method, validated_at=datetime.now(UTC))
        with self._lock.write():
            self._entry = entry
        return entry

    def invalidate(self) -> None:
        """Mark the cache invalid."""
        with self._lock.write():
            self._entry = None

    @property
    def is_valid(self) -> bool:
        return self.get() is not None
