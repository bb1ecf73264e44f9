"""Per-natural-key mutual exclusion for upserts."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLocks:
    """Lock table keyed by natural key.

    Keys are always acquired in sorted order so two callers holding
    overlapping key sets cannot deadlock. Entries are dropped once no
    caller references them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired: List[str] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                entry.lock.acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _release(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.lock.release()
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
