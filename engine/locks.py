"""
Per-entity lock tables.

Writers lock only the entities they touch. Lock categories are always
acquired in this order:

    player -> faction -> chunk -> relation pair -> power record -> index guard

Within one category keys are acquired in sorted order. All locks are
re-entrant so a component may call another that locks the same entity.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple


class KeyedLocks:
    """
    Re-entrant lock per key, created on first use.

    Entries are reference counted by the holders and dropped once the last
    holder releases, so the table only keeps keys that are currently locked.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[str, List] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold the locks for all given keys, acquired in sorted order."""
        ordered = sorted(set(k for k in keys if k is not None))
        locks = [self._checkout(key) for key in ordered]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._checkin(key)

    def __len__(self) -> int:
        return len(self._entries)


def pair_key(a: str, b: str) -> Tuple[str, str]:
    """Unordered pair, normalized so (a, b) and (b, a) give the same key."""
    return (a, b) if a <= b else (b, a)


@dataclass
class EngineLocks:
    """The lock tables shared by every engine component."""
    players: KeyedLocks = field(default_factory=lambda: KeyedLocks("player"))
    factions: KeyedLocks = field(default_factory=lambda: KeyedLocks("faction"))
    chunks: KeyedLocks = field(default_factory=lambda: KeyedLocks("chunk"))
    relations: KeyedLocks = field(default_factory=lambda: KeyedLocks("relation"))
    power: KeyedLocks = field(default_factory=lambda: KeyedLocks("power"))

    @contextmanager
    def relation_pair(self, a: str, b: str) -> Iterator[None]:
        first, second = pair_key(a, b)
        with self.relations.hold(f"{first}|{second}"):
            yield
