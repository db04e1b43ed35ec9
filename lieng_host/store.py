from __future__ import annotations

import asyncio
from typing import Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class Registry(Generic[K, V]):
    """Process-scoped map of live records, each guarded by its own lock.

    Callers take ``lock(key)`` around every read-modify-write of a record;
    different keys never contend.
    """

    def __init__(self) -> None:
        self._items: Dict[K, V] = {}
        self._locks: Dict[K, asyncio.Lock] = {}

    def lock(self, key: K) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, key: K) -> Optional[V]:
        return self._items.get(key)

    def insert(self, key: K, value: V) -> None:
        if key in self._items:
            raise RuntimeError(f"Registry already holds {key!r}")
        self._items[key] = value

    def pop(self, key: K) -> Optional[V]:
        # Keys are never reused, so the lock can go with the record.
        self._locks.pop(key, None)
        return self._items.pop(key, None)

    def values(self) -> List[V]:
        return list(self._items.values())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._items))
