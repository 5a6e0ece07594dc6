"""
Striped lock table for shared in-memory state.

Keys hash to one of N shards; each shard owns its own lock and its own dict,
so operations on unrelated keys rarely contend and no caller ever needs the
whole table locked.
"""

import threading
from typing import Dict, Generic, Hashable, Iterator, List, TypeVar

V = TypeVar("V")


class Shard(Generic[V]):
    """One lock plus the entries that hash to it."""

    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[Hashable, V] = {}


class LockTable(Generic[V]):
    """
    Key-scoped mutual exclusion over a sharded dict.

    Callers take ``shard_for(key).lock`` and then read or write
    ``shard.entries[key]`` while holding it.
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("LockTable needs at least one shard")
        self._shards: List[Shard[V]] = [Shard() for _ in range(shards)]

    def shard_for(self, key: Hashable) -> Shard[V]:
        return self._shards[hash(key) % len(self._shards)]

    def shards(self) -> Iterator[Shard[V]]:
        return iter(self._shards)

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)
