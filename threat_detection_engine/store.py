from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Generic, Iterator, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class IdentityStore(Generic[V]):
    """Per-identity arena with LRU eviction and an idle time-to-live.

    Writes and reads move an entry to the most-recent end. Inserting past
    ``max_entries`` evicts the least recently used entry; ``expire`` drops
    entries idle longer than ``ttl``.
    """

    def __init__(
        self,
        max_entries: int,
        ttl: Optional[timedelta] = None,
        on_evict: Optional[Callable[[str, V], None]] = None,
    ):
        self.max_entries = max_entries
        self.ttl = ttl
        self.on_evict = on_evict
        self._entries: "OrderedDict[str, Tuple[V, datetime]]" = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def get(self, key: str, now: Optional[datetime] = None) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        if now is not None:
            self._entries[key] = (entry[0], now)
        return entry[0]

    def peek(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        return entry[0] if entry else None

    def set(self, key: str, value: V, now: datetime) -> None:
        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted_key, (evicted, _) = self._entries.popitem(last=False)
            self._evicted(evicted_key, evicted)

    def pop(self, key: str) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return entry[0] if entry else None

    def values(self) -> List[V]:
        return [value for value, _ in self._entries.values()]

    def expire(self, now: datetime) -> List[str]:
        if self.ttl is None:
            return []
        stale = [key for key, (_, touched) in self._entries.items() if now - touched > self.ttl]
        for key in stale:
            value, _ = self._entries.pop(key)
            self._evicted(key, value)
        return stale

    def _evicted(self, key: str, value: V) -> None:
        if self.on_evict is not None:
            self.on_evict(key, value)
