from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from habitstreak.models.streak import StreakState

Key = Tuple[str, str]


class StreakCache:
    """TTL + LRU cache of streak state keyed by (habit, user).

    Owned by the engine that constructs it. Every commit for a key
    invalidates that key and bumps its generation. A `put` made with an
    older generation is dropped, so state read before a commit never
    lands in the cache after that commit's invalidation.
    """

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Key, Tuple[float, StreakState]]" = OrderedDict()
        self._generations: Dict[Key, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, habit_id: str, user_id: str) -> Optional[StreakState]:
        key = (habit_id, user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, state = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return state

    def generation(self, habit_id: str, user_id: str) -> int:
        with self._lock:
            return self._generations.get((habit_id, user_id), 0)

    def put(self, habit_id: str, user_id: str, state: StreakState, generation: Optional[int] = None) -> bool:
        """Cache `state`. Returns False if the key was invalidated after `generation`."""
        key = (habit_id, user_id)
        with self._lock:
            if generation is not None and self._generations.get(key, 0) != generation:
                return False
            self._entries[key] = (self._clock() + self.ttl_seconds, state)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, habit_id: str, user_id: str) -> int:
        """Drop the entry and return the key's new generation."""
        key = (habit_id, user_id)
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._generations[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
            }
