from habitstreak.features.streaks.cache import StreakCache
from habitstreak.models.streak import StreakState


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def _state(habit_id="h1", current=1):
    return StreakState(habit_id=habit_id, user_id="u1", current_streak=current, best_streak=current)


def test_hit_and_miss_counts():
    cache = StreakCache(ttl_seconds=60, max_entries=10, clock=FakeMonotonic())
    assert cache.get("h1", "u1") is None
    cache.put("h1", "u1", _state())
    assert cache.get("h1", "u1").current_streak == 1
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["size"] == 1


def test_entries_expire_after_ttl():
    clock = FakeMonotonic()
    cache = StreakCache(ttl_seconds=60, max_entries=10, clock=clock)
    cache.put("h1", "u1", _state())
    clock.value = 59.9
    assert cache.get("h1", "u1") is not None
    clock.value = 60.0
    assert cache.get("h1", "u1") is None
    assert cache.stats()["size"] == 0


def test_least_recently_used_entry_evicted():
    cache = StreakCache(ttl_seconds=60, max_entries=2, clock=FakeMonotonic())
    cache.put("h1", "u1", _state("h1"))
    cache.put("h2", "u1", _state("h2"))
    cache.get("h1", "u1")
    cache.put("h3", "u1", _state("h3"))

    assert cache.get("h2", "u1") is None
    assert cache.get("h1", "u1") is not None
    assert cache.get("h3", "u1") is not None


def test_invalidate_and_clear():
    cache = StreakCache(ttl_seconds=60, max_entries=10, clock=FakeMonotonic())
    cache.put("h1", "u1", _state())
    cache.invalidate("h1", "u1")
    assert cache.get("h1", "u1") is None

    cache.put("h1", "u1", _state())
    cache.clear()
    assert cache.stats() == {"size": 0, "hits": 0, "misses": 0, "hit_rate": 0.0}


def test_fill_from_before_an_invalidation_is_dropped():
    cache = StreakCache(ttl_seconds=60, max_entries=10, clock=FakeMonotonic())
    read_at = cache.generation("h1", "u1")
    assert cache.invalidate("h1", "u1") == read_at + 1

    assert cache.put("h1", "u1", _state(current=1), generation=read_at) is False
    assert cache.get("h1", "u1") is None

    assert cache.put("h1", "u1", _state(current=2), generation=cache.generation("h1", "u1")) is True
    assert cache.get("h1", "u1").current_streak == 2
    assert cache.generation("h2", "u1") == 0
