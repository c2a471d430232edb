from patrolhub.services.cache import CheckpointCache


class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = CheckpointCache(ttl_seconds=300, clock=clock)
    cache.set("k", [1, 2])
    clock.t += 299
    assert cache.get("k") == [1, 2]
    clock.t += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_get_or_set_loads_once():
    cache = CheckpointCache(ttl_seconds=60, clock=FakeClock())
    calls = []

    def loader():
        calls.append(1)
        return "value"

    assert cache.get_or_set("k", loader) == "value"
    assert cache.get_or_set("k", loader) == "value"
    assert len(calls) == 1


def test_invalidate_one_or_all():
    cache = CheckpointCache(ttl_seconds=60, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.invalidate()
    assert len(cache) == 0


def test_size_is_bounded():
    cache = CheckpointCache(ttl_seconds=60, maxsize=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)
    assert len(cache) == 2
    assert cache.get("c") == 3
