from agrifund.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_get_set_and_expiry():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=30, clock=clock)
    cache.set("u1", "alice")
    assert cache.get("u1") == "alice"

    clock.now = 29.9
    assert cache.get("u1") == "alice"
    clock.now = 30
    assert cache.get("u1") is None
    assert len(cache) == 0


def test_invalidate_and_clear():
    cache = TTLCache(ttl_seconds=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    cache.invalidate("missing")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.clear()
    assert len(cache) == 0
