from ledger.cache import TTLCache, build_cache_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_key_is_stable_across_param_order():
    a = build_cache_key("Financial Summary", {"mode": "live", "limit": 5})
    b = build_cache_key("financial_summary", {"limit": 5, "mode": "live"})
    assert a == b
    assert a.startswith("v1:financial_summary:")


def test_long_params_are_hashed():
    key = build_cache_key("scope", {"blob": "x" * 1000})
    assert len(key) < 100


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(20, clock=clock)
    cache.set("k", {"v": 1})

    clock.now += 19
    assert cache.get("k") == {"v": 1}
    clock.now += 2
    assert cache.get("k") is None


def test_zero_ttl_disables_cache():
    cache = TTLCache(0)
    cache.set("k", 1)

    assert not cache.enabled
    assert cache.get("k") is None


def test_get_or_compute_calls_through_once(mocker):
    cache = TTLCache(60, clock=FakeClock())
    compute = mocker.Mock(return_value={"totalOrders": 3})

    assert cache.get_or_compute("k", compute) == {"totalOrders": 3}
    assert cache.get_or_compute("k", compute) == {"totalOrders": 3}
    compute.assert_called_once()


def test_least_recently_used_entry_is_evicted():
    cache = TTLCache(60, max_entries=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.stats()["evictions"] == 1


def test_invalidate_by_prefix():
    cache = TTLCache(60, clock=FakeClock())
    cache.set("v1:financial_summary:live", 1)
    cache.set("v1:other:x", 2)

    assert cache.invalidate("v1:financial_summary") == 1
    assert cache.get("v1:other:x") == 2
    assert cache.invalidate() == 1
    assert cache.stats()["size"] == 0
