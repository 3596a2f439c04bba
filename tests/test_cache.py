from cache import BUDGETS, ENVELOPES, PAYEES, LedgerCache, cache_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = LedgerCache(clock=clock)
    calls = []

    def compute() -> str:
        calls.append(1)
        return "fresh"

    assert cache.get_or_compute(ENVELOPES, "k", 10, compute) == "fresh"
    assert cache.get_or_compute(ENVELOPES, "k", 10, compute) == "fresh"
    assert len(calls) == 1

    clock.now += 11
    assert cache.get(ENVELOPES, "k") is None
    cache.get_or_compute(ENVELOPES, "k", 10, compute)
    assert len(calls) == 2


def test_least_recently_used_entry_is_evicted() -> None:
    cache = LedgerCache(max_entries=2)
    cache.get_or_compute(PAYEES, "a", None, lambda: "A")
    cache.get_or_compute(PAYEES, "b", None, lambda: "B")
    assert cache.get(PAYEES, "a") == "A"

    cache.get_or_compute(PAYEES, "c", None, lambda: "C")

    assert cache.get(PAYEES, "b") is None
    assert cache.get(PAYEES, "a") == "A"
    assert cache.size(PAYEES) == 2


def test_invalidate_group_clears_every_member_namespace() -> None:
    cache = LedgerCache()
    for namespace in (BUDGETS, ENVELOPES, PAYEES):
        cache.get_or_compute(namespace, "k", None, lambda: namespace)

    cache.invalidate_group("ENVELOPE_CHANGE")
    assert cache.size(ENVELOPES) == 0
    assert cache.size(BUDGETS) == 1

    cache.invalidate_group("TRANSACTION_CHANGE")
    assert cache.size(BUDGETS) == 0
    assert cache.size(PAYEES) == 0


def test_result_computed_across_an_invalidation_is_not_stored() -> None:
    cache = LedgerCache()

    def compute() -> str:
        cache.invalidate([ENVELOPES])
        return "stale"

    assert cache.get_or_compute(ENVELOPES, "k", None, compute) == "stale"
    assert cache.get(ENVELOPES, "k") is None


def test_cache_key_skips_missing_parts() -> None:
    assert cache_key("list", 3, 7, None) == "list:3:7"
