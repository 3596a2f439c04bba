"""Namespaced read-through cache used in front of listing queries.

Entries live in per-namespace LRU maps with their own expiry. Mutations never
write into the cache: they call ``invalidate``/``invalidate_group`` after a
successful commit, and a generation counter per namespace stops a computation
that overlapped an invalidation from storing its (possibly stale) result.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUDGETS = "budgets"
CATEGORIES = "categories"
CATEGORY_TREE = "category_tree"
ENVELOPES = "envelopes"
PAYEES = "payees"
INCOME_SOURCES = "income_sources"

# Seconds.
CACHE_TTL = {
    BUDGETS: 5 * 60,
    CATEGORIES: 5 * 60,
    CATEGORY_TREE: 5 * 60,
    ENVELOPES: 2 * 60,
    PAYEES: 3 * 60,
    INCOME_SOURCES: 3 * 60,
}

INVALIDATION_GROUPS: dict[str, tuple[str, ...]] = {
    "TRANSACTION_CHANGE": (BUDGETS, ENVELOPES, PAYEES),
    "ENVELOPE_CHANGE": (ENVELOPES,),
    "CATEGORY_CHANGE": (CATEGORIES, CATEGORY_TREE, ENVELOPES),
    "BUDGET_CHANGE": (BUDGETS,),
    "PAYEE_CHANGE": (PAYEES,),
    "INCOME_SOURCE_CHANGE": (INCOME_SOURCES,),
}


def cache_key(*parts: object) -> str:
    return ":".join(str(part) for part in parts if part is not None)


class _Namespace:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.generation = 0


class LedgerCache:
    def __init__(
        self,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._namespaces: dict[str, _Namespace] = {}
        self._registry_lock = threading.Lock()

    def _namespace(self, name: str) -> _Namespace:
        with self._registry_lock:
            ns = self._namespaces.get(name)
            if ns is None:
                ns = _Namespace()
                self._namespaces[name] = ns
            return ns

    def get(self, namespace: str, key: str) -> Optional[Any]:
        ns = self._namespace(namespace)
        now = self._clock()
        with ns.lock:
            entry = ns.entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del ns.entries[key]
                return None
            ns.entries.move_to_end(key)
            return value

    def get_or_compute(
        self,
        namespace: str,
        key: str,
        ttl: Optional[float],
        compute: Callable[[], T],
    ) -> T:
        ns = self._namespace(namespace)
        now = self._clock()
        with ns.lock:
            entry = ns.entries.get(key)
            if entry is not None and entry[0] > now:
                ns.entries.move_to_end(key)
                return entry[1]
            generation = ns.generation

        value = compute()

        if ttl is None:
            ttl = CACHE_TTL.get(namespace, 60)
        with ns.lock:
            if ns.generation != generation:
                return value
            ns.entries[key] = (self._clock() + ttl, value)
            ns.entries.move_to_end(key)
            while len(ns.entries) > self.max_entries:
                ns.entries.popitem(last=False)
        return value

    def invalidate(self, namespaces: Iterable[str]) -> None:
        for name in namespaces:
            ns = self._namespace(name)
            with ns.lock:
                ns.entries.clear()
                ns.generation += 1
            logger.debug("cache_invalidate: namespace=%s", name)

    def invalidate_group(self, group: str) -> None:
        self.invalidate(INVALIDATION_GROUPS[group])

    def clear(self) -> None:
        with self._registry_lock:
            names = list(self._namespaces)
        self.invalidate(names)

    def size(self, namespace: str) -> int:
        ns = self._namespace(namespace)
        with ns.lock:
            return len(ns.entries)
