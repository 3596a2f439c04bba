"""Display-order maintenance for categories and envelopes.

A scope is ``(budget, parent)`` for categories and ``(budget, category)`` for
envelopes. After every reorder, insert, move or delete the members of each
touched scope carry positions ``0..n-1``. Writers hold the touched scopes'
locks from the first position write until the commit.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator, Optional

from cache import LedgerCache
from errors import NotFoundError, ServiceUnavailableError, UnauthorizedError
from identity import IdentityProvider
from models import Category, Envelope
from resilience import ResilienceWrapper, classify_error
from schemas import ReorderItem
from store import LedgerStore, Positioned

logger = logging.getLogger(__name__)

ScopeKey = tuple[str, int, Optional[int]]


def _scope_order(key: ScopeKey) -> tuple:
    table, budget_id, scope_id = key
    return (table, budget_id, scope_id is not None, scope_id or 0)


class ScopeLock:
    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "ScopeLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class ScopeLocks:
    """Process-wide registry of one lock per ordering scope.

    Entries are held weakly, so a scope's lock disappears once nobody is
    holding or waiting on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[ScopeKey, ScopeLock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def lock(self, key: ScopeKey) -> ScopeLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = ScopeLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[ScopeKey]) -> Iterator[None]:
        """Hold every scope in ``keys``, acquired in a fixed global order."""
        held = [self.lock(key) for key in sorted(set(keys), key=_scope_order)]
        with ExitStack() as stack:
            for lock in held:
                stack.enter_context(lock)
            yield


def scope_key(model: Positioned, budget_id: int, scope_id: Optional[int]) -> ScopeKey:
    return (model.__tablename__, budget_id, scope_id)


class OrderingEngine:
    def __init__(
        self,
        store: LedgerStore,
        identity: IdentityProvider,
        cache: LedgerCache,
        locks: ScopeLocks,
        resilience: Optional[ResilienceWrapper] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.cache = cache
        self.locks = locks
        self.resilience = resilience or ResilienceWrapper(
            identity, on_failure=store.rollback
        )

    def hold(self, *keys: ScopeKey):
        """Context manager holding the given scopes; exit after committing."""
        return self.locks.hold(keys)

    def renumber(
        self, model: Positioned, budget_id: int, scope_id: Optional[int]
    ) -> int:
        """Compact one scope. Run it inside ``hold`` for that scope."""
        return self.store.renumber_scope(model, budget_id, scope_id)

    def renumber_all(
        self, model: Positioned, budget_id: int, scope_ids: Iterable[Optional[int]]
    ) -> None:
        for scope_id in sorted(set(scope_ids), key=lambda s: (s is not None, s or 0)):
            self.renumber(model, budget_id, scope_id)

    def reorder_categories(self, budget_id: int, items: list[ReorderItem]) -> None:
        self._reorder(Category, "CATEGORY_CHANGE", budget_id, items)

    def reorder_envelopes(self, budget_id: int, items: list[ReorderItem]) -> None:
        self._reorder(Envelope, "ENVELOPE_CHANGE", budget_id, items)

    def _write_position(
        self, model: Positioned, budget_id: int, item: ReorderItem
    ) -> bool:
        try:
            return self.store.set_display_order(
                model, budget_id, item.id, item.display_order
            )
        except Exception as exc:
            error = classify_error(exc)
            if error is None or isinstance(
                error, (UnauthorizedError, ServiceUnavailableError)
            ):
                raise
            logger.warning(
                "reorder_write_failed: table=%s id=%s code=%s error=%s",
                model.__tablename__,
                item.id,
                error.kind.value,
                error,
            )
            return False

    def _reorder(
        self,
        model: Positioned,
        group: str,
        budget_id: int,
        items: list[ReorderItem],
    ) -> None:
        failed: list[int] = []

        def work() -> None:
            failed.clear()
            self.store.require_budget(budget_id, self.identity.current_user_id())
            scopes = self.store.scope_keys(model, budget_id, [i.id for i in items])
            keys = [scope_key(model, budget_id, s) for s in scopes.values()]
            with self.hold(*keys):
                for item in items:
                    if not self._write_position(model, budget_id, item):
                        failed.append(item.id)
                self.renumber_all(model, budget_id, scopes.values())
                self.store.commit()

        self.resilience.call(work)
        self.cache.invalidate_group(group)
        logger.info(
            "reorder: table=%s budget=%s items=%s failed=%s",
            model.__tablename__,
            budget_id,
            len(items),
            len(failed),
        )
        if failed:
            ids = ", ".join(str(row_id) for row_id in failed)
            raise NotFoundError(f"Failed to reorder {model.__tablename__}: {ids}")
