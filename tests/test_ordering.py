import gc
import threading
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from cache import ENVELOPES, LedgerCache
from database import Base
from errors import NotFoundError, ServiceUnavailableError
from identity import StaticIdentity
from models import Category, Envelope
from ordering import ScopeLocks
from schemas import BudgetIn, CategoryIn, EnvelopeIn, EnvelopeUpdate, ReorderItem
from services import build_services

TODAY = date(2025, 6, 15)


def _ledger(session: Session, cache: LedgerCache = None):
    return build_services(
        session,
        StaticIdentity(1),
        cache or LedgerCache(),
        ScopeLocks(),
        today=lambda: TODAY,
    )


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _envelope_orders(session: Session, budget_id: int, category_id) -> list[tuple]:
    scope = (
        Envelope.category_id.is_(None)
        if category_id is None
        else Envelope.category_id == category_id
    )
    rows = session.execute(
        select(Envelope.name, Envelope.display_order)
        .where(Envelope.budget_id == budget_id, scope)
        .order_by(Envelope.display_order)
    ).all()
    return [tuple(row) for row in rows]


def _category_orders(session: Session, budget_id: int, parent_id) -> list[tuple]:
    scope = (
        Category.parent_id.is_(None)
        if parent_id is None
        else Category.parent_id == parent_id
    )
    rows = session.execute(
        select(Category.name, Category.display_order)
        .where(Category.budget_id == budget_id, scope)
        .order_by(Category.display_order)
    ).all()
    return [tuple(row) for row in rows]


def test_duplicate_and_gapped_positions_are_renumbered_stably() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        bills = ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        names = ["Rent", "Power", "Water", "Phone"]
        envelopes = [
            ledger.envelopes.create(
                budget.id, EnvelopeIn(name=name, category_id=bills.id)
            )
            for name in names
        ]

        items = [
            ReorderItem(id=envelope.id, display_order=order)
            for envelope, order in zip(envelopes, [0, 2, 2, 5])
        ]
        ledger.ordering.reorder_envelopes(budget.id, items)

        expected = [("Rent", 0), ("Power", 1), ("Water", 2), ("Phone", 3)]
        assert _envelope_orders(session, budget.id, bills.id) == expected

        ledger.ordering.reorder_envelopes(budget.id, items)
        assert _envelope_orders(session, budget.id, bills.id) == expected
        assert ledger.ordering.renumber(Envelope, budget.id, bills.id) == 0


def test_partial_reorder_failure_keeps_applied_writes_and_reports_ids() -> None:
    with _session() as session:
        cache = LedgerCache()
        ledger = _ledger(session, cache)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        other = ledger.budgets.create(BudgetIn(name="Other"))
        first = ledger.envelopes.create(budget.id, EnvelopeIn(name="First"))
        second = ledger.envelopes.create(budget.id, EnvelopeIn(name="Second"))
        foreign = ledger.envelopes.create(other.id, EnvelopeIn(name="Foreign"))

        ledger.envelopes.list(budget.id)
        assert cache.size(ENVELOPES) == 1

        with pytest.raises(NotFoundError) as excinfo:
            ledger.ordering.reorder_envelopes(
                budget.id,
                [
                    ReorderItem(id=second.id, display_order=0),
                    ReorderItem(id=9999, display_order=1),
                    ReorderItem(id=foreign.id, display_order=2),
                    ReorderItem(id=first.id, display_order=3),
                ],
            )

        assert "9999" in excinfo.value.message
        assert str(foreign.id) in excinfo.value.message
        assert _envelope_orders(session, budget.id, None) == [
            ("Second", 0),
            ("First", 1),
        ]
        assert _envelope_orders(session, other.id, None) == [("Foreign", 0)]
        assert cache.size(ENVELOPES) == 0


def test_reorder_requires_budget_ownership() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        envelope = ledger.envelopes.create(budget.id, EnvelopeIn(name="Rent"))
        intruder = build_services(
            session, StaticIdentity(2), LedgerCache(), ScopeLocks()
        )

        with pytest.raises(NotFoundError, match="access denied"):
            intruder.ordering.reorder_envelopes(
                budget.id, [ReorderItem(id=envelope.id, display_order=3)]
            )
        assert session.get(Envelope, envelope.id).display_order == 0


def test_category_reorder_renumbers_every_touched_scope() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        bills = ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        power = ledger.categories.create(
            budget.id, CategoryIn(name="Power", parent_id=bills.id)
        )
        water = ledger.categories.create(
            budget.id, CategoryIn(name="Water", parent_id=bills.id)
        )

        ledger.ordering.reorder_categories(
            budget.id,
            [
                ReorderItem(id=bills.id, display_order=0),
                ReorderItem(id=water.id, display_order=7),
                ReorderItem(id=power.id, display_order=9),
            ],
        )

        # Bills ties with Savings at 0; the older row keeps the lower slot.
        assert _category_orders(session, budget.id, None) == [
            ("Savings", 0),
            ("Bills", 1),
            ("Debt", 2),
        ]
        assert _category_orders(session, budget.id, bills.id) == [
            ("Water", 0),
            ("Power", 1),
        ]


def test_create_at_position_shifts_followers() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        ledger.categories.create(budget.id, CategoryIn(name="Fun", display_order=1))
        ledger.categories.create(budget.id, CategoryIn(name="Later", display_order=40))

        assert _category_orders(session, budget.id, None) == [
            ("Savings", 0),
            ("Fun", 1),
            ("Debt", 2),
            ("Bills", 3),
            ("Later", 4),
        ]


def test_moving_an_envelope_closes_the_gap_it_leaves() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        bills = ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        fun = ledger.categories.create(budget.id, CategoryIn(name="Fun"))
        rent = ledger.envelopes.create(
            budget.id, EnvelopeIn(name="Rent", category_id=bills.id)
        )
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Power", category_id=bills.id))
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Games", category_id=fun.id))

        ledger.envelopes.update(rent.id, EnvelopeUpdate(category_id=fun.id))

        assert _envelope_orders(session, budget.id, bills.id) == [("Power", 0)]
        assert _envelope_orders(session, budget.id, fun.id) == [
            ("Games", 0),
            ("Rent", 1),
        ]


def test_deleting_a_category_uncategorizes_its_envelopes() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        bills = ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        ledger.categories.create(budget.id, CategoryIn(name="Fun"))
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Loose"))
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Rent", category_id=bills.id))
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Power", category_id=bills.id))

        ledger.categories.delete(bills.id)

        assert _category_orders(session, budget.id, None) == [
            ("Savings", 0),
            ("Debt", 1),
            ("Fun", 2),
        ]
        assert _envelope_orders(session, budget.id, None) == [
            ("Loose", 0),
            ("Rent", 1),
            ("Power", 2),
        ]


def test_rejected_position_write_is_reported_with_the_other_failures(
    monkeypatch,
) -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        groceries = ledger.envelopes.create(budget.id, EnvelopeIn(name="Groceries"))
        rent = ledger.envelopes.create(budget.id, EnvelopeIn(name="Rent"))
        ledger.envelopes.create(budget.id, EnvelopeIn(name="Fuel"))

        store = ledger.ordering.store
        original = store.set_display_order

        def set_display_order(model, budget_id, row_id, position):
            if row_id == rent.id:
                raise IntegrityError(
                    "UPDATE", {}, Exception("CHECK constraint failed")
                )
            return original(model, budget_id, row_id, position)

        monkeypatch.setattr(store, "set_display_order", set_display_order)

        with pytest.raises(NotFoundError, match=f"envelopes: {rent.id}$"):
            ledger.ordering.reorder_envelopes(
                budget.id,
                [
                    ReorderItem(id=groceries.id, display_order=5),
                    ReorderItem(id=rent.id, display_order=0),
                ],
            )

        assert _envelope_orders(session, budget.id, None) == [
            ("Rent", 0),
            ("Fuel", 1),
            ("Groceries", 2),
        ]


def test_unavailable_store_aborts_the_whole_reorder(monkeypatch) -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        groceries = ledger.envelopes.create(budget.id, EnvelopeIn(name="Groceries"))
        rent = ledger.envelopes.create(budget.id, EnvelopeIn(name="Rent"))

        store = ledger.ordering.store
        original = store.set_display_order

        def set_display_order(model, budget_id, row_id, position):
            if row_id == rent.id:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return original(model, budget_id, row_id, position)

        monkeypatch.setattr(store, "set_display_order", set_display_order)

        with pytest.raises(ServiceUnavailableError):
            ledger.ordering.reorder_envelopes(
                budget.id,
                [
                    ReorderItem(id=groceries.id, display_order=1),
                    ReorderItem(id=rent.id, display_order=0),
                ],
            )

        assert _envelope_orders(session, budget.id, None) == [
            ("Groceries", 0),
            ("Rent", 1),
        ]
        assert not ledger.ordering.locks.lock(
            ("envelopes", budget.id, None)
        ).locked()


def test_envelope_writes_hold_their_scopes_through_commit(monkeypatch) -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        bills = ledger.categories.create(budget.id, CategoryIn(name="Bills"))
        locks = ledger.ordering.locks
        store = ledger.ordering.store
        original = store.commit
        held = []

        def commit() -> None:
            held.append(
                (
                    locks.lock(("envelopes", budget.id, None)).locked(),
                    locks.lock(("envelopes", budget.id, bills.id)).locked(),
                )
            )
            original()

        monkeypatch.setattr(store, "commit", commit)

        rent = ledger.envelopes.create(budget.id, EnvelopeIn(name="Rent"))
        ledger.envelopes.update(rent.id, EnvelopeUpdate(category_id=bills.id))
        ledger.ordering.reorder_envelopes(
            budget.id, [ReorderItem(id=rent.id, display_order=0)]
        )
        ledger.envelopes.update(rent.id, EnvelopeUpdate(name="Rent and rates"))

        assert held == [
            (True, False),
            (True, True),
            (False, True),
            (False, False),
        ]
        gc.collect()
        assert len(locks) == 0


def test_scope_locks_are_dropped_once_released() -> None:
    locks = ScopeLocks()
    keys = [("envelopes", 1, None), ("envelopes", 1, 7), ("categories", 1, None)]

    with locks.hold(keys + keys[:1]):
        assert len(locks) == 3
        assert all(locks.lock(key).locked() for key in keys)

    gc.collect()
    assert len(locks) == 0


def test_held_scope_blocks_a_second_writer_until_released() -> None:
    locks = ScopeLocks()
    key = ("envelopes", 1, None)
    entered = threading.Event()

    def writer() -> None:
        with locks.hold([("categories", 1, None), key]):
            entered.set()

    with locks.hold([key]):
        worker = threading.Thread(target=writer)
        worker.start()
        assert not entered.wait(0.1)

    worker.join(timeout=5)
    assert entered.is_set()
