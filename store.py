"""SQLAlchemy-backed ledger store.

``LedgerStore`` is the only object that issues queries. It is split into two
capabilities: ``LedgerReader`` (budget-scoped lookups used by the validator)
and ``LedgerWriter`` (position writes, renumbering and balance effects used by
the services and the ordering engine).
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol, Union

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import (
    Budget,
    Category,
    Envelope,
    EnvelopeType,
    IncomeSource,
    Payee,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

Positioned = Union[type[Category], type[Envelope]]

SPENDING_TYPES = (TransactionType.expense, TransactionType.debt_payment)


class LedgerReader(Protocol):
    def require_budget(self, budget_id: int, user_id: int) -> Budget: ...

    def get_envelope(self, budget_id: int, envelope_id: int) -> Optional[Envelope]: ...

    def get_payee(self, budget_id: int, payee_id: int) -> Optional[Payee]: ...

    def get_income_source(
        self, budget_id: int, income_source_id: int
    ) -> Optional[IncomeSource]: ...

    def get_category(self, budget_id: int, category_id: int) -> Optional[Category]: ...


class LedgerWriter(Protocol):
    def set_display_order(
        self, model: Positioned, budget_id: int, row_id: int, position: int
    ) -> bool: ...

    def scope_keys(
        self, model: Positioned, budget_id: int, ids: Iterable[int]
    ) -> dict[int, Optional[int]]: ...

    def renumber_scope(
        self, model: Positioned, budget_id: int, scope_id: Optional[int]
    ) -> int: ...

    def apply_effects(self, txn: Transaction, sign: int = 1) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def _scope_column(model: Positioned):
    return model.parent_id if model is Category else model.category_id


def _in_scope(model: Positioned, budget_id: int, scope_id: Optional[int]):
    column = _scope_column(model)
    scope_clause = column.is_(None) if scope_id is None else column == scope_id
    return (model.budget_id == budget_id, scope_clause)


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Reads

    def require_budget(self, budget_id: int, user_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.owner_id != user_id:
            raise NotFoundError("Budget not found or access denied")
        return budget

    def budgets_for(self, user_id: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.owner_id == user_id)
            .order_by(Budget.created_at, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def _scoped(self, model, budget_id: int, row_id: Optional[int]):
        if row_id is None:
            return None
        return self.session.scalar(
            select(model).where(model.id == row_id, model.budget_id == budget_id)
        )

    def get_envelope(self, budget_id: int, envelope_id: int) -> Optional[Envelope]:
        return self._scoped(Envelope, budget_id, envelope_id)

    def get_payee(self, budget_id: int, payee_id: int) -> Optional[Payee]:
        return self._scoped(Payee, budget_id, payee_id)

    def get_income_source(
        self, budget_id: int, income_source_id: int
    ) -> Optional[IncomeSource]:
        return self._scoped(IncomeSource, budget_id, income_source_id)

    def get_category(self, budget_id: int, category_id: int) -> Optional[Category]:
        return self._scoped(Category, budget_id, category_id)

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id)

    def is_referenced(self, column, row_id: int) -> bool:
        stmt = select(func.count(Transaction.id)).where(column == row_id)
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    # Positions

    def set_display_order(
        self, model: Positioned, budget_id: int, row_id: int, position: int
    ) -> bool:
        result = self.session.execute(
            update(model)
            .where(model.id == row_id, model.budget_id == budget_id)
            .values(display_order=position)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount > 0

    def scope_keys(
        self, model: Positioned, budget_id: int, ids: Iterable[int]
    ) -> dict[int, Optional[int]]:
        ids = list(ids)
        if not ids:
            return {}
        column = _scope_column(model)
        rows = self.session.execute(
            select(model.id, column).where(
                model.budget_id == budget_id, model.id.in_(ids)
            )
        ).all()
        return {row_id: scope_id for row_id, scope_id in rows}

    def renumber_scope(
        self, model: Positioned, budget_id: int, scope_id: Optional[int]
    ) -> int:
        """Rewrite a scope's positions to ``0..n-1``; returns rows changed."""
        rows = self.session.execute(
            select(model.id, model.display_order)
            .where(*_in_scope(model, budget_id, scope_id))
            .order_by(model.display_order, model.created_at, model.id)
        ).all()
        changed = 0
        for position, (row_id, current) in enumerate(rows):
            if current == position:
                continue
            self.session.execute(
                update(model)
                .where(model.id == row_id)
                .values(display_order=position)
                .execution_options(synchronize_session="evaluate")
            )
            changed += 1
        logger.debug(
            "renumber_scope: table=%s budget=%s scope=%s size=%s changed=%s",
            model.__tablename__,
            budget_id,
            scope_id,
            len(rows),
            changed,
        )
        return changed

    def next_display_order(
        self, model: Positioned, budget_id: int, scope_id: Optional[int]
    ) -> int:
        stmt = select(func.max(model.display_order)).where(
            *_in_scope(model, budget_id, scope_id)
        )
        current = self.session.execute(stmt).scalar_one_or_none()
        return 0 if current is None else current + 1

    def make_room(
        self, model: Positioned, budget_id: int, scope_id: Optional[int], position: int
    ) -> None:
        self.session.execute(
            update(model)
            .where(
                *_in_scope(model, budget_id, scope_id),
                model.display_order >= position,
            )
            .values(display_order=model.display_order + 1)
            .execution_options(synchronize_session="fetch")
        )

    # Balance effects

    def _adjust_budget(self, budget_id: int, delta: int) -> None:
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id)
            .values(available_amount_cents=Budget.available_amount_cents + delta)
            .execution_options(synchronize_session="fetch")
        )

    def _adjust_envelope(self, envelope_id: int, delta: int) -> None:
        self.session.execute(
            update(Envelope)
            .where(Envelope.id == envelope_id)
            .values(current_balance_cents=Envelope.current_balance_cents + delta)
            .execution_options(synchronize_session="fetch")
        )

    def _reduce_debt_target(self, envelope_id: int, delta: int) -> None:
        remaining = Envelope.target_amount_cents - delta
        self.session.execute(
            update(Envelope)
            .where(
                Envelope.id == envelope_id,
                Envelope.envelope_type == EnvelopeType.debt,
                Envelope.target_amount_cents.is_not(None),
            )
            .values(target_amount_cents=case((remaining < 0, 0), else_=remaining))
            .execution_options(synchronize_session="fetch")
        )

    def _adjust_payee(self, payee_id: int, delta: int) -> None:
        self.session.execute(
            update(Payee)
            .where(Payee.id == payee_id)
            .values(total_paid_cents=Payee.total_paid_cents + delta)
            .execution_options(synchronize_session="fetch")
        )
        self.refresh_last_payment(payee_id)

    def refresh_last_payment(self, payee_id: int) -> None:
        latest = self.session.execute(
            select(Transaction.transaction_date, Transaction.amount_cents)
            .where(
                Transaction.payee_id == payee_id,
                Transaction.is_deleted.is_(False),
                Transaction.transaction_type.in_(SPENDING_TYPES),
            )
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .limit(1)
        ).first()
        self.session.execute(
            update(Payee)
            .where(Payee.id == payee_id)
            .values(
                last_payment_date=latest[0] if latest else None,
                last_payment_amount_cents=latest[1] if latest else None,
            )
            .execution_options(synchronize_session="fetch")
        )

    def apply_effects(self, txn: Transaction, sign: int = 1) -> None:
        """Apply (``sign=1``) or reverse (``sign=-1``) a transaction's
        effect on cached balances, in the caller's database transaction."""
        self.session.flush()
        amount = txn.amount_cents * sign
        kind = txn.transaction_type
        if kind == TransactionType.income:
            self._adjust_budget(txn.budget_id, amount)
        elif kind == TransactionType.allocation:
            self._adjust_budget(txn.budget_id, -amount)
            self._adjust_envelope(txn.to_envelope_id, amount)
        elif kind in SPENDING_TYPES:
            self._adjust_envelope(txn.from_envelope_id, -amount)
            if kind == TransactionType.debt_payment:
                self._reduce_debt_target(txn.from_envelope_id, amount)
            self._adjust_payee(txn.payee_id, amount)
        elif kind == TransactionType.transfer:
            self._adjust_envelope(txn.from_envelope_id, -amount)
            self._adjust_envelope(txn.to_envelope_id, amount)

    # Budget removal

    def delete_budget(self, budget_id: int) -> None:
        self.session.execute(delete(Transaction).where(Transaction.budget_id == budget_id))
        self.session.execute(delete(Envelope).where(Envelope.budget_id == budget_id))
        self.session.execute(
            delete(IncomeSource).where(IncomeSource.budget_id == budget_id)
        )
        self.session.execute(delete(Payee).where(Payee.budget_id == budget_id))
        self.session.execute(
            delete(Category).where(
                Category.budget_id == budget_id, Category.parent_id.is_not(None)
            )
        )
        self.session.execute(delete(Category).where(Category.budget_id == budget_id))
        self.session.execute(delete(Budget).where(Budget.id == budget_id))

    # Unit of work

    def add(self, obj) -> None:
        self.session.add(obj)

    def flush(self) -> None:
        self.session.flush()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


def envelope_filter(envelope_id: int):
    return or_(
        Transaction.from_envelope_id == envelope_id,
        Transaction.to_envelope_id == envelope_id,
    )
