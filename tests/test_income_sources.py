from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from cache import LedgerCache
from database import Base
from errors import ValidationError
from identity import StaticIdentity
from models import ScheduleType
from ordering import ScopeLocks
from schemas import (
    BudgetIn,
    IncomeSourceIn,
    IncomeSourceUpdate,
    TransactionIn,
)
from services import build_services

TODAY = date(2025, 6, 15)


def _ledger(session: Session):
    return build_services(
        session, StaticIdentity(1), LedgerCache(), ScopeLocks(), today=lambda: TODAY
    )


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_create_computes_first_expected_date() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))

        salary = ledger.income_sources.create(
            budget.id,
            IncomeSourceIn(
                name="Salary",
                expected_amount=Decimal("3200.00"),
                schedule_type=ScheduleType.monthly,
                schedule_config={"day_of_month": 15},
            ),
        )
        pinned = ledger.income_sources.create(
            budget.id,
            IncomeSourceIn(
                name="Dividends",
                schedule_type=ScheduleType.quarterly,
                schedule_config={"month_of_quarter": 1, "day_of_month": 1},
                next_expected_date=date(2025, 10, 1),
            ),
        )

        assert salary.next_expected_date == TODAY
        assert salary.expected_amount_cents == 320000
        assert pinned.next_expected_date == date(2025, 10, 1)


def test_invalid_schedule_is_rejected_on_create() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))

        with pytest.raises(ValidationError, match="pay_dates"):
            ledger.income_sources.create(
                budget.id,
                IncomeSourceIn(
                    name="Salary",
                    schedule_type=ScheduleType.semi_monthly,
                    schedule_config={"pay_dates": [1]},
                ),
            )
        assert ledger.income_sources.list(budget.id) == []


def test_schedule_change_recomputes_next_date() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        salary = ledger.income_sources.create(
            budget.id,
            IncomeSourceIn(
                name="Salary",
                schedule_type=ScheduleType.monthly,
                schedule_config={"day_of_month": 1},
            ),
        )
        assert salary.next_expected_date == date(2025, 7, 1)

        updated = ledger.income_sources.update(
            salary.id,
            IncomeSourceUpdate(
                schedule_type=ScheduleType.weekly,
                schedule_config={"day_of_week": 5},
            ),
        )
        assert updated.next_expected_date == date(2025, 6, 20)


def test_upcoming_and_overdue() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        late = ledger.income_sources.create(
            budget.id, IncomeSourceIn(name="Late", next_expected_date=date(2025, 6, 1))
        )
        soon = ledger.income_sources.create(
            budget.id, IncomeSourceIn(name="Soon", next_expected_date=date(2025, 6, 20))
        )
        ledger.income_sources.create(
            budget.id, IncomeSourceIn(name="Far", next_expected_date=date(2025, 9, 1))
        )
        paused = ledger.income_sources.create(
            budget.id, IncomeSourceIn(name="Paused", next_expected_date=date(2025, 6, 2))
        )
        ledger.income_sources.update(paused.id, IncomeSourceUpdate(is_active=False))

        assert [s.id for s in ledger.income_sources.overdue(budget.id)] == [late.id]
        assert [s.id for s in ledger.income_sources.upcoming(budget.id)] == [soon.id]
        assert len(ledger.income_sources.upcoming(budget.id, days=90)) == 2


def test_referenced_income_source_cannot_be_deleted() -> None:
    with _session() as session:
        ledger = _ledger(session)
        budget = ledger.budgets.create(BudgetIn(name="Household"))
        salary = ledger.income_sources.create(budget.id, IncomeSourceIn(name="Salary"))
        ledger.transactions.create(
            budget.id,
            TransactionIn(
                transaction_type="income",
                amount=Decimal("100.00"),
                transaction_date=TODAY,
                income_source_id=salary.id,
            ),
        )

        with pytest.raises(ValidationError, match="deactivate"):
            ledger.income_sources.delete(salary.id)
