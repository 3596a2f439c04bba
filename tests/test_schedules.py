from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationError
from models import Budget, IncomeSource, ScheduleType
from schedules import (
    IncomeScheduleEngine,
    days_in_month,
    next_expected_date,
    validate_schedule,
)

SUNDAY = date(2025, 6, 15)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_days_in_month_handles_leap_years() -> None:
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2025, 2) == 28
    assert days_in_month(2025, 12) == 31


@pytest.mark.parametrize(
    ("schedule_type", "config", "expected"),
    [
        (ScheduleType.weekly, {"day_of_week": 5}, date(2025, 6, 20)),
        (ScheduleType.weekly, {"day_of_week": 0}, date(2025, 6, 22)),
        (
            ScheduleType.biweekly,
            {"day_of_week": 5, "start_date": "2025-06-06"},
            date(2025, 6, 20),
        ),
        (
            ScheduleType.biweekly,
            {"day_of_week": 5, "start_date": "2025-07-01"},
            date(2025, 7, 4),
        ),
        (ScheduleType.monthly, {"day_of_month": 1}, date(2025, 7, 1)),
        (ScheduleType.monthly, {"day_of_month": 31}, date(2025, 6, 30)),
        (ScheduleType.monthly, {"day_of_month": -1}, date(2025, 6, 30)),
        (ScheduleType.semi_monthly, {"pay_dates": [15, -1]}, date(2025, 6, 30)),
        (ScheduleType.semi_monthly, {"pay_dates": [1, 10]}, date(2025, 7, 1)),
        (
            ScheduleType.quarterly,
            {"month_of_quarter": 1, "day_of_month": 15},
            date(2025, 7, 15),
        ),
        (
            ScheduleType.quarterly,
            {"month_of_quarter": 3, "day_of_month": -1},
            date(2025, 6, 30),
        ),
        (ScheduleType.yearly, {"month": 2, "day_of_month": 29}, date(2026, 2, 28)),
        (ScheduleType.yearly, {"month": 12, "day_of_month": 25}, date(2025, 12, 25)),
        (ScheduleType.one_time, {"date": "2025-01-02"}, date(2025, 1, 2)),
    ],
)
def test_next_expected_date(schedule_type, config, expected) -> None:
    assert next_expected_date(schedule_type, config, SUNDAY) == expected


def test_next_expected_date_is_strictly_after_reference() -> None:
    payday = date(2025, 6, 20)
    biweekly = {"day_of_week": 5, "start_date": "2025-06-06"}

    assert next_expected_date(ScheduleType.biweekly, biweekly, payday) == date(
        2025, 7, 4
    )
    assert next_expected_date(
        ScheduleType.monthly, {"day_of_month": 20}, payday
    ) == date(2025, 7, 20)
    assert next_expected_date(
        ScheduleType.monthly, {"day_of_month": 31}, date(2025, 1, 31)
    ) == date(2025, 2, 28)


def test_unscheduled_source_has_no_next_date() -> None:
    assert next_expected_date(None, None, SUNDAY) is None


@pytest.mark.parametrize(
    ("schedule_type", "config", "message"),
    [
        (ScheduleType.weekly, {"day_of_week": 7}, "day_of_week"),
        (ScheduleType.biweekly, {"day_of_week": 1}, "start_date"),
        (ScheduleType.monthly, {"day_of_month": 0}, "day_of_month"),
        (ScheduleType.monthly, {"day_of_month": -2}, "day_of_month"),
        (ScheduleType.semi_monthly, {"pay_dates": [15]}, "exactly 2"),
        (ScheduleType.semi_monthly, {"pay_dates": [15, 40]}, "pay_dates"),
        (
            ScheduleType.quarterly,
            {"month_of_quarter": 4, "day_of_month": 1},
            "month_of_quarter",
        ),
        (ScheduleType.yearly, {"month": 13, "day_of_month": 1}, "month"),
        (ScheduleType.one_time, {}, "requires date"),
        (ScheduleType.monthly, None, "schedule_config is required"),
        (ScheduleType.one_time, {"date": "not-a-date"}, "ISO date"),
        (None, {"day_of_month": 1}, "requires schedule_type"),
    ],
)
def test_invalid_schedules_are_rejected(schedule_type, config, message) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_schedule(schedule_type, config)


def test_valid_schedules_pass() -> None:
    validate_schedule(ScheduleType.semi_monthly, {"pay_dates": [1, -1]})
    validate_schedule(ScheduleType.one_time, {"date": "2025-09-01"})
    validate_schedule(None, None)


def test_roll_forward_due_moves_lapsed_sources() -> None:
    with _session() as session:
        budget = Budget(owner_id=1, name="Household")
        session.add(budget)
        session.flush()
        monthly = IncomeSource(
            budget_id=budget.id,
            name="Salary",
            schedule_type=ScheduleType.monthly,
            schedule_config={"day_of_month": 1},
            next_expected_date=date(2025, 5, 1),
        )
        payday_today = IncomeSource(
            budget_id=budget.id,
            name="Side gig",
            schedule_type=ScheduleType.monthly,
            schedule_config={"day_of_month": 15},
            next_expected_date=date(2025, 5, 15),
        )
        one_off = IncomeSource(
            budget_id=budget.id,
            name="Bonus",
            schedule_type=ScheduleType.one_time,
            schedule_config={"date": "2025-06-01"},
            next_expected_date=date(2025, 6, 1),
        )
        current = IncomeSource(
            budget_id=budget.id,
            name="Rent share",
            schedule_type=ScheduleType.monthly,
            schedule_config={"day_of_month": 20},
            next_expected_date=date(2025, 6, 20),
        )
        session.add_all([monthly, payday_today, one_off, current])
        session.commit()

        moved = IncomeScheduleEngine(session).roll_forward_due(SUNDAY)

        assert moved == 2
        assert monthly.next_expected_date == date(2025, 7, 1)
        assert payday_today.next_expected_date == SUNDAY
        assert one_off.next_expected_date == date(2025, 6, 1)
        assert current.next_expected_date == date(2025, 6, 20)
