from datetime import date, datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import ValidationError
from models import IncomeSource, ScheduleType

LAST_DAY = -1


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def _day_in(year: int, month: int, day: int) -> date:
    """Resolve ``day`` in a month; ``-1`` and overflowing days snap to the end."""
    dim = days_in_month(year, month)
    if day == LAST_DAY or day > dim:
        return date(year, month, dim)
    return date(year, month, day)


def _sunday_weekday(d: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (d.weekday() + 1) % 7


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _valid_day_of_month(value: Any) -> bool:
    return _is_int(value) and (1 <= value <= 31 or value == LAST_DAY)


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO date") from exc


def validate_schedule(
    schedule_type: Optional[ScheduleType], config: Optional[dict[str, Any]]
) -> None:
    if schedule_type is None:
        if config:
            raise ValidationError("schedule_config requires schedule_type")
        return
    if not isinstance(config, dict):
        raise ValidationError(
            "schedule_config is required when schedule_type is provided"
        )

    if schedule_type in (ScheduleType.weekly, ScheduleType.biweekly):
        dow = config.get("day_of_week")
        if not _is_int(dow) or not 0 <= dow <= 6:
            raise ValidationError(
                f"{schedule_type.value} schedule requires day_of_week (0-6, 0=Sunday)"
            )
        if schedule_type == ScheduleType.biweekly:
            if not config.get("start_date"):
                raise ValidationError("biweekly schedule requires start_date")
            _parse_date(config["start_date"], "schedule_config.start_date")
    elif schedule_type == ScheduleType.monthly:
        if not _valid_day_of_month(config.get("day_of_month")):
            raise ValidationError(
                "monthly schedule requires day_of_month (1-31 or -1 for last day)"
            )
    elif schedule_type == ScheduleType.semi_monthly:
        pay_dates = config.get("pay_dates")
        if not isinstance(pay_dates, list) or len(pay_dates) != 2:
            raise ValidationError(
                "semi_monthly schedule requires pay_dates with exactly 2 days"
            )
        if not all(_valid_day_of_month(day) for day in pay_dates):
            raise ValidationError("pay_dates must be 1-31 or -1 for last day")
    elif schedule_type == ScheduleType.quarterly:
        moq = config.get("month_of_quarter")
        if not _is_int(moq) or not 1 <= moq <= 3:
            raise ValidationError("quarterly schedule requires month_of_quarter (1-3)")
        if not _valid_day_of_month(config.get("day_of_month")):
            raise ValidationError(
                "quarterly schedule requires day_of_month (1-31 or -1 for last day)"
            )
    elif schedule_type == ScheduleType.yearly:
        month = config.get("month")
        if not _is_int(month) or not 1 <= month <= 12:
            raise ValidationError("yearly schedule requires month (1-12)")
        if not _valid_day_of_month(config.get("day_of_month")):
            raise ValidationError(
                "yearly schedule requires day_of_month (1-31 or -1 for last day)"
            )
    elif schedule_type == ScheduleType.one_time:
        if not config.get("date"):
            raise ValidationError("one_time schedule requires date")
        _parse_date(config["date"], "schedule_config.date")


def next_expected_date(
    schedule_type: Optional[ScheduleType],
    config: Optional[dict[str, Any]],
    reference: Optional[date] = None,
) -> Optional[date]:
    """First expected payment strictly after ``reference`` (one_time: its date)."""
    if schedule_type is None or not config:
        return None
    reference = reference or local_today()

    if schedule_type == ScheduleType.weekly:
        ahead = (config["day_of_week"] - _sunday_weekday(reference)) % 7
        return reference + timedelta(days=ahead or 7)

    if schedule_type == ScheduleType.biweekly:
        start = _parse_date(config["start_date"], "schedule_config.start_date")
        # Paydays sit on a fortnightly grid anchored at the first matching
        # weekday on or after start_date.
        anchor = start + timedelta(
            days=(config["day_of_week"] - _sunday_weekday(start)) % 7
        )
        if anchor > reference:
            return anchor
        periods = (reference - anchor).days // 14 + 1
        return anchor + timedelta(days=14 * periods)

    if schedule_type == ScheduleType.monthly:
        day = config["day_of_month"]
        candidate = _day_in(reference.year, reference.month, day)
        if candidate <= reference:
            year, month = _shift_month(reference.year, reference.month, 1)
            candidate = _day_in(year, month, day)
        return candidate

    if schedule_type == ScheduleType.semi_monthly:
        days = config["pay_dates"]
        this_month = sorted(_day_in(reference.year, reference.month, d) for d in days)
        for candidate in this_month:
            if candidate > reference:
                return candidate
        year, month = _shift_month(reference.year, reference.month, 1)
        return min(_day_in(year, month, d) for d in days)

    if schedule_type == ScheduleType.quarterly:
        quarter_start = ((reference.month - 1) // 3) * 3 + 1
        for quarter in range(5):
            year, month = _shift_month(
                reference.year,
                quarter_start,
                quarter * 3 + config["month_of_quarter"] - 1,
            )
            candidate = _day_in(year, month, config["day_of_month"])
            if candidate > reference:
                return candidate
        return None

    if schedule_type == ScheduleType.yearly:
        candidate = _day_in(reference.year, config["month"], config["day_of_month"])
        if candidate <= reference:
            candidate = _day_in(
                reference.year + 1, config["month"], config["day_of_month"]
            )
        return candidate

    if schedule_type == ScheduleType.one_time:
        return _parse_date(config["date"], "schedule_config.date")

    return None


class IncomeScheduleEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def roll_forward(self, source: IncomeSource, today: Optional[date] = None) -> bool:
        today = today or local_today()
        if source.next_expected_date is None or source.next_expected_date >= today:
            return False
        if source.schedule_type in (None, ScheduleType.one_time):
            return False
        # Stepping from yesterday yields the first date on or after today.
        upcoming = next_expected_date(
            source.schedule_type, source.schedule_config, today - timedelta(days=1)
        )
        if upcoming is None or upcoming == source.next_expected_date:
            return False
        source.next_expected_date = upcoming
        return True

    def roll_forward_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(IncomeSource)
            .where(
                IncomeSource.is_active.is_(True),
                IncomeSource.next_expected_date.is_not(None),
                IncomeSource.next_expected_date < today,
            )
            .order_by(IncomeSource.next_expected_date)
        )
        count = 0
        for source in self.session.scalars(stmt).all():
            if self.roll_forward(source, today):
                count += 1
        return count
