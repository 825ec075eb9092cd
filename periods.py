from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_end(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def shift_month(day: date, months: int) -> date:
    """First day of the month ``months`` away from ``day``'s month."""
    total = day.year * 12 + day.month - 1 + months
    return date(total // 12, total % 12 + 1, 1)


def budget_window(period_type: BudgetPeriod, on_date: date) -> tuple[date, date]:
    if period_type == BudgetPeriod.weekly:
        start = on_date - timedelta(days=on_date.weekday())
        return start, start + timedelta(days=6)
    if period_type == BudgetPeriod.monthly:
        start = on_date.replace(day=1)
        return start, month_end(start)
    if period_type == BudgetPeriod.quarterly:
        first_month = 3 * ((on_date.month - 1) // 3) + 1
        start = date(on_date.year, first_month, 1)
        return start, month_end(shift_month(start, 2))
    if period_type == BudgetPeriod.yearly:
        return date(on_date.year, 1, 1), date(on_date.year, 12, 31)
    raise ValueError("Custom budgets have no implicit window")


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        last_month_start = shift_month(today, -1)
        return Period("last_month", last_month_start, month_end(last_month_start))
    if period == "this_week":
        week_start, week_end = budget_window(BudgetPeriod.weekly, today)
        return Period("this_week", week_start, week_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "last_30_days":
        return Period("last_30_days", today - timedelta(days=29), today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    first = today.replace(day=1)
    return Period("this_month", first, month_end(first))
