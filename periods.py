from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def period_key(on_date: date) -> str:
    """Budget period identifier: the calendar month, as YYYY-MM."""
    return on_date.strftime("%Y-%m")


def month_period(on_date: date) -> Period:
    first = on_date.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period("this_month", first, next_month - date.resolution)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        last_month_end = today.replace(day=1) - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "this_month":
        raise ValueError(f"Unknown period: {period}")
    return month_period(today)
