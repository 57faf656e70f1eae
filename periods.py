from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def previous(self) -> "Period":
        """The window of equal length ending the day before this one starts."""
        prev_end = self.start - timedelta(days=1)
        prev_start = prev_end - timedelta(days=self.days - 1)
        return Period("previous", prev_start, prev_end)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def local_date(moment: datetime) -> date:
    """Calendar date of a naive UTC timestamp in the configured timezone."""
    tz = ZoneInfo(get_settings().timezone)
    return moment.replace(tzinfo=timezone.utc).astimezone(tz).date()


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(month: str) -> Period:
    """Resolve a ``YYYY-MM`` string to the calendar month it names."""
    try:
        first = datetime.strptime(month, "%Y-%m").date()
    except ValueError as exc:
        raise ValueError("Month must be in YYYY-MM format") from exc
    return Period(month, first, month_end(first))


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    slug = (period or "this_month").replace("-", "_")
    if slug == "last_month":
        last = add_months(today, -1)
        return Period("last_month", last, month_end(last))
    if slug == "last_3_months":
        return Period("last_3_months", add_months(today, -2), month_end(today))
    if slug == "last_6_months":
        return Period("last_6_months", add_months(today, -5), month_end(today))
    if slug == "this_year":
        return Period("this_year", date(today.year, 1, 1), month_end(today))
    if slug == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if slug != "this_month":
        raise ValueError(f"Unknown period: {period}")

    return Period("this_month", month_start(today), month_end(today))
