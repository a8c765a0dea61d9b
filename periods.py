import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings


MONTH_TOKEN = re.compile(r"^\d{4}-\d{2}$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def is_month(self) -> bool:
        return self.slug == "month"

    @property
    def month_key(self) -> str:
        return month_key(self.start)

    @property
    def days(self) -> int:
        return max((self.end - self.start).days + 1, 0)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_key(value: date) -> str:
    return value.strftime("%Y-%m")


def month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return first, next_month - date.resolution


def date_range(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += date.resolution


def _parse_month(token: str) -> Optional[Period]:
    token = token.strip()
    if not MONTH_TOKEN.match(token):
        return None
    try:
        first = datetime.strptime(f"{token}-01", "%Y-%m-%d").date()
    except ValueError:
        return None
    start, end = month_bounds(first.year, first.month)
    return Period("month", start, end)


def _parse_bounds(start: str, end: str) -> Optional[Period]:
    try:
        start_date = date.fromisoformat(start.strip())
        end_date = date.fromisoformat(end.strip())
    except (AttributeError, ValueError):
        return None
    return Period("custom", start_date, end_date)


def resolve_period(
    month: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    """Resolve a month token or explicit bounds to an inclusive period.

    Never raises: anything unparseable resolves to the current month.
    """
    if start and end:
        period = _parse_bounds(start, end)
        if period is not None:
            return period
    if month:
        period = _parse_month(month)
        if period is not None:
            return period

    today = today or local_today()
    first, last = month_bounds(today.year, today.month)
    return Period("month", first, last)
