import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def year(self) -> int:
        return self.start.year

    @property
    def month(self) -> int:
        return self.start.month


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Parse ``YYYY-MM``; a missing value means the current month."""
    if not value:
        today = today or date.today()
        return month_period(today.year, today.month)
    match = _MONTH_RE.match(value.strip())
    if not match:
        raise ValueError("Month must look like YYYY-MM")
    return month_period(int(match.group(1)), int(match.group(2)))


def months_between(start_year: int, start_month: int, end: date) -> int:
    """Number of months from the given month up to and including ``end``'s month."""
    return (end.year - start_year) * 12 + (end.month - start_month) + 1
