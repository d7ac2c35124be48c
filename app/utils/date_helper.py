from datetime import date, datetime, timezone
import re
from typing import Iterator, Optional, Tuple
from utils.exceptions import InvalidRange

Period = Tuple[int, int]  # (year, month)


def ensure_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def utcnow() -> datetime:
    """Naive UTC now truncated to milliseconds, which is what MongoDB stores."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def validate_period(year: int, month: int) -> Period:
    if not 1 <= int(month) <= 12:
        raise InvalidRange(f"Month must be between 1 and 12, got {month}")
    if not 1 <= int(year) <= 9999:
        raise InvalidRange(f"Year out of range: {year}")
    return int(year), int(month)


def next_period(year: int, month: int) -> Period:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def iter_months(start: Period, end: Period) -> Iterator[Period]:
    """Yield every (year, month) from start to end inclusive, crossing year boundaries."""
    validate_period(*start)
    validate_period(*end)
    if start > end:
        raise InvalidRange(
            f"End period {end[0]}-{end[1]:02d} is before start {start[0]}-{start[1]:02d}"
        )
    current = start
    while current <= end:
        yield current
        current = next_period(*current)


def parse_month(value: Optional[str], default: Optional[date] = None) -> Period:
    """
    Parse 'YYYY-MM' into (year, month). An empty value falls back to the month
    of `default` (today when not given).
    """
    if not value:
        d = default or date.today()
        return d.year, d.month
    match = re.fullmatch(r"\s*(\d{4})-(\d{1,2})\s*", value)
    if not match:
        raise InvalidRange(f"Invalid period format: {value}")
    return validate_period(int(match.group(1)), int(match.group(2)))
