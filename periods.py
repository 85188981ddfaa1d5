import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def current_month(*, today: Optional[date] = None) -> Period:
    today = today or local_today()
    return month_period(today.year, today.month)


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Resolve a ``YYYY-MM`` query value; a missing value means this month."""
    if not value:
        return current_month(today=today)
    match = MONTH_RE.match(value)
    if not match:
        raise ValidationError(
            "Month should be in format YYYY-MM (e.g., 2025-08)",
            title="Invalid month format",
        )
    year, month = int(match.group(1)), int(match.group(2))
    try:
        return month_period(year, month)
    except ValueError as exc:
        raise ValidationError(
            "Month should be in format YYYY-MM (e.g., 2025-08)",
            title="Invalid month format",
        ) from exc


def parse_iso_date(value: str, field: str = "date") -> date:
    if not DATE_RE.match(value or ""):
        raise ValidationError(
            f"{field} should be in format YYYY-MM-DD", title="Invalid date format"
        )
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(
            f"{field} is not a valid calendar date", title="Invalid date format"
        ) from exc


def parse_range(start: Optional[str], end: Optional[str]) -> Period:
    if not start or not end:
        raise ValidationError(
            "Both start and end dates are required (format: YYYY-MM-DD)",
            title="Missing required parameters",
        )
    start_date = parse_iso_date(start, "start")
    end_date = parse_iso_date(end, "end")
    if start_date > end_date:
        raise ValidationError(
            "Start date must be before end date", title="Invalid date range"
        )
    return Period("custom", start_date, end_date)
