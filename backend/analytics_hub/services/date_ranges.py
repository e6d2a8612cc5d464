from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

DATE_FORMAT = "%Y-%m-%d"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date
    previous_start: date
    previous_end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}:{self.end.isoformat()}"

    def as_strings(self) -> tuple[str, str, str, str]:
        return (
            self.start.strftime(DATE_FORMAT),
            self.end.strftime(DATE_FORMAT),
            self.previous_start.strftime(DATE_FORMAT),
            self.previous_end.strftime(DATE_FORMAT),
        )


def parse_date_param(value: str | date | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    value = value.strip()
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], DATE_FORMAT).date()
    except ValueError:
        return None


def _clamp(value: date, floor: date, ceiling: date) -> date:
    return max(floor, min(value, ceiling))


def previous_period(start: date, end: date) -> tuple[date, date]:
    """Equal-length period ending the day before ``start``."""
    span = end - start
    previous_end = start - timedelta(days=1)
    return previous_end - span, previous_end


def normalize_date_range(
    start: str | date | None,
    end: str | date | None,
    *,
    today: date,
    floor: date,
    default_days: int = 30,
) -> DateRange:
    """Build a sane reporting range from raw query values.

    Missing values default to the trailing ``default_days``; both ends are
    clamped to [floor, today + 1]; an inverted range is turned into a range of
    the same length that ends at ``end`` (capped at today). Never raises.
    """
    ceiling = today + timedelta(days=1)
    start_date = parse_date_param(start)
    end_date = parse_date_param(end)

    if end_date is None:
        end_date = today
    if start_date is None:
        start_date = end_date - timedelta(days=default_days)

    if start_date > end_date:
        span = start_date - end_date
        end_date = min(end_date, today)
        start_date = end_date - span

    end_date = _clamp(end_date, floor, ceiling)
    start_date = _clamp(start_date, floor, end_date)

    previous_start, previous_end = previous_period(start_date, end_date)
    return DateRange(start_date, end_date, previous_start, previous_end)


def trailing_range(today: date, days: int, floor: date) -> DateRange:
    return normalize_date_range(today - timedelta(days=days), today, today=today, floor=floor, default_days=days)
