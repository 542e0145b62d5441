"""Pulse — Period Planning & Time-Period Helpers.

Produces the rolling window of months the freshness engine maintains, and
converts dashboard time-period labels into month keys.
"""

import calendar
import re
from datetime import date, datetime
from typing import List, Optional

from pulse.config import settings
from pulse.models.engine_models import PeriodDescriptor
from pulse.models.metric_models import DAILY_MARKER, Granularity

LAST_MONTH_LABELS = {"Last Month", "LAST_MONTH", "last_month"}

_LABEL_MONTHS = {
    "last month": 1,
    "last_month": 1,
    "last quarter": 3,
    "last_quarter": 3,
    "last year": 12,
    "last_year": 12,
    "custom date range": 1,
}

_MONTH_KEY = re.compile(r"^(\d{4})-(\d{2})$")
_DAILY_KEY = re.compile(r"^(\d{4})-(\d{2})-daily-(\d{4})(\d{2})(\d{2})$")


def month_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    """Move (year, month) by delta months."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def parse_month_key(key: str) -> tuple[int, int]:
    """Split "YYYY-MM" into (year, month); raises ValueError on bad keys."""
    match = _MONTH_KEY.match(key or "")
    if not match:
        raise ValueError(f"Invalid month key: {key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in key: {key!r}")
    return year, month


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_bounds(year: int, month: int) -> tuple[str, str]:
    """First and last calendar day of a month as YYYY-MM-DD strings."""
    first = date(year, month, 1)
    last = date(year, month, days_in_month(year, month))
    return first.isoformat(), last.isoformat()


def daily_prefix(period_key: str) -> str:
    """Prefix addressing every daily row of a month: "YYYY-MM-daily"."""
    return f"{period_key}{DAILY_MARKER.rstrip('-')}"


def daily_period_key(period_key: str, day: int) -> str:
    """Daily sub-period key, e.g. ("2025-07", 3) → "2025-07-daily-20250703"."""
    year, month = parse_month_key(period_key)
    return f"{period_key}{DAILY_MARKER}{year:04d}{month:02d}{day:02d}"


def parse_daily_period(key: str) -> Optional[date]:
    """Return the calendar day of a daily key, None for anything else.

    The month prefix and the embedded date must agree.
    """
    match = _DAILY_KEY.match(key or "")
    if not match:
        return None
    prefix_year, prefix_month, year, month, day = (int(g) for g in match.groups())
    if (prefix_year, prefix_month) != (year, month):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


# ─────────────────────────────────────────────
# PERIOD PLANNER
# ─────────────────────────────────────────────


def plan_periods(
    today: Optional[date] = None,
    window: Optional[int] = None,
    daily_recent: Optional[int] = None,
) -> List[PeriodDescriptor]:
    """Rolling window of months to maintain, most recent (current month) first.

    The first `daily_recent` months target daily granularity, the rest monthly.
    """
    today = today or date.today()
    window = settings.period_window_months if window is None else window
    daily_recent = settings.daily_recent_months if daily_recent is None else daily_recent

    periods: List[PeriodDescriptor] = []
    for i in range(window):
        year, month = _shift_month(today.year, today.month, -i)
        periods.append(
            PeriodDescriptor(
                year=year,
                month=month,
                period_key=month_key(year, month),
                granularity=Granularity.DAILY if i < daily_recent else Granularity.MONTHLY,
            )
        )
    return periods


# ─────────────────────────────────────────────
# DASHBOARD TIME-PERIOD LABELS
# ─────────────────────────────────────────────


def is_last_month_label(label: Optional[str]) -> bool:
    return bool(label) and label.strip() in LAST_MONTH_LABELS


def _parse_label_date(text: str) -> date:
    text = text.strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date in custom range: {text!r}")


def resolve_time_period(label: str, today: Optional[date] = None) -> List[str]:
    """Turn a dashboard label into month keys, oldest first.

    Standard labels end at the last complete month. Custom ranges
    ("2025-04-30 to 2025-07-31" or "4/30/2025 to 7/31/2025") cover every month
    they touch.
    """
    if not label or not label.strip():
        raise ValueError("Invalid time period label: must be a non-empty string")
    today = today or date.today()
    text = label.strip()

    if " to " in text:
        start_text, end_text = text.split(" to ", 1)
        start, end = _parse_label_date(start_text), _parse_label_date(end_text)
        if start > end:
            raise ValueError("Start date must be before end date")
        months = (end.year - start.year) * 12 + (end.month - start.month) + 1
        return [month_key(*_shift_month(start.year, start.month, i)) for i in range(months)]

    count = _LABEL_MONTHS.get(text.lower())
    if count is None:
        raise ValueError(f"Unsupported time period label: {text}")

    last_year, last_month = _shift_month(today.year, today.month, -1)
    return [
        month_key(*_shift_month(last_year, last_month, -offset))
        for offset in reversed(range(count))
    ]
