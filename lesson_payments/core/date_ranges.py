"""Named purchase-date ranges used by the purchase history listing."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

DateRange = Tuple[datetime, datetime]

PURCHASE_DATE_RANGES = (
    "today",
    "yesterday",
    "this-week",
    "last-week",
    "last-7-days",
    "last-30-days",
    "last-90-days",
    "this-month",
    "last-month",
    "this-year",
    "last-year",
)


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(month_start: datetime) -> datetime:
    if month_start.month == 1:
        return month_start.replace(year=month_start.year - 1, month=12)
    return month_start.replace(month=month_start.month - 1)


def purchase_date_range(key: Optional[str], now: Optional[datetime] = None) -> Optional[DateRange]:
    """
    Resolve a named range into a half-open UTC interval.

    Args:
        key: Range name such as "today" or "last-30-days"
        now: Reference time (defaults to the current UTC time)

    Returns:
        Optional[DateRange]: (start, end) with end exclusive, or None for
        "all", empty or unknown names
    """
    if not key:
        return None

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)
    week_start = today - timedelta(days=today.weekday())
    month_start = _month_start(today)
    year_start = month_start.replace(month=1)

    key = key.lower()
    if key == "today":
        return today, tomorrow
    if key == "yesterday":
        return today - timedelta(days=1), today
    if key == "this-week":
        return week_start, week_start + timedelta(days=7)
    if key == "last-week":
        return week_start - timedelta(days=7), week_start
    if key == "last-7-days":
        return tomorrow - timedelta(days=7), tomorrow
    if key == "last-30-days":
        return tomorrow - timedelta(days=30), tomorrow
    if key == "last-90-days":
        return tomorrow - timedelta(days=90), tomorrow
    if key == "this-month":
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        return month_start, next_month
    if key == "last-month":
        return _previous_month_start(month_start), month_start
    if key == "this-year":
        return year_start, year_start.replace(year=year_start.year + 1)
    if key == "last-year":
        return year_start.replace(year=year_start.year - 1), year_start
    return None
