# portfolio_engine/utils/date_utils.py
"""
Date helpers shared by the snapshot job, history reconstruction and reports.

Business days are Monday through Friday; market holidays are not modelled
here (missing closes are handled by carry-forward and provider tolerance).

Usage:
    from portfolio_engine.utils.date_utils import get_business_days, processing_date

    days = get_business_days(start_date, end_date)
    run_date = processing_date(ZoneInfo("Europe/Madrid"))
"""

from datetime import date, datetime, timedelta, tzinfo


def is_business_day(d: date) -> bool:
    """Monday (0) through Friday (4)."""
    return d.weekday() < 5


def get_business_days(start_date: date, end_date: date) -> list[date]:
    """
    Get list of business days (weekdays) in a date range.

    Args:
        start_date: First date in range (inclusive)
        end_date: Last date in range (inclusive)

    Returns:
        List of dates that are weekdays, sorted chronologically

    Example:
        >>> get_business_days(date(2024, 1, 1), date(2024, 1, 7))
        [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3),
         date(2024, 1, 4), date(2024, 1, 5)]  # Mon-Fri
    """
    days = []
    current = start_date

    while current <= end_date:
        if is_business_day(current):
            days.append(current)
        current += timedelta(days=1)

    return days


def count_business_days(start_date: date, end_date: date) -> int:
    """Number of weekdays in [start_date, end_date]; 0 for an empty range."""
    if end_date < start_date:
        return 0
    full_weeks, remainder = divmod((end_date - start_date).days + 1, 7)
    count = full_weeks * 5
    for offset in range(remainder):
        if is_business_day(start_date + timedelta(days=full_weeks * 7 + offset)):
            count += 1
    return count


def previous_business_day(d: date) -> date:
    """
    Get the previous business day before a given date.

    Monday → previous Friday; Sunday and Saturday → the Friday before.
    """
    prev_day = d - timedelta(days=1)
    while not is_business_day(prev_day):
        prev_day -= timedelta(days=1)
    return prev_day


def processing_date(zone: tzinfo, now: datetime | None = None) -> date:
    """
    Date the daily snapshot job values: the previous business day in `zone`.

    Args:
        zone: Reference time zone
        now: Current instant (aware), defaults to the wall clock

    Example:
        Run at 01:00 Europe/Madrid on Monday 2024-03-04 → Friday 2024-03-01
    """
    local_now = (now or datetime.now(zone)).astimezone(zone)
    return previous_business_day(local_now.date())


def month_key(d: date) -> str:
    """"YYYY-MM" label used by monthly report rollups."""
    return f"{d.year:04d}-{d.month:02d}"


def shift_months(d: date, months: int) -> date:
    """First day of the month `months` away from d's month."""
    index = d.year * 12 + (d.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)
