"""Utility functions and helpers."""

from datetime import datetime, timezone
from typing import Optional


def to_utc_naive(moment: datetime) -> datetime:
    """Normalize a datetime to naive UTC (the form stored in the database).

    Args:
        moment: Aware or naive datetime. Naive values are assumed to be UTC.

    Returns:
        Naive datetime in UTC
    """
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def utc_now() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_key(moment: datetime) -> str:
    """Calendar month key for a datetime (e.g., "2026-10")."""
    moment = to_utc_naive(moment)
    return f"{moment.year:04d}-{moment.month:02d}"


def next_month_key(month: str) -> str:
    """Key of the month following month (e.g., "2026-12" -> "2027-01")."""
    year, mon = (int(part) for part in month.split("-"))
    if mon == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{mon + 1:02d}"


def week_key(moment: datetime) -> str:
    """ISO week key for a datetime (e.g., "2026-W43")."""
    year, week, _ = to_utc_naive(moment).isocalendar()
    return f"{year:04d}-W{week:02d}"


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into naive UTC, passing None through."""
    if value is None:
        return None
    return to_utc_naive(datetime.fromisoformat(value))


def format_cents(cents: int) -> str:
    """Format an integer amount of cents as a currency string.

    Args:
        cents: Amount in cents (may be negative)

    Returns:
        Formatted cost string (e.g., "$12.34", "-$0.50")
    """
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:,.2f}"


def format_percentage(percent: float, include_sign: bool = True) -> str:
    """Format percentage value.

    Args:
        percent: Percentage value
        include_sign: Include + sign for positive values

    Returns:
        Formatted percentage string (e.g., "+8.3%")
    """
    if include_sign and percent > 0:
        return f"+{percent:.1f}%"
    return f"{percent:.1f}%"


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length

    Returns:
        Truncated text with ellipsis if needed
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."
