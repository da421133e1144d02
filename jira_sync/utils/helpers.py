"""
Helper Utilities Module
Common utility functions used across the sync engine.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz
from dateutil import parser as date_parser

from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Jira returns offsets without a colon (e.g. 2026-02-24T10:00:00.000+0900)
_RFC3339_PATTERN = re.compile(
    r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:?\d{2})$'
)

_DURATION_PATTERN = re.compile(r'(\d+)\s*([hms])')


def parse_jira_datetime(dt_string: Optional[str]) -> Optional[datetime]:
    """
    Parse a Jira RFC3339 timestamp into an aware datetime.

    Args:
        dt_string: Timestamp such as 2026-02-24T10:00:00.000+0900

    Returns:
        Aware datetime, or None when absent or malformed
    """
    if not dt_string or not _RFC3339_PATTERN.match(dt_string):
        return None

    try:
        return date_parser.isoparse(dt_string)
    except (ValueError, TypeError, OverflowError):
        return None


def parse_jira_date(date_string: Optional[str]) -> Optional[date]:
    """
    Parse Jira date string (YYYY-MM-DD) to Python date.

    Args:
        date_string: Date string in YYYY-MM-DD format

    Returns:
        date object or None if parsing fails
    """
    if not date_string:
        return None

    try:
        return datetime.strptime(date_string, '%Y-%m-%d').date()
    except (ValueError, TypeError):
        return None


def safe_get(data: Dict, *keys, default=None) -> Any:
    """
    Safely get nested dictionary value.

    Args:
        data: Dictionary to traverse
        *keys: Keys to follow
        default: Default value if key not found

    Returns:
        Value at path or default
    """
    result = data
    for key in keys:
        if isinstance(result, dict):
            result = result.get(key)
        else:
            return default
        if result is None:
            return default
    return result


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """Split a list into chunks of specified size."""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def load_timezone(name: str) -> pytz.BaseTzInfo:
    """
    Load an operator timezone, falling back to UTC when the tz database lacks it.

    Args:
        name: IANA zone name such as Asia/Tokyo

    Returns:
        pytz timezone
    """
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Timezone {name!r} unavailable, falling back to UTC")
        return pytz.UTC


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the store's convention)."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive store timestamp; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_interval(text: str) -> timedelta:
    """
    Parse a duration like '1h', '30m', '1h30m' or '45s'.

    Args:
        text: Duration string; a bare number is read as seconds

    Returns:
        timedelta

    Raises:
        ValueError: If the string is not a positive duration
    """
    text = (text or '').strip().lower()
    if text.isdigit():
        seconds = int(text)
    else:
        parts = _DURATION_PATTERN.findall(text)
        if not parts or _DURATION_PATTERN.sub('', text).strip():
            raise ValueError(f"Invalid duration: {text!r}")
        units = {'h': 3600, 'm': 60, 's': 1}
        seconds = sum(int(value) * units[unit] for value, unit in parts)

    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {text!r}")
    return timedelta(seconds=seconds)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2h 30m", "12.5s")
    """
    if not seconds:
        return "0s"
    if seconds < 60:
        return f"{seconds:.1f}s"

    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or not parts:
        parts.append(f"{minutes}m")

    return " ".join(parts)
