"""
DateTime utility functions for the application.

Database columns hold naive UTC datetimes; tokens carry integer epoch seconds.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime (the format stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt):
    """Normalize an aware or naive datetime to naive UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_epoch(dt):
    """Naive UTC (or aware) datetime -> integer epoch seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def from_epoch(seconds):
    """Integer epoch seconds -> naive UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def format_datetime_utc(dt):
    """
    Format a datetime object as an ISO-8601 UTC string with a trailing Z.

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        str: e.g. "2025-10-15T14:30:45Z", or None if dt is None
    """
    if not dt:
        return None

    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace('Z', '+00:00'))
        except ValueError:
            return str(dt)  # Return as-is if parsing fails

    # If dt is naive (no timezone), assume it's UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
