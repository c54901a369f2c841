"""
Time utilities for the dashboard backend.

Single source of truth for "now", so completion timestamps and overdue
checks agree across endpoints.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if a task is overdue.

    A task is overdue if it has a due date in the past and is not done.

    Args:
        due_date: The task's due date
        status: The task's status

    Returns:
        True if task is overdue, False otherwise
    """
    if not due_date or status == "done":
        return False
    return as_utc(due_date) < utc_now()
