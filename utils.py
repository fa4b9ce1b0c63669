"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes; every value we store is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(raw) -> Optional[datetime.datetime]:
    """Convert a unix timestamp (as sent by payment gateways) to UTC."""
    if raw in (None, ""):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not parse timestamp: %r", raw)
        return None


def parse_iso_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    if not raw:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


def add_months(value: datetime.datetime, months: int) -> datetime.datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for(start: datetime.datetime, billing_interval: str) -> datetime.datetime:
    """Return the end of a billing period starting at *start*."""
    if billing_interval == "yearly":
        return add_months(start, 12)
    return add_months(start, 1)


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default
