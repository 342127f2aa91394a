"""Date/time helpers shared by the Square and Stripe integrations"""

import logging
from datetime import date, datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Optional[Union[str, datetime, date]]) -> Optional[datetime]:
    """
    Parse a Square timestamp ("2025-01-31T12:00:00Z") or date ("2025-01-31")
    into a naive UTC datetime
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Failed to parse datetime: {value}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def from_unix_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to a naive UTC datetime"""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
