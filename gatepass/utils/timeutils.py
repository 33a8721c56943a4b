# =======================================================================================
# gatepass/utils/timeutils.py - Time Helpers
# =======================================================================================
from datetime import datetime, timezone
from typing import Optional

# Timestamps are stored as naive UTC.

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
