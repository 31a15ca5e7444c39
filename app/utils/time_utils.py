"""
Line Metrics Engine - Time and Numeric Helpers

Timestamps coming from the stores may be naive (implicitly UTC) or aware;
everything inside the engine is compared as aware UTC.
"""

import math
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_minutes(start: datetime, end: datetime) -> float:
    """Elapsed time between two instants in (fractional) minutes."""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 60


def whole_minutes_between(start: datetime, end: datetime) -> int:
    """Elapsed whole minutes, truncated toward zero."""
    return int(elapsed_minutes(start, end))


def safe_divide(numerator: Optional[float], denominator: Optional[float]) -> float:
    """Divide, returning 0 instead of NaN, Infinity or a ZeroDivisionError."""
    if not numerator or not denominator:
        return 0.0
    if not math.isfinite(numerator) or not math.isfinite(denominator):
        return 0.0
    result = numerator / denominator
    return result if math.isfinite(result) else 0.0


def finite_or_zero(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return float(value)
