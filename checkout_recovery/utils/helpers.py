from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC; every timestamp column in this schema is stored naive-UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def safe_str(value: Any, max_len: int = 4000) -> str:
    s = value if isinstance(value, str) else ("" if value is None else str(value))
    return s[:max_len]


def safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return int(default)


def clamp(value: Any, low: float, high: float) -> float:
    try:
        x = float(value)
    except (TypeError, ValueError):
        return low
    if x != x:  # NaN
        return low
    return max(low, min(high, x))
