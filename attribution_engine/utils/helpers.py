"""
Helper utilities
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import hashlib


def calculate_date_range(days: int = 30, end: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Calculate date range for analysis"""
    end_date = end or datetime.utcnow()
    start_date = end_date - timedelta(days=days)
    return start_date, end_date


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes converted to naive UTC; naive ones are taken as UTC already"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def stable_bucket(key: str, buckets: int = 100) -> int:
    """Deterministic bucket for a key (same key, same bucket, every process)"""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return int(digest[:8], 16) % buckets


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def increment_version(version: str) -> str:
    """Bump the patch component of a semantic version ("1.4.3" -> "1.4.4")"""
    parts = (version or "1.0.0").split('.')
    while len(parts) < 3:
        parts.append('0')
    patch = int(parts[2]) + 1
    return f"{parts[0]}.{parts[1]}.{patch}"

