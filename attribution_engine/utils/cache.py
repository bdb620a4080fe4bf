"""Simple in-memory TTL cache for generated reports."""
import threading
import time
from typing import Any

_cache: dict[str, tuple[float, Any]] = {}
_lock = threading.Lock()
MISS = object()


def get_cached(key: str):
    """Return cached value if still valid, else MISS sentinel."""
    now = time.time()
    with _lock:
        if key in _cache:
            expires, value = _cache[key]
            if now < expires:
                return value
            del _cache[key]
    return MISS


def set_cached(key: str, value: Any, seconds: int = 300):
    """Store a value in cache with TTL, dropping entries that have expired."""
    now = time.time()
    with _lock:
        for stale in [k for k, (expires, _) in _cache.items() if expires <= now]:
            del _cache[stale]
        _cache[key] = (now + seconds, value)


def cache_size() -> int:
    with _lock:
        return len(_cache)


def clear_cache():
    """Clear all cached values."""
    with _lock:
        _cache.clear()

