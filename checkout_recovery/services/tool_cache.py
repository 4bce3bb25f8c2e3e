"""
Process-local cache of tool-call success payloads.

Best-effort only: it does not survive restarts and is not shared between
workers. The durable guards live in offers.py.
"""
import threading
from typing import Any, Dict, Optional, Tuple

from cachetools import TTLCache

CacheKey = Tuple[str, str, str]


class ToolResultCache:
    def __init__(self, maxsize: int = 500, ttl: int = 600):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    @staticmethod
    def key(shop: str, call_job_id: str, tool_call_id: str) -> CacheKey:
        return (shop, call_job_id, tool_call_id)

    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._cache.get(key)
        return dict(value) if value is not None else None

    def put(self, key: CacheKey, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._cache[key] = dict(payload)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


_process_cache: Optional[ToolResultCache] = None
_process_lock = threading.Lock()


def get_tool_cache(maxsize: int = 500, ttl: int = 600) -> ToolResultCache:
    """The per-process instance; sized on first use."""
    global _process_cache
    with _process_lock:
        if _process_cache is None:
            _process_cache = ToolResultCache(maxsize=maxsize, ttl=ttl)
        return _process_cache
