"""
Short-lived read cache for reconciliation queries.

Instances are created by the app (``app.state.read_cache``) and passed to the
query functions; there is no module-level store.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional


class TTLCache:

    def __init__(self, ttl_seconds: float = 30, max_size: int = 256):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._store: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            if datetime.now(timezone.utc) > entry["expires_at"]:
                del self._store[key]
                return None
            return entry["data"]

    def set(self, key: str, data: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        with self._lock:
            if len(self._store) >= self.max_size and key not in self._store:
                self._evict()
            self._store[key] = {
                "data": data,
                "expires_at": datetime.now(timezone.utc) + timedelta(seconds=ttl),
            }

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        data = loader()
        self.set(key, data)
        return data

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def _evict(self) -> None:
        # expired first, then the oldest insertion
        now = datetime.now(timezone.utc)
        expired = [k for k, v in self._store.items() if now > v["expires_at"]]
        for k in expired:
            del self._store[k]
        if len(self._store) >= self.max_size:
            oldest = next(iter(self._store))
            del self._store[oldest]
