"""Advisory read-through cache for reporting queries.

Entries are hints only: the ledger stays correct if this cache is disabled or
evicted at any moment. Instances are built per process and handed to the read
path explicitly.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable


def build_cache_key(scope: str, params: dict[str, Any] | None = None) -> str:
    safe_scope = str(scope or "default").strip().lower().replace(" ", "_")
    payload = params or {}
    joined = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    if len(joined) > 420:
        joined = hashlib.sha256(joined.encode("utf-8")).hexdigest()
    return f"v1:{safe_scope}:{joined}"


class TTLCache:
    def __init__(self, ttl_seconds: float, max_entries: int = 256, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: str):
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return value

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[key] = (expires_at, value)
            self._entries.move_to_end(key)
            self._stats["sets"] += 1
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1

    def get_or_compute(self, key: str, compute: Callable[[], Any]):
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def invalidate(self, prefix: str = "") -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def stats(self) -> dict:
        with self._lock:
            return {"enabled": self.enabled, "size": len(self._entries), **self._stats}
