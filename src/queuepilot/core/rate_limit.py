from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class RateLimiter:
    """Sliding-window call counter keyed by caller (webhook trigger ID)."""
    max_calls: int
    window_seconds: int
    _store: Dict[str, list[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow(self, key: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds
        with self._lock:
            calls = [t for t in self._store.get(key, []) if t >= window_start]
            if len(calls) >= self.max_calls:
                self._store[key] = calls
                return False
            calls.append(now)
            self._store[key] = calls
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._store.clear()
            else:
                self._store.pop(key, None)
