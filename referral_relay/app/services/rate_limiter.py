from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Optional


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        window_ms: int = 60_000,
        max_requests: int = 10,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock or _wall_clock_ms
        self._lock = Lock()
        self._requests: dict[str, list[float]] = {}
        self._last_sweep = self._clock()

    def admit(self, client_key: str) -> bool:
        with self._lock:
            now = self._clock()
            # At most one full sweep per window keeps the key set bounded.
            if now - self._last_sweep >= self.window_ms:
                self._evict_stale(now)
                self._last_sweep = now
            recent = [
                stamp for stamp in self._requests.get(client_key, []) if now - stamp < self.window_ms
            ]
            if len(recent) >= self.max_requests:
                self._requests[client_key] = recent
                return False
            recent.append(now)
            self._requests[client_key] = recent
            return True

    def _evict_stale(self, now: float) -> None:
        stale = [
            key
            for key, stamps in self._requests.items()
            if not stamps or now - stamps[-1] >= self.window_ms
        ]
        for key in stale:
            del self._requests[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._requests)
