"""
clipportal.services.throttle — In-Process Sliding-Window Limiter
=================================================================

Throttles magic-link and verification-mail requests per source IP and per
email address.  State lives in process memory: it resets on restart and is
not shared between server instances.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Callable
from typing import Any


class SlidingWindowLimiter:
    """Allow up to ``max_events`` per key in any ``window_seconds`` span.

    ``clock`` is injectable so tests can move time forward.
    """

    def __init__(
        self,
        max_events: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, list[float]] = defaultdict(list)
        # Handlers run on worker threads via run_db
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> list[float]:
        cutoff = now - self.window_seconds
        stamps = [t for t in self._events.get(key, ()) if t > cutoff]
        if stamps:
            self._events[key] = stamps
        else:
            self._events.pop(key, None)
        return stamps

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Return ``(allowed, info)`` without recording an event.

        ``info`` carries ``remaining``, ``reset`` (seconds until the oldest
        event leaves the window) and ``limit``.
        """
        with self._lock:
            now = self._clock()
            stamps = self._prune(key, now)

        count = len(stamps)
        if count >= self.max_events:
            reset = stamps[0] + self.window_seconds - now
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_events,
            }
        return True, {
            "remaining": self.max_events - count,
            "reset": self.window_seconds,
            "limit": self.max_events,
        }

    def record(self, key: str) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            stamps = self._prune(key, now)
            stamps.append(now)
            self._events[key] = stamps
            count = len(stamps)
        return {
            "remaining": max(0, self.max_events - count),
            "reset": self.window_seconds,
            "limit": self.max_events,
        }

    def hit(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Check and, when allowed, record in one call."""
        allowed, info = self.check(key)
        if not allowed:
            return False, info
        return True, self.record(key)

    def reset(self, key: str | None = None) -> None:
        """Clear state for *key*, or everything when *key* is None."""
        with self._lock:
            if key is None:
                self._events.clear()
            else:
                self._events.pop(key, None)
