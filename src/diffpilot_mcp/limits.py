"""Runtime request-limiting helpers."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable

WINDOW_SECONDS = 60


class RateLimiter:
    """In-memory sliding-window limiter, one window per tool name."""

    def __init__(
        self,
        limit_per_minute: int = 0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self._lock = Lock()
        self._events: defaultdict[str, deque[float]] = defaultdict(deque)
        self._now_fn = now_fn or time.monotonic
        self.limit_per_minute = max(0, int(limit_per_minute))

    def configure(self, limit_per_minute: int) -> None:
        """Update limit and clear previously tracked events."""
        with self._lock:
            self.limit_per_minute = max(0, int(limit_per_minute))
            self._events.clear()

    def allow(self, tool_name: str = "") -> tuple[bool, int]:
        """Return whether a call to ``tool_name`` is allowed and retry-after seconds."""
        with self._lock:
            if self.limit_per_minute <= 0:
                return True, 0

            now = self._now_fn()
            events = self._events[tool_name]
            while events and (now - events[0]) >= WINDOW_SECONDS:
                events.popleft()
            if len(events) >= self.limit_per_minute:
                retry_after = max(1, int(WINDOW_SECONDS - (now - events[0])))
                return False, retry_after

            events.append(now)
            return True, 0
