"""Per-client fixed-window admission control for the resolution endpoints."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .engine_config import RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_S


@dataclass(slots=True)
class RateLimitWindow:
    count: int
    reset_at: float


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    reset_at: float
    retry_after: int
    remaining: int


class FixedWindowRateLimiter:
    """Admit at most ``limit`` requests per key in each ``window`` seconds.

    Windows are fixed, not sliding: a client may burst up to ``2 * limit``
    requests across a window boundary. State is volatile and process-local,
    so it is abuse mitigation rather than a security boundary.
    """

    def __init__(
        self,
        limit: int = RATE_LIMIT_REQUESTS,
        window: float = RATE_LIMIT_WINDOW_S,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window > 0")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            current = self._windows.get(key)
            if current is None or now >= current.reset_at:
                self._prune(now)
                current = RateLimitWindow(count=1, reset_at=now + self.window)
                self._windows[key] = current
                return self._decision(True, current, now)
            if current.count < self.limit:
                current.count += 1
                return self._decision(True, current, now)
            return self._decision(False, current, now)

    def _decision(self, allowed: bool, current: RateLimitWindow, now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            reset_at=current.reset_at,
            retry_after=max(0, math.ceil(current.reset_at - now)),
            remaining=max(0, self.limit - current.count),
        )

    def _prune(self, now: float) -> None:
        expired = [key for key, win in self._windows.items() if now >= win.reset_at]
        for key in expired:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
