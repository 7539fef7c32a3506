from __future__ import annotations

import math
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_after_s: int


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by client; process-local."""

    def __init__(self) -> None:
        self._buckets: dict[str, list[float]] = {}
        self._lock = Lock()

    def check(self, key: str, *, max_requests: int, window_s: int) -> RateLimitResult:
        now = time.time()
        with self._lock:
            history = [value for value in self._buckets.get(key, []) if value > now - window_s]

            if len(history) >= max_requests:
                self._buckets[key] = history
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_after_s=_reset_after(min(history) + window_s, now),
                )

            history.append(now)
            self._buckets[key] = history
            return RateLimitResult(
                allowed=True,
                remaining=max_requests - len(history),
                reset_after_s=_reset_after(history[0] + window_s, now),
            )

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


def _reset_after(deadline_s: float, now: float) -> int:
    return max(1, math.ceil(deadline_s - now))


rate_limiter = InMemoryRateLimiter()
