from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from clinauth.logging import get_logger
from clinauth.service.events import EventEmitter

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int


class RateLimiter:
    """Fixed-window attempt counter keyed by (action, client).

    Counts live in Redis when a cache is configured, otherwise in a process
    local table. Concurrent hits on one key may under-count; the limiter
    throttles abuse rather than meters usage.
    """

    def __init__(
        self,
        cache=None,
        *,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.events = events
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(action: str, client_key: str) -> str:
        return f"rate_limit:{action}:{client_key}"

    @staticmethod
    def _normalize_window(action: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                action=action,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return 60
        return window_seconds

    async def check(
        self, action: str, client_key: str, max_attempts: int, window_seconds: int
    ) -> RateLimitDecision:
        """Count one attempt and report whether it may proceed."""
        window_seconds = self._normalize_window(action, window_seconds)
        now = self._clock()
        if max_attempts <= 0:
            return RateLimitDecision(True, max_attempts, 0, int(now), 0)

        key = self._key(action, client_key)
        if self.cache is not None:
            allowed, count, start = await self.cache.hit_fixed_window(
                key, max_attempts, window_seconds
            )
        else:
            with self._lock:
                count, start = self._windows.get(key, (0, now))
                if count == 0 or now - start > window_seconds:
                    count, start = 1, now
                    allowed = True
                elif count >= max_attempts:
                    allowed = False
                else:
                    count += 1
                    allowed = True
                self._windows[key] = (count, start)

        retry_after = 0 if allowed else max(1, int(round(window_seconds - (now - start))))
        decision = RateLimitDecision(
            allowed=allowed,
            limit=max_attempts,
            remaining=max(0, max_attempts - count),
            reset_at=int(start + window_seconds),
            retry_after=retry_after,
        )
        if not allowed and self.events is not None:
            self.events.emit(
                "rate_limited",
                {"action": action, "client": client_key, "retry_after": retry_after},
            )
        return decision

    async def allow(
        self, action: str, client_key: str, max_attempts: int, window_seconds: int
    ) -> bool:
        decision = await self.check(action, client_key, max_attempts, window_seconds)
        return decision.allowed

    async def retry_after(self, action: str, client_key: str, window_seconds: int) -> int:
        """Seconds until the current window for this key rolls over; 0 if none is open."""
        window_seconds = self._normalize_window(action, window_seconds)
        key = self._key(action, client_key)
        if self.cache is not None:
            state = await self.cache.get_fixed_window(key)
        else:
            with self._lock:
                state = self._windows.get(key)
        if state is None:
            return 0
        _, start = state
        return max(0, int(round(window_seconds - (self._clock() - start))))

